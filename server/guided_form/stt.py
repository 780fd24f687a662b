import os
import math
import base64
import logging
import tempfile
from typing import Dict, List, Optional, Tuple

from faster_whisper import WhisperModel

from .config import settings
from .speech import NO_SPEECH, ErrorCallback, RecognitionResult, ResultCallback

logger = logging.getLogger(__name__)

TRANSCRIPTION_FAILED = "transcription-failed"

_models: Dict[Tuple[str, str], WhisperModel] = {}


def _ensure_model(model_size: str, device: str) -> WhisperModel:
    key = (model_size, device)
    if key not in _models:
        logger.info(f"Loading Whisper model {model_size} on {device}")
        _models[key] = WhisperModel(model_size, device=device)
    return _models[key]


def _whisper_language(language: Optional[str]) -> Optional[str]:
    # Whisper wants ISO 639-1 codes: "en-US" -> "en"
    if not language:
        return None
    return language.split("-")[0].lower()


def transcribe_bytes(audio_bytes: bytes, language: Optional[str] = None,
                     model_size: str = settings.WHISPER_MODEL_SIZE,
                     device: str = settings.WHISPER_DEVICE) -> List:
    """Transcribe a WAV clip, returning the recognized segments"""
    model = _ensure_model(model_size, device)
    with tempfile.NamedTemporaryFile(delete=False, suffix=".wav") as tmp:
        tmp.write(audio_bytes)
        path = tmp.name
    try:
        segments, info = model.transcribe(path, language=_whisper_language(language), vad_filter=True)
        # The generator does the actual decoding, so consume it before the file goes
        return list(segments)
    finally:
        try:
            os.remove(path)
        except OSError as e:
            logger.debug(f"Could not remove {path}: {e}")


def _confidence(segments: List) -> Optional[float]:
    logprobs = [s.avg_logprob for s in segments if getattr(s, "avg_logprob", None) is not None]
    if not logprobs:
        return None
    return max(0.0, min(1.0, math.exp(sum(logprobs) / len(logprobs))))


class WhisperRecognizer:
    """Recognizer fed with recorded clips uploaded by the client.

    Between ``start()`` and ``stop()`` every clip passed to ``feed_audio_b64``
    is transcribed; each segment produces a cumulative interim result and the
    whole clip a final one. A clip with no speech reports ``no-speech``.
    """

    available = True

    def __init__(self, model_size: str = settings.WHISPER_MODEL_SIZE, device: str = settings.WHISPER_DEVICE):
        self.model_size = model_size
        self.device = device
        self._language: Optional[str] = None
        self._on_result: Optional[ResultCallback] = None
        self._on_error: Optional[ErrorCallback] = None

    @property
    def active(self) -> bool:
        return self._on_result is not None

    def start(self, language: str, on_result: ResultCallback, on_error: ErrorCallback) -> None:
        self._language = language
        self._on_result = on_result
        self._on_error = on_error

    def stop(self) -> None:
        self._on_result = None
        self._on_error = None

    def feed_audio_b64(self, audio_b64: str) -> str:
        if not self.active:
            raise ValueError("Not listening")
        on_result, on_error = self._on_result, self._on_error

        try:
            segments = transcribe_bytes(
                base64.b64decode(audio_b64), self._language, self.model_size, self.device
            )
        except Exception as e:
            logger.error(f"Transcription failed: {e}")
            on_error(TRANSCRIPTION_FAILED)
            return ""

        texts = []
        for segment in segments:
            text = segment.text.strip()
            if not text:
                continue
            texts.append(text)
            on_result(RecognitionResult(transcript=" ".join(texts), is_final=False))

        transcript = " ".join(texts).strip()
        if not transcript:
            on_error(NO_SPEECH)
            return ""

        on_result(RecognitionResult(transcript=transcript, confidence=_confidence(segments), is_final=True))
        return transcript
