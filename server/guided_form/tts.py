import os
import uuid
import base64
import logging
import tempfile
from typing import Callable, Dict, List, Optional

import pyttsx3

logger = logging.getLogger(__name__)

DEFAULT_RATE = 150


class Pyttsx3Synthesizer:
    """Server-side synthesizer rendering each utterance to a base64 WAV.

    Rendered clips queue up in ``outbox`` until the client drains them. The
    client plays the audio and reports back through ``playback_finished()``,
    which is what completes the utterance. With ``complete_on_render`` the
    utterance completes as soon as the audio exists (no client playback).
    """

    def __init__(self, rate: int = 0, voice: str = "default", complete_on_render: bool = False):
        self.rate = rate or DEFAULT_RATE
        self.voice = voice
        self.complete_on_render = complete_on_render
        self.outbox: List[Dict[str, str]] = []
        self._engine = None
        self._init_failed = False
        self._pending: Optional[Callable[[], None]] = None
        self._pending_id: Optional[str] = None

    def _ensure_engine(self):
        if self._engine is None and not self._init_failed:
            try:
                self._engine = pyttsx3.init()
                self._engine.setProperty("rate", self.rate)
                self._engine.setProperty("volume", 1.0)
            except Exception as e:
                logger.warning(f"pyttsx3 unavailable, speech synthesis disabled: {e}")
                self._init_failed = True
        return self._engine

    @property
    def available(self) -> bool:
        return self._ensure_engine() is not None

    def _select_voice(self, language: str) -> None:
        engine = self._ensure_engine()
        if self.voice and self.voice != "default":
            engine.setProperty("voice", self.voice)
            return
        code = language.split("-")[0].lower()
        for voice in engine.getProperty("voices") or []:
            languages = [
                lang.decode("utf-8", "ignore") if isinstance(lang, bytes) else str(lang)
                for lang in getattr(voice, "languages", []) or []
            ]
            if any(code in lang.lower() for lang in languages) or code in (voice.id or "").lower():
                engine.setProperty("voice", voice.id)
                return

    def synthesize(self, text: str) -> str:
        """Return audio as base64 WAV"""
        engine = self._ensure_engine()
        with tempfile.NamedTemporaryFile(delete=False, suffix=".wav") as tmp:
            path = tmp.name
        try:
            engine.save_to_file(text, path)
            engine.runAndWait()
            with open(path, "rb") as f:
                audio_bytes = f.read()
        finally:
            try:
                os.remove(path)
            except OSError as e:
                logger.debug(f"Could not remove {path}: {e}")
        return base64.b64encode(audio_bytes).decode("utf-8")

    def speak(self, text: str, language: str, on_end: Callable[[], None]) -> None:
        self._select_voice(language)
        audio = self.synthesize(text)

        utterance_id = uuid.uuid4().hex
        self.outbox.append({"id": utterance_id, "text": text, "language": language, "audio_b64": audio})
        self._pending = on_end
        self._pending_id = utterance_id

        if self.complete_on_render:
            self.playback_finished(utterance_id)

    def playback_finished(self, utterance_id: Optional[str] = None) -> bool:
        """Client finished playing; returns False when nothing was waiting."""
        if self._pending is None:
            return False
        if utterance_id is not None and utterance_id != self._pending_id:
            logger.debug(f"Ignoring playback report for stale utterance {utterance_id}")
            return False
        callback = self._pending
        self._pending = None
        self._pending_id = None
        callback()
        return True

    def cancel(self) -> None:
        self._pending = None
        self._pending_id = None

    def drain_audio(self) -> List[Dict[str, str]]:
        clips, self.outbox = self.outbox, []
        return clips
