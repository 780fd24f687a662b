"""
Speech I/O manager.

Wraps the host's synthesis and recognition capabilities behind one
start/stop/pause/resume/speak interface. The manager owns the bookkeeping
that keeps callbacks honest: a cancelled utterance never reports completion,
and no recognition callback fires after ``stop_listening()`` or
``pause_listening()``.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)

NO_SPEECH = "no-speech"
ABORTED = "aborted"
NOT_SUPPORTED = "not-supported"
START_FAILED = "start-failed"

DEFAULT_CONFIDENCE = 0.9
MAX_ALTERNATIVES = 2


@dataclass
class RecognitionResult:
    transcript: str
    confidence: Optional[float] = None
    is_final: bool = False
    alternatives: List[str] = field(default_factory=list)


ResultCallback = Callable[[RecognitionResult], None]
ErrorCallback = Callable[[str], None]


class SpeechSynthesizer(Protocol):
    available: bool

    def speak(self, text: str, language: str, on_end: Callable[[], None]) -> None: ...

    def cancel(self) -> None: ...


class SpeechRecognizer(Protocol):
    available: bool

    def start(self, language: str, on_result: ResultCallback, on_error: ErrorCallback) -> None: ...

    def stop(self) -> None: ...


class SpeechIOManager:
    def __init__(
        self,
        synthesizer: Optional[SpeechSynthesizer] = None,
        recognizer: Optional[SpeechRecognizer] = None,
        language: str = "en-US",
    ):
        self._synthesizer = synthesizer
        self._recognizer = recognizer
        self.language = language

        self._utterance = 0          # id of the utterance allowed to complete
        self._session = 0            # id of the recognition session allowed to report
        self._listening = False
        self._paused = False
        self._on_result: Optional[ResultCallback] = None
        self._on_error: Optional[ErrorCallback] = None

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    @property
    def tts_supported(self) -> bool:
        return self._synthesizer is not None and getattr(self._synthesizer, "available", True)

    @property
    def stt_supported(self) -> bool:
        return self._recognizer is not None and getattr(self._recognizer, "available", True)

    @property
    def listening(self) -> bool:
        return self._listening

    @property
    def paused(self) -> bool:
        return self._paused

    def set_language(self, language: str) -> None:
        self.language = language

    # ------------------------------------------------------------------
    # Synthesis
    # ------------------------------------------------------------------

    def speak(self, text: str, on_done: Optional[Callable[[], None]] = None) -> None:
        self.stop_speaking()
        done = on_done or (lambda: None)

        if not self.tts_supported:
            logger.warning("Speech synthesis not supported")
            done()
            return

        self._utterance += 1
        utterance = self._utterance

        def finished():
            if utterance != self._utterance:
                return
            self._utterance += 1
            done()

        try:
            self._synthesizer.speak(text, self.language, finished)
        except Exception as e:
            logger.error(f"Speech synthesis failed: {e}")
            finished()

    def stop_speaking(self) -> None:
        # Invalidate first so a synchronous cancel callback is ignored
        self._utterance += 1
        if self._synthesizer is not None:
            try:
                self._synthesizer.cancel()
            except Exception as e:
                logger.warning(f"Failed to cancel speech: {e}")

    # ------------------------------------------------------------------
    # Recognition
    # ------------------------------------------------------------------

    def start_listening(self, on_result: ResultCallback, on_error: Optional[ErrorCallback] = None) -> None:
        if not self.stt_supported:
            logger.warning("Speech recognition not supported")
            if on_error:
                on_error(NOT_SUPPORTED)
            return

        if self._listening:
            return

        # Stored for resume
        self._on_result = on_result
        self._on_error = on_error

        self._session += 1
        session = self._session
        self._listening = True
        self._paused = False

        try:
            self._recognizer.start(
                self.language,
                lambda result: self._handle_result(session, result),
                lambda error: self._handle_error(session, error),
            )
        except Exception as e:
            logger.error(f"Error starting recognition: {e}")
            self._session += 1
            self._listening = False
            self._paused = False
            if on_error:
                on_error(START_FAILED)

    def _handle_result(self, session: int, result: RecognitionResult) -> None:
        if session != self._session or self._on_result is None:
            return

        normalized = RecognitionResult(
            transcript=result.transcript,
            confidence=result.confidence if result.confidence is not None else DEFAULT_CONFIDENCE,
            is_final=result.is_final,
            alternatives=list(result.alternatives[:MAX_ALTERNATIVES]),
        )
        callback = self._on_result

        if normalized.is_final:
            # The final result ends this recognition session
            self._session += 1
            self._listening = False
            self._paused = False
            self._stop_recognizer()

        callback(normalized)

    def _handle_error(self, session: int, error: str) -> None:
        if session != self._session:
            return
        logger.warning(f"Speech recognition error: {error}")
        callback = self._on_error
        self._session += 1
        self._listening = False
        self._paused = False
        if callback:
            callback(error)

    def stop_listening(self) -> None:
        was_active = self._listening
        self._session += 1
        self._listening = False
        self._paused = False
        self._on_result = None
        self._on_error = None
        if was_active:
            self._stop_recognizer()

    def pause_listening(self) -> None:
        if not self._listening or self._paused:
            return
        self._session += 1
        self._listening = False
        self._paused = True
        self._stop_recognizer()

    def resume_listening(self) -> None:
        if not self._paused or self._on_result is None:
            return
        self._paused = False
        self.start_listening(self._on_result, self._on_error)

    def shutdown(self) -> None:
        self.stop_speaking()
        self.stop_listening()

    def _stop_recognizer(self) -> None:
        try:
            self._recognizer.stop()
        except Exception as e:
            logger.warning(f"Failed to stop recognition: {e}")
