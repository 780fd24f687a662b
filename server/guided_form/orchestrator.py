"""
Dialogue orchestrator - the state machine behind guided form completion.

Inputs arrive from three independently timed sources: speech synthesis
completion, speech recognition results, and user actions (typed text, quick
replies, clicks). Timer fires are a fourth. All of them are funnelled through
a single FIFO queue and handled one at a time, so every transition runs to
completion before the next one starts, even when a handler triggers a
callback synchronously.
"""
import random
import logging
import traceback
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from itertools import count
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Tuple

from .answers import Answers, RawAnswer, is_filled
from .autosave import DraftAutosaver
from .clock import Clock, TimerHandle
from .config import Settings, settings as default_settings
from .extraction import ValueExtractor
from .form_builder import FieldType, FormField, FormTemplate
from .memory import ChatMessage, Draft, DraftStore, MessageRole
from .profile import UserProfile, prepopulate_answers
from .progress import Progress, compute_progress, next_missing_field
from .speech import ABORTED, NO_SPEECH, NOT_SUPPORTED, RecognitionResult, SpeechIOManager
from .summary import generate_summary
from .translations import (
    all_translations,
    default_prompt,
    is_supported,
    rephrasings,
    translate,
    translate_field_prompt,
)
from .validators import ValidationIssue, validate_all

logger = logging.getLogger(__name__)

# Errors the user caused (silence, cancelling) or that retrying cannot fix
SILENT_RECOGNITION_ERRORS = (NO_SPEECH, ABORTED, NOT_SUPPORTED)
MAX_RECOGNITION_RETRIES = 3


class DialogueState(str, Enum):
    IDLE = "idle"
    SPEAKING = "speaking"
    LISTENING = "listening"
    THINKING = "thinking"
    PAUSED = "paused"


class SubmissionSink(Protocol):
    def create_submission(self, template_id: str, answers: Dict[str, Any], summary: str) -> Any: ...


@dataclass
class SubmitResult:
    success: bool
    issues: List[ValidationIssue] = field(default_factory=list)
    summary: Optional[str] = None
    submission_id: Optional[str] = None
    error: Optional[str] = None


class SessionClosedError(ValueError):
    pass


class DialogueOrchestrator:
    def __init__(
        self,
        template: FormTemplate,
        speech: SpeechIOManager,
        clock: Clock,
        *,
        draft_store: Optional[DraftStore] = None,
        submission_sink: Optional[SubmissionSink] = None,
        profile: Optional[UserProfile] = None,
        extractor: Optional[ValueExtractor] = None,
        draft: Optional[Draft] = None,
        language: Optional[str] = None,
        settings: Settings = default_settings,
        rng: Optional[random.Random] = None,
    ):
        self.template = template
        self.speech = speech
        self.clock = clock
        self.settings = settings
        self.submission_sink = submission_sink
        self.profile = profile
        self.extractor = extractor or ValueExtractor()
        self._rng = rng or random.Random()

        self.language = language or (draft.language if draft else settings.DEFAULT_LANGUAGE)
        if not is_supported(self.language):
            raise ValueError(f"Unsupported language: {self.language}")
        self.speech.set_language(self.language)

        # Session data, restored from a draft when resuming
        self.answers = Answers(template, draft.answers if draft else None)
        self.chat: List[ChatMessage] = list(draft.chat_history) if draft else []
        self.skipped: List[str] = [
            fid for fid in (draft.skipped_fields if draft else []) if template.get_field(fid)
        ]
        self.current_field_id: Optional[str] = None
        if draft and draft.current_field_id and template.get_field(draft.current_field_id):
            self.current_field_id = draft.current_field_id

        self.state = DialogueState.IDLE
        self.voice_enabled = False
        self.interim_transcript = ""
        self.last_alternatives: List[str] = []
        self.last_assistant_message = next(
            (m.content for m in reversed(self.chat) if m.role == MessageRole.ASSISTANT), ""
        )
        self.validation_issues: List[ValidationIssue] = []
        self.guided_complete = False
        self.started = False
        self.submitted = False
        self.closed = False

        self._events: Deque[Tuple[Callable[..., Any], tuple]] = deque()
        self._draining = False
        self._timer_ids = count()
        self._timers: Dict[int, TimerHandle] = {}
        self._listen_timer: Optional[int] = None
        self._ack_pending: Optional[str] = None
        self._ack_timer: Optional[int] = None
        self._recognition_failures = 0

        self._autosaver: Optional[DraftAutosaver] = None
        if draft_store is not None:
            self._autosaver = DraftAutosaver(
                draft_store,
                clock,
                self.build_draft,
                delay=settings.AUTOSAVE_DEBOUNCE_SECONDS,
                draft_id=draft.id if draft else None,
            )

    # ------------------------------------------------------------------
    # Public API - every call is serialized through the event queue
    # ------------------------------------------------------------------

    def start(self, voice: bool = True) -> None:
        self._ensure_open()
        self._dispatch(self._on_start, voice)

    def submit_text(self, text: str, confidence: float = 1.0) -> None:
        """Typed (or confirmed) user input offered as an answer."""
        self._ensure_open()
        if not text or not text.strip():
            return
        self._dispatch(self._handle_utterance, text.strip(), confidence)

    def quick_reply(self, reply: str) -> None:
        self._ensure_open()
        self._dispatch(self._on_quick_reply, reply)

    def click_field(self, field_id: str) -> None:
        self._ensure_open()
        self.template.require_field(field_id)
        self._dispatch(self._on_click_field, field_id)

    def edit_field(self, field_id: str, value: Optional[RawAnswer]) -> None:
        """Direct edit from the form itself, bypassing extraction."""
        self._ensure_open()
        self.template.require_field(field_id)
        self._dispatch(self._commit, field_id, value)

    def skip(self) -> None:
        self._ensure_open()
        self._dispatch(self._on_skip)

    def pause(self) -> None:
        self._ensure_open()
        self._dispatch(self._on_pause)

    def resume(self) -> None:
        self._ensure_open()
        self._dispatch(self._on_resume)

    def toggle_pause(self) -> None:
        if self.state == DialogueState.PAUSED:
            self.resume()
        else:
            self.pause()

    def set_voice_enabled(self, enabled: bool) -> None:
        self._ensure_open()
        self._dispatch(self._on_voice_toggle, enabled)

    def toggle_voice(self) -> None:
        self.set_voice_enabled(not self.voice_enabled)

    def toggle_mic(self) -> None:
        self._ensure_open()
        self._dispatch(self._on_toggle_mic)

    def repeat(self) -> None:
        self._ensure_open()
        self._dispatch(self._on_repeat)

    def rephrase(self) -> None:
        self._ensure_open()
        self._dispatch(self._on_rephrase)

    def set_language(self, language: str) -> None:
        self._ensure_open()
        if not is_supported(language):
            raise ValueError(f"Unsupported language: {language}")
        self._dispatch(self._on_language_change, language)

    def review(self) -> List[ValidationIssue]:
        self._ensure_open()
        return self._dispatch(self._on_review) or []

    def submit(self) -> SubmitResult:
        self._ensure_open()
        result = self._dispatch(self._on_submit)
        return result or SubmitResult(success=False, error="Submission failed")

    def save_draft(self) -> Optional[str]:
        if self._autosaver is None:
            return None
        return self._autosaver.save_now()

    def close(self) -> None:
        """End the session: nothing scheduled or registered may fire afterwards."""
        if self.closed:
            return
        self._cancel_timers()
        self.speech.shutdown()
        self.state = DialogueState.IDLE
        self.interim_transcript = ""
        if self._autosaver is not None and not self.submitted:
            self._autosaver.flush()
        self.closed = True
        logger.info(f"Dialogue for template {self.template.id} closed")

    @property
    def draft_id(self) -> Optional[str]:
        return self._autosaver.draft_id if self._autosaver else None

    @property
    def progress(self) -> Progress:
        return compute_progress(self.template, self.answers)

    def build_draft(self) -> Draft:
        progress = self.progress
        return Draft(
            template_id=self.template.id,
            template_name=self.template.name,
            answers=self.answers.to_dict(),
            chat_history=list(self.chat),
            current_field_id=self.current_field_id,
            skipped_fields=list(self.skipped),
            progress_percent=progress.percent,
            missing_required=progress.missing_required,
            language=self.language,
        )

    def snapshot(self) -> Dict[str, Any]:
        progress = self.progress
        return {
            "template_id": self.template.id,
            "state": self.state.value,
            "language": self.language,
            "voice_enabled": self.voice_enabled,
            "tts_supported": self.speech.tts_supported,
            "stt_supported": self.speech.stt_supported,
            "current_field_id": self.current_field_id,
            "answers": self.answers.to_dict(),
            "skipped_fields": list(self.skipped),
            "progress_percent": progress.percent,
            "missing_required": progress.missing_required,
            "guided_complete": self.guided_complete,
            "interim_transcript": self.interim_transcript,
            "transcript_alternatives": list(self.last_alternatives),
            "validation_errors": [issue._asdict() for issue in self.validation_issues],
            "messages": [m.model_dump(mode="json") for m in self.chat],
            "draft_id": self.draft_id,
            "submitted": self.submitted,
        }

    # ------------------------------------------------------------------
    # Event queue and timers
    # ------------------------------------------------------------------

    def _dispatch(self, handler: Callable[..., Any], *args) -> Any:
        """Queue ``handler`` and drain the queue unless already draining.

        Returns the handler's result when it ran immediately, None when it was
        queued behind the handler currently running.
        """
        self._events.append((handler, args))
        if self._draining:
            return None

        self._draining = True
        result = None
        first = True
        try:
            while self._events:
                fn, fargs = self._events.popleft()
                try:
                    value = fn(*fargs)
                except Exception as e:
                    logger.error(f"Dialogue handler {fn.__name__} failed: {e}\n{traceback.format_exc()}")
                    self._recover()
                    value = None
                if first:
                    result, first = value, False
        finally:
            self._draining = False
        return result

    def _schedule(self, delay: float, handler: Callable[..., Any], *args) -> int:
        key = next(self._timer_ids)

        def fire():
            if self._timers.pop(key, None) is None:
                return
            self._dispatch(handler, *args)

        self._timers[key] = self.clock.call_later(delay, fire)
        return key

    def _cancel_timers(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._listen_timer = None
        self._ack_pending = None
        self._ack_timer = None

    def _cancel_listen_timer(self) -> None:
        if self._listen_timer is not None:
            handle = self._timers.pop(self._listen_timer, None)
            if handle is not None:
                handle.cancel()
            self._listen_timer = None

    def _schedule_listen(self, delay: float) -> None:
        self._cancel_listen_timer()
        self._listen_timer = self._schedule(delay, self._on_listen_timer)

    def _recover(self) -> None:
        self._cancel_timers()
        self.speech.stop_speaking()
        self.speech.stop_listening()
        self._cancel_listen_timer()
        self.state = DialogueState.IDLE
        self.interim_transcript = ""

    def _ensure_open(self) -> None:
        if self.closed:
            raise SessionClosedError("Session is closed")

    def _touch(self) -> None:
        if self._autosaver is not None and not self.submitted and not self.closed:
            self._autosaver.schedule()

    # ------------------------------------------------------------------
    # Output helpers
    # ------------------------------------------------------------------

    def _say(
        self,
        text: str,
        field_id: Optional[str] = None,
        quick_replies: Optional[List[str]] = None,
        listen: bool = True,
        listen_delay: Optional[float] = None,
    ) -> None:
        """Append an assistant message and speak it when voice is on.

        When the message belongs to a field, listening starts once playback
        finishes.
        """
        self.chat.append(ChatMessage(
            role=MessageRole.ASSISTANT,
            content=text,
            field_id=field_id,
            quick_replies=quick_replies or None,
        ))
        self.last_assistant_message = text
        self._touch()

        if not self.voice_enabled:
            return

        if self.speech.listening or self.speech.paused:
            self.speech.stop_listening()
        self._cancel_listen_timer()

        delay = listen_delay if listen_delay is not None else self.settings.LISTEN_RESTART_DELAY
        listen_for = field_id if listen else None

        if not self.speech.tts_supported:
            # Text-only prompt: nothing to play, go straight to the listen restart
            if self.state in (DialogueState.LISTENING, DialogueState.PAUSED):
                self.state = DialogueState.IDLE
            self.interim_transcript = ""
            if listen_for and self.speech.stt_supported:
                self._schedule_listen(delay)
            return

        self.state = DialogueState.SPEAKING
        self.speech.speak(text, lambda: self._dispatch(self._on_speech_finished, listen_for, delay))

    def _add_user_message(self, text: str, confidence: Optional[float] = None) -> None:
        self.chat.append(ChatMessage(role=MessageRole.USER, content=text, confidence=confidence))
        self._touch()

    def _field_prompt(self, form_field: FormField) -> str:
        if form_field.prompt:
            return translate_field_prompt(form_field.prompt, self.language)
        return default_prompt(form_field.label, self.language)

    def _quick_replies(self, form_field: FormField) -> Optional[List[str]]:
        if not form_field.type.is_select or not form_field.options:
            return None
        return [opt.label for opt in form_field.options[: self.settings.QUICK_REPLY_LIMIT]]

    def _stop_listening(self) -> None:
        if self.speech.listening or self.speech.paused:
            self.speech.stop_listening()
        self._cancel_listen_timer()
        self.interim_transcript = ""
        if self.state in (DialogueState.LISTENING, DialogueState.PAUSED):
            self.state = DialogueState.IDLE

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_start(self, voice: bool) -> None:
        if self.started:
            return
        self.started = True
        self.voice_enabled = voice and self.speech.tts_supported

        prepopulate_answers(self.template, self.answers, self.profile)
        summaries = [
            f"{f.label}: {self.answers.value(f.id).display()}"
            for f in self.template.all_fields()
            if f.id in self.answers
        ]

        if summaries:
            replies = [translate(self.language, "looks_good"), translate(self.language, "need_to_update")]
            self._say(translate(self.language, "welcome", self.template.name, summaries), quick_replies=replies)
        else:
            self._say(translate(self.language, "welcome_no_prepopulated", self.template.name))
            self._schedule(self.settings.WELCOME_ADVANCE_DELAY, self._advance)

        logger.info(
            f"Guided session started for template {self.template.id} "
            f"(voice={self.voice_enabled}, prepopulated={len(summaries)})"
        )

    def _advance(self, from_field_id: Optional[str] = None) -> None:
        """Prompt for the next missing field, or announce completion."""
        start = from_field_id or self.current_field_id
        next_field = next_missing_field(self.template, self.answers, start, self.skipped)

        if self.state == DialogueState.THINKING:
            self.state = DialogueState.IDLE

        if next_field is None:
            logger.info(f"All required fields complete for template {self.template.id}")
            self.guided_complete = True
            self.current_field_id = None
            self._say(translate(self.language, "all_complete"))
            return

        self.guided_complete = False
        self.current_field_id = next_field.id
        self._touch()
        self._say(self._field_prompt(next_field), next_field.id, self._quick_replies(next_field))

    def _on_speech_finished(self, field_id: Optional[str], listen_delay: float) -> None:
        if self.state != DialogueState.SPEAKING:
            return
        self.state = DialogueState.IDLE
        if field_id and self.voice_enabled and self.speech.stt_supported:
            self._schedule_listen(listen_delay)

    def _on_listen_timer(self) -> None:
        self._listen_timer = None
        if self.state == DialogueState.IDLE and self.current_field_id:
            self._begin_listening()

    def _begin_listening(self) -> None:
        if not self.speech.stt_supported:
            return
        if self.state in (DialogueState.LISTENING, DialogueState.PAUSED, DialogueState.THINKING):
            return
        if self.state == DialogueState.SPEAKING:
            self.speech.stop_speaking()

        self.state = DialogueState.LISTENING
        self.interim_transcript = ""
        self.last_alternatives = []
        self.speech.start_listening(
            lambda result: self._dispatch(self._on_recognition_result, result),
            lambda error: self._dispatch(self._on_recognition_error, error),
        )

    def _on_recognition_result(self, result: RecognitionResult) -> None:
        # Anything arriving outside a listening session is stale
        if self.state not in (DialogueState.LISTENING, DialogueState.PAUSED):
            return
        if not result.is_final:
            self.interim_transcript = result.transcript
            return

        self.interim_transcript = ""
        self.last_alternatives = list(result.alternatives)
        self._recognition_failures = 0
        self._handle_utterance(result.transcript, result.confidence)

    def _on_recognition_error(self, error: str) -> None:
        self.interim_transcript = ""
        if self.state in (DialogueState.LISTENING, DialogueState.PAUSED):
            self.state = DialogueState.IDLE

        if error in SILENT_RECOGNITION_ERRORS:
            return

        self._recognition_failures += 1
        retry = (
            self.voice_enabled
            and self.current_field_id is not None
            and self._recognition_failures <= MAX_RECOGNITION_RETRIES
        )
        self._say(
            translate(self.language, "didnt_catch"),
            self.current_field_id,
            listen=retry,
            listen_delay=self.settings.ERROR_RETRY_DELAY,
        )

    def _handle_utterance(self, text: str, confidence: Optional[float]) -> None:
        if self.state == DialogueState.THINKING:
            logger.info(f"Ignoring input while processing previous answer: '{text}'")
            return

        self._stop_listening()
        self._add_user_message(text, confidence)

        field_id = self.current_field_id
        if not field_id:
            logger.warning("No current field set - user input ignored")
            return

        form_field = self.template.require_field(field_id)
        self.speech.stop_speaking()
        self.state = DialogueState.THINKING

        value = self.extractor.extract(text, form_field)
        logger.info(f"Extracted value {value!r} for field {field_id} from '{text}'")

        if not is_filled(value):
            self.state = DialogueState.IDLE
            self._say(translate(self.language, "didnt_catch"), field_id)
            return

        self._commit(field_id, value)

    def _commit(self, field_id: str, value: Optional[RawAnswer]) -> None:
        if field_id != self.current_field_id:
            # Direct edit of another field: store it, keep the conversation where it is
            self.answers.set(field_id, value)
            self._touch()
            return

        if not is_filled(value):
            self.answers.clear(field_id)
            self._touch()
            if self._ack_pending == field_id:
                self._cancel_ack()
            if self.state == DialogueState.THINKING:
                self.state = DialogueState.IDLE
            return

        self.answers.set(field_id, value)
        self._touch()
        if self._ack_pending == field_id:
            # One acknowledgement and one advance per answered field
            return

        self._stop_listening()
        self.speech.stop_speaking()
        self.state = DialogueState.THINKING
        self._ack_pending = field_id
        self._ack_timer = self._schedule(self.settings.THINKING_DELAY, self._on_acknowledge, field_id)

    def _cancel_ack(self) -> None:
        if self._ack_timer is not None:
            handle = self._timers.pop(self._ack_timer, None)
            if handle is not None:
                handle.cancel()
        self._ack_timer = None
        self._ack_pending = None

    def _on_acknowledge(self, field_id: str) -> None:
        self._ack_pending = None
        self._ack_timer = None
        self.state = DialogueState.IDLE
        self._say(translate(self.language, "got_it"))
        self._schedule(self.settings.ADVANCE_DELAY, self._advance, field_id)

    def _on_quick_reply(self, reply: str) -> None:
        if self.state == DialogueState.THINKING:
            logger.info(f"Ignoring quick reply while processing previous answer: '{reply}'")
            return

        self._add_user_message(reply)

        looks_good = all_translations("looks_good")
        if reply in looks_good or reply in all_translations("need_to_update"):
            self._stop_listening()
            self.speech.stop_speaking()
            self.state = DialogueState.THINKING
            self._schedule(self.settings.THINKING_DELAY, self._on_confirmation, reply in looks_good)
            return

        form_field = self.template.get_field(self.current_field_id) if self.current_field_id else None
        if form_field is not None and form_field.type.is_select:
            option = next((o for o in form_field.options or [] if o.label == reply), None)
            if option is not None:
                value = [option.value] if form_field.type == FieldType.MULTI_SELECT else option.value
                self._commit(form_field.id, value)
                return

        logger.info(f"Quick reply '{reply}' did not match any option for field {self.current_field_id}")

    def _on_confirmation(self, looks_good: bool) -> None:
        self.state = DialogueState.IDLE
        key = "looks_good_response" if looks_good else "need_to_update_response"
        self._say(translate(self.language, key))
        self._schedule(self.settings.CONFIRMATION_ADVANCE_DELAY, self._advance)

    def _on_click_field(self, field_id: str) -> None:
        form_field = self.template.require_field(field_id)

        # Jumping to a field supersedes whatever the conversation was doing
        self._cancel_timers()
        self.speech.stop_speaking()
        self.speech.stop_listening()
        self.state = DialogueState.IDLE
        self.interim_transcript = ""

        if field_id in self.skipped:
            self.skipped.remove(field_id)
        self.current_field_id = field_id
        self.guided_complete = False
        self._touch()

        prompt = self._field_prompt(form_field)
        self._say(
            translate(self.language, "help_with", form_field.label, prompt),
            field_id,
            self._quick_replies(form_field),
        )

    def _on_skip(self) -> None:
        if self.state == DialogueState.THINKING:
            return

        self._cancel_timers()
        self._stop_listening()
        self.speech.stop_speaking()
        self.state = DialogueState.IDLE

        if self.current_field_id and self.current_field_id not in self.skipped:
            self.skipped.append(self.current_field_id)
            logger.info(f"Field {self.current_field_id} skipped")

        self._add_user_message(translate(self.language, "skip_for_now"))
        self._say(translate(self.language, "skip_response"))
        self._schedule(self.settings.SKIP_ADVANCE_DELAY, self._advance)

    def _on_pause(self) -> None:
        if not self.voice_enabled or self.state != DialogueState.LISTENING:
            return
        self.speech.pause_listening()
        self.state = DialogueState.PAUSED

    def _on_resume(self) -> None:
        if self.state != DialogueState.PAUSED:
            return
        self.state = DialogueState.LISTENING
        self.speech.resume_listening()

    def _on_voice_toggle(self, enabled: bool) -> None:
        if not enabled:
            self.voice_enabled = False
            self.speech.stop_speaking()
            self.speech.stop_listening()
            self._cancel_listen_timer()
            self.state = DialogueState.IDLE
            self.interim_transcript = ""
            return

        self.voice_enabled = True
        if self.current_field_id:
            self._schedule_listen(self.settings.LISTEN_RESTART_DELAY)

    def _on_toggle_mic(self) -> None:
        if self.state in (DialogueState.LISTENING, DialogueState.PAUSED):
            self._stop_listening()
        else:
            self._begin_listening()

    def _on_repeat(self) -> None:
        if self.last_assistant_message:
            self._say(self.last_assistant_message, self.current_field_id)

    def _on_rephrase(self) -> None:
        if not self.current_field_id:
            return
        form_field = self.template.require_field(self.current_field_id)
        self._say(self._rng.choice(rephrasings(form_field.label, self.language)), self.current_field_id)

    def _on_language_change(self, language: str) -> None:
        self.language = language
        self.speech.set_language(language)
        self._touch()
        self._say(translate(language, "language_changed"))

    def _on_review(self) -> List[ValidationIssue]:
        self.validation_issues = validate_all(self.template, self.answers)
        if self.validation_issues:
            self._say(translate(self.language, "validation_error", len(self.validation_issues)))
        return self.validation_issues

    def _on_submit(self) -> SubmitResult:
        issues = self._on_review()
        if issues:
            return SubmitResult(success=False, issues=issues)

        answers = self.answers.to_dict()
        summary = generate_summary(self.template, answers)
        try:
            if self.submission_sink is None:
                raise RuntimeError("No submission sink configured")
            submission = self.submission_sink.create_submission(self.template.id, answers, summary)
        except Exception as e:
            # The draft stays so the user can retry
            logger.error(f"Error submitting form {self.template.id}: {e}")
            self._say(translate(self.language, "submit_error"))
            return SubmitResult(success=False, summary=summary, error=str(e))

        self.submitted = True
        if self._autosaver is not None:
            self._autosaver.discard()
        self._cancel_timers()
        self._stop_listening()
        self._say(translate(self.language, "submit_success"))
        logger.info(f"Form {self.template.id} submitted")
        return SubmitResult(
            success=True,
            summary=summary,
            submission_id=getattr(submission, "id", None),
        )
