import time
import uuid
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .clock import AsyncioClock, Clock
from .config import Settings, settings as default_settings
from .extraction import ValueExtractor
from .form_builder import FormStore
from .memory import DraftStore
from .orchestrator import DialogueOrchestrator
from .profile import UserProfile
from .speech import SpeechIOManager

logger = logging.getLogger(__name__)


class SessionNotFoundError(LookupError):
    pass


@dataclass
class GuidedSession:
    id: str
    orchestrator: DialogueOrchestrator
    synthesizer: Any = None
    recognizer: Any = None
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)

    def drain_audio(self) -> List[Dict[str, str]]:
        drain = getattr(self.synthesizer, "drain_audio", None)
        return drain() if drain else []


class SessionRegistry:
    """Live guided sessions, one orchestrator and speech adapter pair each"""

    def __init__(
        self,
        form_store: FormStore,
        draft_store: DraftStore,
        synthesizer_factory: Callable[[], Any] = lambda: None,
        recognizer_factory: Callable[[], Any] = lambda: None,
        clock_factory: Callable[[], Clock] = AsyncioClock,
        extractor: Optional[ValueExtractor] = None,
        settings: Settings = default_settings,
    ):
        self.form_store = form_store
        self.draft_store = draft_store
        self.synthesizer_factory = synthesizer_factory
        self.recognizer_factory = recognizer_factory
        self.clock_factory = clock_factory
        self.extractor = extractor or ValueExtractor()
        self.settings = settings
        self._sessions: Dict[str, GuidedSession] = {}
        self._lock = threading.RLock()

    def create(
        self,
        template_id: Optional[str] = None,
        profile: Optional[UserProfile] = None,
        draft_id: Optional[str] = None,
        language: Optional[str] = None,
        voice: bool = True,
    ) -> GuidedSession:
        """Start a new session, or resume one from a saved draft"""
        draft = None
        if draft_id:
            draft = self.draft_store.get(draft_id)
            if draft is None:
                raise SessionNotFoundError(f"Draft {draft_id} not found")
            template_id = draft.template_id
        if not template_id:
            raise ValueError("template_id or draft_id is required")

        template = self.form_store.require_template(template_id)
        synthesizer = self.synthesizer_factory()
        recognizer = self.recognizer_factory()
        speech = SpeechIOManager(synthesizer, recognizer, language or self.settings.DEFAULT_LANGUAGE)

        orchestrator = DialogueOrchestrator(
            template,
            speech,
            self.clock_factory(),
            draft_store=self.draft_store,
            submission_sink=self.form_store,
            profile=profile,
            extractor=self.extractor,
            draft=draft,
            language=language,
            settings=self.settings,
        )
        session = GuidedSession(
            id=uuid.uuid4().hex,
            orchestrator=orchestrator,
            synthesizer=synthesizer,
            recognizer=recognizer,
        )
        with self._lock:
            self._sessions[session.id] = session

        orchestrator.start(voice=voice)
        logger.info(f"Session {session.id} created for template {template_id} (draft={draft_id})")
        return session

    def get(self, session_id: str) -> GuidedSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        session.last_activity = time.time()
        return session

    def close(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        session.orchestrator.close()
        logger.info(f"Session {session_id} closed")

    def cleanup_expired(self, now: Optional[float] = None) -> int:
        """Close sessions idle for longer than SESSION_TIMEOUT_HOURS.

        Closing flushes any pending autosave, so an abandoned session can
        still be resumed from its draft.
        """
        now = time.time() if now is None else now
        timeout = self.settings.SESSION_TIMEOUT_HOURS * 3600
        with self._lock:
            expired = [s for s in self._sessions.values() if now - s.last_activity > timeout]
            for session in expired:
                del self._sessions[session.id]

        for session in expired:
            try:
                session.orchestrator.close()
            except Exception as e:
                logger.error(f"Error closing expired session {session.id}: {e}")

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired session(s)")
        return len(expired)

    def close_all(self) -> None:
        with self._lock:
            sessions, self._sessions = list(self._sessions.values()), {}
        for session in sessions:
            try:
                session.orchestrator.close()
            except Exception as e:
                logger.error(f"Error closing session {session.id}: {e}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
