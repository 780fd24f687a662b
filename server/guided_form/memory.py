import time
import uuid
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    field_id: Optional[str] = None
    quick_replies: Optional[List[str]] = None
    confidence: Optional[float] = None


class Draft(BaseModel):
    """Resumable snapshot of an in-progress guided session"""
    id: Optional[str] = None
    template_id: str
    template_name: str
    answers: Dict[str, Any] = Field(default_factory=dict)
    chat_history: List[ChatMessage] = Field(default_factory=list)
    current_field_id: Optional[str] = None
    skipped_fields: List[str] = Field(default_factory=list)
    progress_percent: int = 0
    missing_required: int = 0
    language: str = "en-US"
    updated_at: float = Field(default_factory=time.time)


class DraftStore(Protocol):
    def upsert(self, draft: Draft) -> str: ...

    def get(self, draft_id: str) -> Optional[Draft]: ...

    def delete(self, draft_id: str) -> bool: ...


class InMemoryDraftStore:
    """Thread-safe in-memory draft store (replace with database in production)"""

    def __init__(self):
        self.drafts: Dict[str, Draft] = {}
        self._lock = threading.RLock()

    def upsert(self, draft: Draft) -> str:
        """Create the draft on first save, replace it afterwards"""
        with self._lock:
            draft_id = draft.id or uuid.uuid4().hex
            self.drafts[draft_id] = draft.model_copy(update={"id": draft_id, "updated_at": time.time()})
            return draft_id

    def get(self, draft_id: str) -> Optional[Draft]:
        with self._lock:
            return self.drafts.get(draft_id)

    def delete(self, draft_id: str) -> bool:
        """Delete a specific draft"""
        with self._lock:
            return self.drafts.pop(draft_id, None) is not None

    def list_drafts(self, template_id: Optional[str] = None) -> List[Draft]:
        with self._lock:
            return [d for d in self.drafts.values() if template_id is None or d.template_id == template_id]
