from pydantic import BaseModel, Field
from typing import Dict, List, Any, Optional, Union

from .profile import UserProfile


class StartSessionRequest(BaseModel):
    template_id: Optional[str] = None
    draft_id: Optional[str] = None
    profile: Optional[UserProfile] = None
    language: Optional[str] = None
    voice: bool = True


class MessageRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=1000)
    confidence: float = Field(1.0, ge=0.0, le=1.0)


class QuickReplyRequest(BaseModel):
    reply: str = Field(..., min_length=1)


class FieldValueRequest(BaseModel):
    value: Optional[Union[str, List[str]]] = None


class VoiceRequest(BaseModel):
    enabled: bool


class LanguageRequest(BaseModel):
    language: str = Field(..., min_length=2)


class AudioRequest(BaseModel):
    audio_b64: str = Field(..., min_length=1)


class SpeechDoneRequest(BaseModel):
    utterance_id: Optional[str] = None


class AudioClip(BaseModel):
    id: str
    text: str
    language: str
    audio_b64: str


class SessionResponse(BaseModel):
    session_id: str
    session: Dict[str, Any]
    audio: List[AudioClip] = []


class SubmitResponse(SessionResponse):
    success: bool
    errors: List[Dict[str, str]] = []
    submission_id: Optional[str] = None
    summary: Optional[str] = None
    error: Optional[str] = None


class DraftResponse(BaseModel):
    session_id: str
    draft_id: Optional[str]
