import asyncio
import traceback
import logging
from datetime import datetime
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import settings
from .form_builder import FormStore, UnknownTemplateError, initialize_sample_forms
from .llm import build_extractor
from .memory import InMemoryDraftStore
from .schemas import (
    AudioRequest,
    DraftResponse,
    FieldValueRequest,
    LanguageRequest,
    MessageRequest,
    QuickReplyRequest,
    SessionResponse,
    SpeechDoneRequest,
    StartSessionRequest,
    SubmitResponse,
    VoiceRequest,
)
from .sessions import GuidedSession, SessionNotFoundError, SessionRegistry
from .stt import WhisperRecognizer
from .summary import generate_summary
from .tts import Pyttsx3Synthesizer

load_dotenv()

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def make_synthesizer():
    if settings.TTS_BACKEND.lower() == "pyttsx3":
        return Pyttsx3Synthesizer(
            rate=settings.TTS_RATE,
            voice=settings.TTS_VOICE,
            complete_on_render=settings.TTS_COMPLETE_ON_RENDER,
        )
    logger.info(f"TTS backend '{settings.TTS_BACKEND}' disabled - text-only prompts")
    return None


def make_recognizer():
    return WhisperRecognizer(settings.WHISPER_MODEL_SIZE, settings.WHISPER_DEVICE)


async def session_cleanup_worker(registry: SessionRegistry, interval: float):
    """Periodically close sessions that have been idle past the timeout"""
    while True:
        await asyncio.sleep(interval)
        try:
            registry.cleanup_expired()
        except Exception as e:
            logger.error(f"Error in session cleanup: {e}")


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown"""
    logger.info("Guided form service starting up...")

    form_store = FormStore()
    initialize_sample_forms(form_store)
    draft_store = InMemoryDraftStore()

    app.state.form_store = form_store
    app.state.draft_store = draft_store
    app.state.sessions = SessionRegistry(
        form_store,
        draft_store,
        synthesizer_factory=make_synthesizer,
        recognizer_factory=make_recognizer,
        extractor=build_extractor(settings),
    )
    logger.info(f"Loaded {len(form_store.list_templates())} form template(s)")

    cleanup_task = asyncio.create_task(
        session_cleanup_worker(app.state.sessions, settings.SESSION_CLEANUP_INTERVAL_SECONDS)
    )

    yield

    logger.info("Guided form service shutting down...")
    cleanup_task.cancel()
    app.state.sessions.close_all()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Guided Form Completion Service",
    description="Conversational, voice-capable form filling one field at a time",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(SessionNotFoundError)
@app.exception_handler(UnknownTemplateError)
async def not_found_exception_handler(request: Request, exc: LookupError):
    logger.warning(f"Not found: {exc}")
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc), "type": "not_found"}
    )


@app.exception_handler(ValueError)
async def validation_exception_handler(request: Request, exc: ValueError):
    logger.warning(f"Validation error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc), "type": "validation_error"}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {exc}\n{traceback.format_exc()}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "An internal server error occurred",
            "type": "server_error",
            "timestamp": datetime.now().isoformat()
        }
    )


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def get_form_store(request: Request) -> FormStore:
    return request.app.state.form_store


def _session_response(session: GuidedSession) -> dict:
    return {
        "session_id": session.id,
        "session": session.orchestrator.snapshot(),
        "audio": session.drain_audio(),
    }


# Health check
@app.get("/health")
def health():
    """Basic health check"""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": VERSION
    }


# Form templates
@app.get("/forms")
def list_forms(form_store: FormStore = Depends(get_form_store)):
    """List available form templates"""
    forms = [
        {
            "id": t.id,
            "name": t.name,
            "description": t.description,
            "field_count": len(t.all_fields()),
            "required_count": sum(1 for f in t.all_fields() if f.required),
        }
        for t in form_store.list_templates()
    ]
    return {"status": "success", "forms": forms, "total": len(forms)}


@app.get("/forms/{template_id}")
def get_form(template_id: str, form_store: FormStore = Depends(get_form_store)):
    """Get form template by ID"""
    template = form_store.get_template(template_id)
    if not template:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Form not found"
        )
    return {"status": "success", "form": template.model_dump()}


# Drafts
@app.get("/drafts")
def list_drafts(request: Request, template_id: Optional[str] = Query(None)):
    """Saved drafts available for resuming, newest first"""
    drafts = sorted(
        request.app.state.draft_store.list_drafts(template_id),
        key=lambda d: d.updated_at,
        reverse=True,
    )
    return {
        "status": "success",
        "drafts": [
            {
                "id": d.id,
                "template_id": d.template_id,
                "template_name": d.template_name,
                "progress_percent": d.progress_percent,
                "missing_required": d.missing_required,
                "updated_at": d.updated_at,
            }
            for d in drafts
        ],
    }


# Sessions
# Session endpoints are async so dialogue timers land on the running event loop
@app.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(req: StartSessionRequest, registry: SessionRegistry = Depends(get_registry)):
    """Start a guided session for a template, or resume one from a draft"""
    session = registry.create(
        template_id=req.template_id,
        profile=req.profile,
        draft_id=req.draft_id,
        language=req.language,
        voice=req.voice,
    )
    return _session_response(session)


@app.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    return _session_response(registry.get(session_id))


@app.delete("/sessions/{session_id}")
async def close_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    registry.close(session_id)
    return {"status": "success", "message": f"Session {session_id} closed"}


# Admin
@app.delete("/admin/sessions/cleanup")
async def cleanup_expired_sessions(registry: SessionRegistry = Depends(get_registry)):
    """Close sessions idle past SESSION_TIMEOUT_HOURS"""
    cleaned = registry.cleanup_expired()
    return {
        "status": "success",
        "cleaned_sessions": cleaned,
        "active_sessions": len(registry),
        "timestamp": datetime.now().isoformat(),
    }


@app.post("/sessions/{session_id}/message", response_model=SessionResponse)
async def send_message(session_id: str, req: MessageRequest, registry: SessionRegistry = Depends(get_registry)):
    """Typed answer for the current field"""
    session = registry.get(session_id)
    session.orchestrator.submit_text(req.text, req.confidence)
    return _session_response(session)


@app.post("/sessions/{session_id}/quick-reply", response_model=SessionResponse)
async def quick_reply(session_id: str, req: QuickReplyRequest, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(session_id)
    session.orchestrator.quick_reply(req.reply)
    return _session_response(session)


@app.post("/sessions/{session_id}/skip", response_model=SessionResponse)
async def skip_field(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(session_id)
    session.orchestrator.skip()
    return _session_response(session)


@app.post("/sessions/{session_id}/pause", response_model=SessionResponse)
async def pause_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(session_id)
    session.orchestrator.pause()
    return _session_response(session)


@app.post("/sessions/{session_id}/resume", response_model=SessionResponse)
async def resume_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(session_id)
    session.orchestrator.resume()
    return _session_response(session)


@app.post("/sessions/{session_id}/mic", response_model=SessionResponse)
async def toggle_mic(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(session_id)
    session.orchestrator.toggle_mic()
    return _session_response(session)


@app.post("/sessions/{session_id}/repeat", response_model=SessionResponse)
async def repeat_prompt(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(session_id)
    session.orchestrator.repeat()
    return _session_response(session)


@app.post("/sessions/{session_id}/rephrase", response_model=SessionResponse)
async def rephrase_prompt(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(session_id)
    session.orchestrator.rephrase()
    return _session_response(session)


@app.post("/sessions/{session_id}/speech-done", response_model=SessionResponse)
async def speech_done(session_id: str, req: Optional[SpeechDoneRequest] = None,
                      registry: SessionRegistry = Depends(get_registry)):
    """Client finished playing the last rendered clip"""
    session = registry.get(session_id)
    finished = getattr(session.synthesizer, "playback_finished", None)
    if finished is None:
        raise ValueError("Speech synthesis is not enabled for this session")
    finished(req.utterance_id if req else None)
    return _session_response(session)


@app.post("/sessions/{session_id}/audio", response_model=SessionResponse)
async def send_audio(session_id: str, req: AudioRequest, registry: SessionRegistry = Depends(get_registry)):
    """Recorded clip for the active listening session"""
    session = registry.get(session_id)
    feed = getattr(session.recognizer, "feed_audio_b64", None)
    if feed is None:
        raise ValueError("Speech recognition is not enabled for this session")
    feed(req.audio_b64)
    return _session_response(session)


@app.post("/sessions/{session_id}/fields/{field_id}/click", response_model=SessionResponse)
async def click_field(session_id: str, field_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(session_id)
    session.orchestrator.click_field(field_id)
    return _session_response(session)


@app.put("/sessions/{session_id}/fields/{field_id}", response_model=SessionResponse)
async def edit_field(session_id: str, field_id: str, req: FieldValueRequest,
                     registry: SessionRegistry = Depends(get_registry)):
    """Direct edit of a field value from the form"""
    session = registry.get(session_id)
    session.orchestrator.edit_field(field_id, req.value)
    return _session_response(session)


@app.put("/sessions/{session_id}/voice", response_model=SessionResponse)
async def set_voice(session_id: str, req: VoiceRequest, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(session_id)
    session.orchestrator.set_voice_enabled(req.enabled)
    return _session_response(session)


@app.put("/sessions/{session_id}/language", response_model=SessionResponse)
async def set_language(session_id: str, req: LanguageRequest, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(session_id)
    session.orchestrator.set_language(req.language)
    return _session_response(session)


@app.post("/sessions/{session_id}/review", response_model=SessionResponse)
async def review_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(session_id)
    session.orchestrator.review()
    return _session_response(session)


@app.post("/sessions/{session_id}/submit", response_model=SubmitResponse)
async def submit_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Validate and submit the form; validation errors are reported, not raised"""
    session = registry.get(session_id)
    result = session.orchestrator.submit()
    return {
        **_session_response(session),
        "success": result.success,
        "errors": [issue._asdict() for issue in result.issues],
        "submission_id": result.submission_id,
        "summary": result.summary,
        "error": result.error,
    }


@app.post("/sessions/{session_id}/draft", response_model=DraftResponse)
async def save_draft(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(session_id)
    return {"session_id": session.id, "draft_id": session.orchestrator.save_draft()}


@app.get("/sessions/{session_id}/summary", response_class=PlainTextResponse)
async def download_summary(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Plain-text summary of the current answers"""
    session = registry.get(session_id)
    orchestrator = session.orchestrator
    summary = generate_summary(orchestrator.template, orchestrator.answers.to_dict())
    filename = f"{orchestrator.template.id}_summary.txt"
    return PlainTextResponse(summary, headers={"Content-Disposition": f'attachment; filename="{filename}"'})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "guided_form.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.ENV == "dev",
        log_level=settings.LOG_LEVEL
    )
