from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    ENV: str = "dev"
    PORT: int = 8000
    LOG_LEVEL: str = "info"
    ALLOWED_ORIGINS: List[str] = ["*"]

    # Gemini (optional extraction backend)
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.0-flash-lite"
    EXTRACTION_BACKEND: str = "heuristic"   # heuristic | gemini

    # Whisper
    WHISPER_MODEL_SIZE: str = "base"
    WHISPER_DEVICE: str = "auto"

    # TTS
    TTS_BACKEND: str = "pyttsx3"
    TTS_VOICE: str = "default"
    TTS_RATE: int = 0
    TTS_COMPLETE_ON_RENDER: bool = False   # server-side playback, no client acknowledgement

    # Dialogue
    DEFAULT_LANGUAGE: str = "en-US"
    QUICK_REPLY_LIMIT: int = 4

    # Sessions
    SESSION_TIMEOUT_HOURS: float = 24
    SESSION_CLEANUP_INTERVAL_SECONDS: float = 3600

    # Dialogue timings, in seconds
    AUTOSAVE_DEBOUNCE_SECONDS: float = 1.0
    WELCOME_ADVANCE_DELAY: float = 3.5
    THINKING_DELAY: float = 1.0
    ADVANCE_DELAY: float = 1.8
    CONFIRMATION_ADVANCE_DELAY: float = 3.0
    SKIP_ADVANCE_DELAY: float = 1.0
    LISTEN_RESTART_DELAY: float = 0.5
    ERROR_RETRY_DELAY: float = 1.0

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
