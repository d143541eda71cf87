import os
import logging
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

# ---------- Provider selector ----------
PROVIDER_ALIASES = {
    "mock": "mock",
    "real": "real",
    "ollama": "real",
    "openai": "real",
}

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class Settings(BaseModel):
    llm_provider: str = "mock"
    mock_llm_delay: float = Field(default=1.0, ge=0)
    mock_llm_failure_rate: float = Field(default=0.0, ge=0, le=1)
    mock_llm_hang_rate: float = Field(default=0.0, ge=0, le=1)
    llm_base_url: str = "http://localhost:11434/v1"
    llm_model: str = "llama3"
    llm_api_key: str = "not-needed"
    llm_timeout: float = Field(default=12.0, gt=0)
    llm_max_retries: int = Field(default=2, ge=0)
    llm_backoff_base: float = Field(default=0.5, ge=0)

    mongo_uri: str = "mongodb://localhost:27017"
    db_name: str = "convochat"
    port: int = 8000
    log_level: str = "INFO"

    cursor_secret: str = "convochat-dev-cursor"
    duplicate_window_seconds: float = Field(default=300.0, gt=0)
    serialize_sends: bool = False
    cors_origins: List[str] = ["*"]

    @field_validator("llm_provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        key = value.strip().lower()
        if key not in PROVIDER_ALIASES:
            raise ValueError(f"Unknown LLM provider: {value}. Must be 'mock' or 'real'")
        return PROVIDER_ALIASES[key]

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {value}")
        return level


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    """Build settings from the environment (and a .env file, if present)."""
    load_dotenv()
    return Settings(
        llm_provider=os.getenv("LLM_PROVIDER", "mock"),
        mock_llm_delay=os.getenv("MOCK_LLM_DELAY", "1.0"),
        mock_llm_failure_rate=os.getenv("MOCK_LLM_FAILURE_RATE", "0"),
        mock_llm_hang_rate=os.getenv("MOCK_LLM_HANG_RATE", "0"),
        llm_base_url=os.getenv("LLM_BASE_URL", "http://localhost:11434/v1"),
        llm_model=os.getenv("LLM_MODEL", "llama3"),
        llm_api_key=os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY") or "not-needed",
        llm_timeout=os.getenv("LLM_TIMEOUT", "12"),
        llm_max_retries=os.getenv("LLM_MAX_RETRIES", "2"),
        llm_backoff_base=os.getenv("LLM_BACKOFF_BASE", "0.5"),
        mongo_uri=os.getenv("MONGO_URI", "mongodb://localhost:27017"),
        db_name=os.getenv("DB_NAME", "convochat"),
        port=os.getenv("PORT", "8000"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        cursor_secret=os.getenv("CURSOR_SECRET", "convochat-dev-cursor"),
        duplicate_window_seconds=os.getenv("DUPLICATE_WINDOW_SECONDS", "300"),
        serialize_sends=_env_bool("SERIALIZE_SENDS"),
        cors_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("convochat").setLevel(level)
