# core/config.py
"""
Process-wide configuration, read once at startup and immutable afterwards.

Environment variables (a `.env` file in the project root is loaded first):
    GEMINI_API_KEY         - provider credential (LLM_API_KEY is accepted as an alias)
    LLM_BASE_URL           - OpenAI-compatible endpoint (defaults to Gemini's)
    GEMINI_MODEL           - default primary model
    GEMINI_FALLBACK_MODEL  - default fallback model ("" disables fallback)
    ALLOWED_ORIGINS        - comma-separated CORS allow-list
    PORT                   - listen port
    LLM_TIMEOUT            - provider request timeout (seconds)
    LLM_TEMPERATURE        - sampling temperature
    LLM_MAX_ATTEMPTS       - attempts per model, including the first
    LLM_RETRY_BASE_DELAY   - first backoff delay (seconds)
    LLM_RETRY_JITTER       - max random jitter added to each backoff (seconds)
    MAX_BODY_BYTES         - largest accepted request body (bytes)
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple
from urllib.parse import urlparse

from dotenv import load_dotenv

from core.retry import RetryPolicy

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parent.parent

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
DEFAULT_MODEL = "gemini-2.5-pro"
DEFAULT_FALLBACK_MODEL = "gemini-2.5-flash"
DEFAULT_PORT = 3001
DEFAULT_MAX_BODY_BYTES = 1024 * 1024

# Common localhost dev ports (5173-5176, 3000-3001) on localhost and 127.0.0.1
DEFAULT_ALLOWED_ORIGINS: Tuple[str, ...] = tuple(
    f"http://{host}:{port}"
    for host in ("localhost", "127.0.0.1")
    for port in (5173, 5174, 5175, 5176, 3000, 3001)
)


def parse_origins(raw: Optional[str]) -> Tuple[str, ...]:
    """Validate and sanitize a comma-separated origin list."""
    if not raw:
        return DEFAULT_ALLOWED_ORIGINS

    origins = []
    for origin in (o.strip() for o in raw.split(",")):
        if not origin:
            continue
        parsed = urlparse(origin)
        if parsed.scheme in {"http", "https"} and parsed.netloc:
            origins.append(origin.rstrip("/"))
        else:
            logger.warning("Invalid CORS origin ignored", extra={"origin": origin})
    return tuple(origins)


@dataclass(frozen=True)
class ModelSelection:
    """Primary and backup model used in sequence for one logical generation."""
    primary: str
    fallback: Optional[str] = None

    @property
    def has_fallback(self) -> bool:
        return bool(self.fallback) and self.fallback != self.primary


@dataclass(frozen=True)
class Settings:
    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    default_model: str = DEFAULT_MODEL
    fallback_model: Optional[str] = DEFAULT_FALLBACK_MODEL
    allowed_origins: Tuple[str, ...] = DEFAULT_ALLOWED_ORIGINS
    port: int = DEFAULT_PORT
    request_timeout: float = 60.0
    temperature: float = 0.2
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, load_env_file: bool = True) -> "Settings":
        if environ is None:
            if load_env_file:
                load_dotenv(ROOT_DIR / ".env")
            environ = os.environ

        def _get(name: str, default=None):
            value = environ.get(name)
            if value is None or not value.strip():
                return default
            return value.strip()

        fallback = environ.get("GEMINI_FALLBACK_MODEL")
        if fallback is None:
            fallback = DEFAULT_FALLBACK_MODEL

        return cls(
            api_key=_get("GEMINI_API_KEY") or _get("LLM_API_KEY"),
            base_url=_get("LLM_BASE_URL", DEFAULT_BASE_URL),
            default_model=_get("GEMINI_MODEL", DEFAULT_MODEL),
            fallback_model=fallback.strip() or None,
            allowed_origins=parse_origins(_get("ALLOWED_ORIGINS")),
            port=int(_get("PORT", DEFAULT_PORT)),
            request_timeout=float(_get("LLM_TIMEOUT", 60.0)),
            max_body_bytes=int(_get("MAX_BODY_BYTES", DEFAULT_MAX_BODY_BYTES)),
            temperature=float(_get("LLM_TEMPERATURE", 0.2)),
            retry=RetryPolicy(
                max_attempts=int(_get("LLM_MAX_ATTEMPTS", 3)),
                base_delay=float(_get("LLM_RETRY_BASE_DELAY", 0.5)),
                jitter_max=float(_get("LLM_RETRY_JITTER", 0.25)),
            ),
        )


def resolve_models(override: Optional[str], settings: Settings) -> ModelSelection:
    """
    Resolve the model pair for one request.

    Priority: request override -> environment default -> hard-coded default
    (the last two are already folded into `settings` at startup).
    """
    primary = (override or "").strip() or settings.default_model or DEFAULT_MODEL
    return ModelSelection(primary=primary, fallback=settings.fallback_model)
