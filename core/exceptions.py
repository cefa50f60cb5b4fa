# core/exceptions.py
"""
Centralized exception definitions for the diagram chat server.

Why this exists:
- Avoid circular imports
- Provide a common base exception (DiagramServiceError)
- Classify provider failures once, at the adapter boundary
- Make retry and fallback decisions read a tag instead of raw error shapes
- Improve testability
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Error taxonomy shared by the retry, fallback and HTTP layers."""
    VALIDATION = "validation"
    TRANSIENT_PROVIDER = "transient_provider"
    TERMINAL_PROVIDER = "terminal_provider"
    CONFIGURATION = "configuration"
    TRANSPORT = "transport"


# ============================================================
# Base Exceptions
# ============================================================

class DiagramServiceError(Exception):
    """
    Root base exception for the entire application.
    All custom exceptions should inherit from this.
    """
    kind: ErrorKind = ErrorKind.TERMINAL_PROVIDER

    @property
    def is_transient(self) -> bool:
        return self.kind in (ErrorKind.TRANSIENT_PROVIDER, ErrorKind.TRANSPORT)


class InvalidRequestError(DiagramServiceError):
    """
    Missing or malformed request fields. Never retried.
    """
    kind = ErrorKind.VALIDATION


class ConfigurationError(DiagramServiceError):
    """
    Raised before any provider call when the provider credential is missing.
    """
    kind = ErrorKind.CONFIGURATION


class LLMError(DiagramServiceError):
    """
    Base exception for all LLM-related failures.
    """
    pass


# ============================================================
# Provider failures (assigned by llm.provider.classify_provider_error)
# ============================================================

class ProviderError(LLMError):
    """
    A failed provider call, tagged with its classification.

    Attributes:
        model: Model name the call was made against.
        status_code: HTTP status returned by the provider, if any.
        reason: Short machine-readable reason ("rate_limited", "overloaded", ...).
    """

    def __init__(
        self,
        message: str,
        *,
        model: Optional[str] = None,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.model = model
        self.status_code = status_code
        self.reason = reason


class TransientProviderError(ProviderError):
    """Rate-limit or overload signal. Retried, then eligible for fallback."""
    kind = ErrorKind.TRANSIENT_PROVIDER


class TerminalProviderError(ProviderError):
    """Any other provider failure (bad request, auth, empty completion)."""
    kind = ErrorKind.TERMINAL_PROVIDER


class TransportError(ProviderError):
    """Network-level failure on a single-shot or streaming call."""
    kind = ErrorKind.TRANSPORT


class FallbackExhaustedError(ProviderError):
    """
    Both the primary and the fallback model failed.

    Carries the fallback's classification so callers map it the same way
    they would map the fallback error on its own.
    """

    def __init__(self, fallback_error: ProviderError, primary_error: BaseException):
        super().__init__(
            f"Fallback model {fallback_error.model} also failed: {fallback_error.message}",
            model=fallback_error.model,
            status_code=fallback_error.status_code,
            reason=fallback_error.reason,
        )
        self.kind = fallback_error.kind
        self.fallback_error = fallback_error
        self.primary_error = primary_error


# ============================================================
# Streaming
# ============================================================

class StreamProtocolError(DiagramServiceError):
    """
    Raised when a frame is emitted on a channel that already terminated.
    """
    kind = ErrorKind.TERMINAL_PROVIDER


# ============================================================
# User-facing wording for retryable failures
# ============================================================

_RETRY_MESSAGES = {
    "rate_limited": "The model is rate limited, please retry shortly",
    "transport": "The model provider is unreachable, please retry shortly",
}


def retry_message(exc: BaseException) -> str:
    """Short client-facing message for a transient failure, chosen by its reason."""
    return _RETRY_MESSAGES.get(getattr(exc, "reason", None), "The model is overloaded, please retry shortly")
