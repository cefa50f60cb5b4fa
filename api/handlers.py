# api/handlers.py
"""
Request handlers behind the HTTP routes.

Each handler validates its body, builds prompts, delegates to the
FallbackOrchestrator and post-processes the result. Failures are raised as
core.exceptions errors and mapped to responses by error_response(); no
handler retries anything itself.
"""
import logging
from typing import Dict, Optional, Tuple

from fastapi.responses import JSONResponse

from api.schemas import ChatBody, GenerateBody
from core.config import Settings, resolve_models
from core.exceptions import (
    ConfigurationError,
    DiagramServiceError,
    ErrorKind,
    FallbackExhaustedError,
    InvalidRequestError,
    retry_message,
)
from llm.fallback import FallbackOrchestrator, FallbackStream
from llm.prompts import (
    CHAT_SYSTEM_PROMPT,
    ChatMessage,
    ChatRequest,
    DiagramKind,
    GenerationRequest,
    Role,
    chat_prompt,
    generation_prompt,
    system_prompt,
)
from llm.text import strip_code_fence

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 5


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------
def _clean_model(model: Optional[str]) -> Optional[str]:
    if model is None:
        return None
    return model.strip() or None


def parse_generation_request(body: GenerateBody) -> GenerationRequest:
    description = (body.description or "").strip()
    kind = (body.type or "").strip().lower()
    if not description or not kind:
        raise InvalidRequestError("Missing description or type")
    try:
        diagram_kind = DiagramKind(kind)
    except ValueError:
        allowed = ", ".join(k.value for k in DiagramKind)
        raise InvalidRequestError(f"Unsupported diagram type {body.type!r}; expected one of: {allowed}")
    return GenerationRequest(description=description, diagram_kind=diagram_kind, model_override=_clean_model(body.model))


def parse_chat_request(body: ChatBody) -> ChatRequest:
    if not body.messages:
        raise InvalidRequestError("Missing messages")

    history = []
    for index, message in enumerate(body.messages):
        try:
            role = Role((message.role or "").strip().lower())
        except ValueError:
            raise InvalidRequestError(f"messages[{index}].role must be one of: user, assistant, system")
        if not isinstance(message.content, str):
            raise InvalidRequestError(f"messages[{index}].content must be text")
        history.append(ChatMessage(role=role, content=message.content))

    return ChatRequest(history=tuple(history), diagram=body.diagram, model_override=_clean_model(body.model))


# ----------------------------------------------------------------------
# Handlers
# ----------------------------------------------------------------------
async def handle_generate(body: GenerateBody, orchestrator: FallbackOrchestrator, settings: Settings) -> Dict[str, str]:
    request = parse_generation_request(body)
    orchestrator.ensure_ready()
    selection = resolve_models(request.model_override, settings)
    logger.info("Generating diagram", extra={
        "diagram_kind": request.diagram_kind.value,
        "model": selection.primary,
        "fallback_model": selection.fallback,
    })
    raw = await orchestrator.generate(system_prompt(request.diagram_kind), generation_prompt(request), selection)
    return {"code": strip_code_fence(raw)}


async def handle_chat(body: ChatBody, orchestrator: FallbackOrchestrator, settings: Settings) -> Dict[str, str]:
    request = parse_chat_request(body)
    orchestrator.ensure_ready()
    selection = resolve_models(request.model_override, settings)
    logger.info("Chat turn", extra={"turns": len(request.history), "model": selection.primary})
    raw = await orchestrator.generate(CHAT_SYSTEM_PROMPT, chat_prompt(request), selection)
    return {"message": strip_code_fence(raw)}


async def open_chat_stream(body: ChatBody, orchestrator: FallbackOrchestrator, settings: Settings) -> FallbackStream:
    """
    Validate and open the provider stream for /api/chat-stream.

    Everything that can fail before the event channel opens fails here, so
    the route can still answer with a plain JSON error.
    """
    request = parse_chat_request(body)
    orchestrator.ensure_ready()
    selection = resolve_models(request.model_override, settings)
    logger.info("Opening chat stream", extra={"turns": len(request.history), "model": selection.primary})
    return await orchestrator.open_stream(CHAT_SYSTEM_PROMPT, chat_prompt(request), selection)


# ----------------------------------------------------------------------
# Error mapping
# ----------------------------------------------------------------------
def error_payload(exc: BaseException) -> Tuple[int, Dict[str, str], Dict[str, str]]:
    """Return (status, body, headers) for a failed request."""
    headers: Dict[str, str] = {}
    if isinstance(exc, InvalidRequestError):
        return 400, {"error": str(exc), "detail": str(exc)}, headers
    if isinstance(exc, ConfigurationError):
        return 500, {"error": "LLM provider not configured", "detail": str(exc)}, headers
    if isinstance(exc, DiagramServiceError) and exc.kind in (ErrorKind.TRANSIENT_PROVIDER, ErrorKind.TRANSPORT):
        headers["Retry-After"] = str(RETRY_AFTER_SECONDS)
        if isinstance(exc, FallbackExhaustedError):
            message = "Primary and fallback models are unavailable, please retry shortly"
        else:
            message = retry_message(exc)
        return 503, {"error": message, "detail": str(exc)}, headers
    return 500, {"error": "Generation failed", "detail": str(exc) or type(exc).__name__}, headers


def error_response(exc: BaseException) -> JSONResponse:
    status, body, headers = error_payload(exc)
    return JSONResponse(status_code=status, content=body, headers=headers)
