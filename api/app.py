# api/app.py
# NOTE:
# Handlers raise core.exceptions errors; the exception handlers registered in
# create_app() turn them into {error, detail} payloads. /api/chat-stream opens
# the provider stream BEFORE returning the StreamingResponse, so failures that
# happen before the event channel exists still get a synchronous JSON error.

import uuid
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from api import handlers
from api.schemas import ChatBody, CodeResponse, GenerateBody, MessageResponse
from core.config import Settings
from core.exceptions import DiagramServiceError
from core.http_client import close_client
from core.logging_config import setup_logging
from core.request_context import set_request_id
from llm.fallback import FallbackOrchestrator
from llm.provider import ProviderClient
from streaming.server import SSE_HEADERS, encode_events, stream_events

logger = logging.getLogger(__name__)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_orchestrator(request: Request) -> FallbackOrchestrator:
    """A fresh orchestrator per request over the shared, read-only provider handle."""
    settings = request.app.state.settings
    return FallbackOrchestrator(request.app.state.provider, settings.retry)


def create_app(settings: Optional[Settings] = None, provider=None) -> FastAPI:
    """
    Build the application.

    Settings are read from the environment at startup unless injected; the
    provider handle is built from them unless injected (tests pass fakes).
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: configure structured JSON logging
        setup_logging()

        app.state.settings = settings
        app.state.provider = provider if provider is not None else ProviderClient.from_settings(settings)
        if not getattr(app.state.provider, "is_ready", True):
            logger.error("GEMINI_API_KEY missing; generation endpoints will return a configuration error")
        logger.info("Diagram server started", extra={
            "default_model": settings.default_model,
            "fallback_model": settings.fallback_model,
            "port": settings.port,
        })

        yield

        # Clean up clients
        close = getattr(app.state.provider, "close", None)
        if close is not None:
            try:
                await close()
            except Exception:
                logger.exception("provider_close_failed_during_lifespan_shutdown")
        await close_client()

    app = FastAPI(title="Diagram Chat Server", lifespan=lifespan)

    # Registered first so CORS and the request id still wrap the 413
    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):
        """Reject request bodies larger than settings.max_body_bytes."""
        limit = settings.max_body_bytes
        declared = request.headers.get("content-length")
        if declared is not None and declared.isdigit():
            size = int(declared)
        elif request.method in ("POST", "PUT", "PATCH"):
            size = len(await request.body())
        else:
            size = 0
        if size > limit:
            logger.warning("Request body too large", extra={
                "path": request.url.path,
                "body_bytes": size,
                "limit_bytes": limit,
            })
            return JSONResponse(
                status_code=413,
                content={"error": "Request body too large", "detail": f"Limit is {limit} bytes, got {size}"},
            )
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Generate a unique request ID and store it in the context."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        set_request_id(request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(DiagramServiceError)
    async def service_error_handler(request: Request, exc: DiagramServiceError):
        status, _, _ = handlers.error_payload(exc)
        log = logger.warning if status < 500 else logger.error
        log("Request failed", extra={
            "path": request.url.path,
            "status": status,
            "error_kind": exc.kind.value,
            "error_type": type(exc).__name__,
            "error_message": str(exc),
        })
        return handlers.error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def body_validation_handler(request: Request, exc: RequestValidationError):
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
        )
        return JSONResponse(status_code=400, content={"error": "Invalid request body", "detail": errors})

    @app.post("/api/generate", response_model=CodeResponse)
    async def generate(
        body: GenerateBody,
        orchestrator: FallbackOrchestrator = Depends(get_orchestrator),
        settings: Settings = Depends(get_settings),
    ):
        """Turn a natural-language description into Mermaid code."""
        return await handlers.handle_generate(body, orchestrator, settings)

    @app.post("/api/chat", response_model=MessageResponse)
    async def chat(
        body: ChatBody,
        orchestrator: FallbackOrchestrator = Depends(get_orchestrator),
        settings: Settings = Depends(get_settings),
    ):
        """Answer one chat turn in a single response."""
        return await handlers.handle_chat(body, orchestrator, settings)

    @app.post("/api/chat-stream")
    async def chat_stream(
        body: ChatBody,
        request: Request,
        orchestrator: FallbackOrchestrator = Depends(get_orchestrator),
        settings: Settings = Depends(get_settings),
    ):
        """
        Answer one chat turn as a Server-Sent Events stream of chunk/done/error frames.
        """
        stream = await handlers.open_chat_stream(body, orchestrator, settings)
        events = stream_events(stream, is_disconnected=request.is_disconnected, close=stream.aclose)
        return StreamingResponse(encode_events(events), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.get("/health/live")
    async def liveness():
        """Kubernetes liveness probe."""
        return {"status": "alive"}

    @app.get("/health/ready")
    async def readiness(request: Request):
        """Ready once a provider credential is configured."""
        ready = getattr(request.app.state.provider, "is_ready", True)
        body = {
            "status": "ok" if ready else "degraded",
            "provider_configured": ready,
            "default_model": settings.default_model,
            "fallback_model": settings.fallback_model,
        }
        if not ready:
            return JSONResponse(content=body, status_code=503)
        return body

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def main():
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


app = create_app()


if __name__ == "__main__":
    main()
