import time
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .api.audio_routes import router as audio_router
from .api.chat_routes import router as chat_router
from .api.session_routes import router as session_router
from .api.ws_routes import router as ws_router
from .errors import handle_unexpected_error, install_exception_handlers
from .logging_config import logger
from .middleware import RateLimitMiddleware
from .orchestrator import Orchestrator
from .relay.engine import RelayEngine
from .relay.upstream import CompletionUpstream, OpenRouterClient
from .schemas import utc_timestamp
from .session.store import SessionStore
from .session.sweeper import SweepScheduler
from .session.ttl import Clock, system_clock
from .settings import Settings, settings as default_settings
from .transcription import SimulatedTranscriber, Transcriber

_REDACTED_HEADERS = {"authorization", "x-api-key", "cookie"}


class HealthResponse(BaseModel):
    status: str = "OK"
    timestamp: str
    uptime: float
    environment: str


def _headers_for_log(request: Request) -> dict[str, str]:
    return {
        k: ("***REDACTED***" if k.lower() in _REDACTED_HEADERS else v)
        for k, v in request.headers.items()
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifecycle:
    - startup: build the store, relay engine and orchestrator, start the sweep timer
    - shutdown: stop the sweep timer and close the upstream HTTP client
    """
    app_settings: Settings = app.state.settings
    clock: Clock = app.state.clock

    http_client: Optional[httpx.AsyncClient] = None
    upstream = app.state.upstream_override
    if upstream is None:
        http_client = httpx.AsyncClient(timeout=app_settings.upstream_timeout)
        upstream = OpenRouterClient(
            http_client,
            api_key=app_settings.openrouter_api_key,
            base_url=app_settings.openrouter_base_url,
            model=app_settings.openrouter_model,
            referer=app_settings.server_url,
            title=app_settings.app_title,
            max_tokens=app_settings.max_tokens,
            temperature=app_settings.temperature,
            timeout=app_settings.upstream_timeout,
        )
        if not app_settings.openrouter_api_key:
            logger.warning("OPENROUTER_API_KEY is not set; upstream calls will be rejected")

    store = SessionStore(
        max_messages=app_settings.max_conversation_messages,
        ttl_seconds=app_settings.conversation_ttl_seconds,
        clock=clock,
    )
    engine = RelayEngine(
        store,
        upstream,
        history_window=app_settings.effective_history_window,
        max_message_length=app_settings.max_message_length,
        request_timeout=app_settings.upstream_timeout,
    )
    transcriber: Transcriber = app.state.transcriber_override or SimulatedTranscriber(
        delay_seconds=app_settings.transcription_delay_seconds,
        max_bytes=app_settings.max_audio_bytes,
    )
    orchestrator = Orchestrator(
        store,
        engine,
        transcriber,
        max_audio_bytes=app_settings.max_audio_bytes,
        supported_audio_formats=app_settings.get_supported_audio_formats(),
    )
    sweeper = SweepScheduler(store, interval_seconds=app_settings.sweep_interval_seconds)

    app.state.upstream = upstream
    app.state.store = store
    app.state.engine = engine
    app.state.orchestrator = orchestrator
    app.state.sweeper = sweeper

    sweeper.start()
    logger.info(
        "Relay started (environment=%s, model=%s, ttl=%ss, sweep=%ss)",
        app_settings.environment,
        app_settings.openrouter_model,
        app_settings.conversation_ttl_seconds,
        app_settings.sweep_interval_seconds,
    )
    try:
        yield
    finally:
        await sweeper.stop()
        if http_client is not None:
            await http_client.aclose()
        logger.info("Relay stopped")


def create_app(
    app_settings: Optional[Settings] = None,
    *,
    upstream: Optional[CompletionUpstream] = None,
    transcriber: Optional[Transcriber] = None,
    clock: Clock = system_clock,
) -> FastAPI:
    """
    Build the application. `upstream`, `transcriber` and `clock` replace the
    real collaborators, which tests use to avoid network and wall-clock time.
    """
    app_settings = app_settings or default_settings
    app = FastAPI(title=app_settings.app_title, version="1.0.0", lifespan=lifespan)
    app.state.settings = app_settings
    app.state.clock = clock
    app.state.upstream_override = upstream
    app.state.transcriber_override = transcriber
    app.state.started_at = time.monotonic()

    install_exception_handlers(app)

    app.add_middleware(
        RateLimitMiddleware,
        max_requests=app_settings.rate_limit_max_requests,
        window_seconds=app_settings.rate_limit_window_seconds,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.get_allowed_origins(),
        allow_credentials=app_settings.get_allowed_origins() != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Conversation-Id"],
    )

    app.include_router(chat_router)
    app.include_router(audio_router)
    app.include_router(session_router)
    app.include_router(ws_router)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """
        Basic request/response logging; credential headers are redacted.
        """
        client_host = request.client.host if request.client else "-"
        logger.info(
            "HTTP %s %s from %s, headers=%s",
            request.method,
            request.url.path,
            client_host,
            _headers_for_log(request),
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            response = await handle_unexpected_error(request, exc)
        logger.info(
            "HTTP %s %s -> %s", request.method, request.url.path, response.status_code
        )
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(
            timestamp=utc_timestamp(),
            uptime=round(time.monotonic() - app.state.started_at, 3),
            environment=app_settings.environment,
        )

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {
            "message": f"{app_settings.app_title} Backend API",
            "version": "1.0.0",
            "endpoints": {
                "chat": "/api/v1/chat/message",
                "chatStream": "/api/v1/chat/stream",
                "audio": "/api/v1/audio/process",
                "sessions": "/api/v1/sessions",
                "health": "/health",
                "websocket": "/ws",
            },
        }

    return app


__all__ = ["create_app", "lifespan"]
