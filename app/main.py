"""
Luna Assessment — FastAPI Application Entry Point

Production-ready application with:
- Async lifespan management (session store: Redis or in-process)
- CORS, timeout, and structured-logging middleware
- Health-check endpoints (liveness + deep readiness)
- Per-request log context (request id, method, path)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from app.config import get_settings
from app.services.session_store import close_store, get_store, init_store

settings = get_settings()

# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------

_log_level = logging.getLevelName(settings.LOG_LEVEL.upper())

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        _log_level if isinstance(_log_level, int) else logging.INFO
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger("luna")

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the session store on startup and close it on shutdown."""
    logger.info(
        "startup_begin",
        environment=settings.ENVIRONMENT,
        log_level=settings.LOG_LEVEL,
        llm_enabled=settings.llm_enabled,
    )
    store = await init_store()
    if not settings.llm_enabled:
        logger.warning("llm_disabled", note="questions and narratives use the built-in pools")
    logger.info("startup_complete", store=type(store).__name__)

    yield

    await close_store()
    logger.info("shutdown_complete")


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

class TimeoutMiddleware(BaseHTTPMiddleware):
    """Answer 504 when a request outlives ``REQUEST_TIMEOUT_SECONDS``."""

    def __init__(self, app, timeout_seconds: float) -> None:
        super().__init__(app)
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("request_timeout", timeout=self.timeout_seconds)
            return JSONResponse(status_code=504, content={"detail": "Request timed out"})


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Bind a request id to the log context and log one line per request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_error", duration_ms=round((time.perf_counter() - start) * 1000, 2))
            raise

        response.headers["x-request-id"] = request_id
        logger.info(
            "request_handled",
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return response


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Luna Assessment",
    description="Adaptive couples alignment assessment",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

# Last added runs first: CORS, then timeout, then logging.
app.add_middleware(StructuredLoggingMiddleware)
app.add_middleware(TimeoutMiddleware, timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["health"])
async def health_liveness() -> dict:
    """Liveness: healthy while the process runs."""
    return {"status": "healthy"}


@app.get("/health/deep", tags=["health"])
async def health_deep() -> dict:
    """Readiness: pings the session store and reports whether Gemini is configured."""
    result: dict = {
        "status": "healthy",
        "store": "connected",
        "llm": "enabled" if settings.llm_enabled else "fallback_only",
    }
    try:
        if not await get_store().ping():
            raise RuntimeError("Store ping returned false")
    except Exception as exc:
        logger.error("health_store_failure", error=str(exc))
        result["store"] = f"error: {exc}"
        result["status"] = "degraded"
    return result


from app.api.router import router as api_router  # noqa: E402

app.include_router(api_router, prefix="/api/v1")
