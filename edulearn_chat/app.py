from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from edulearn_chat.api.error_handling import register_exception_handlers
from edulearn_chat.api.routes import router
from edulearn_chat.config import Settings
from edulearn_chat.logging import get_logger, set_correlation_id
from edulearn_chat.storage.memory import MemoryQuotaStore

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

HEALTH_CHECK_TIMEOUT_SECONDS = 3
QUOTA_SWEEP_INTERVAL_SECONDS = 300

_sweep_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; drain tasks and close clients on shutdown."""
    global _sweep_task
    from edulearn_chat.service.runtime import get_runtime

    runtime = get_runtime()
    if isinstance(runtime.store, MemoryQuotaStore):
        _sweep_task = asyncio.create_task(
            _run_quota_sweep(runtime.store, QUOTA_SWEEP_INTERVAL_SECONDS)
        )

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="EduLearn Chat Proxy", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local LMS frontend hosts
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for log tracing.

    Uses the client's X-Request-ID when present, otherwise a new UUID, and
    echoes it back in the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Dependency health: quota store reachability and backend configuration."""
    from edulearn_chat.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Any] = {}

    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        store_ok = True
    except asyncio.TimeoutError:
        logger.error(
            "health_check_timeout", component="quota_store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
        store_ok = False
    except Exception as exc:
        logger.error("health_check_quota_store_failed", error=str(exc))
        store_ok = False

    checks["quota_store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": "memory" if isinstance(runtime.store, MemoryQuotaStore) else "redis",
    }
    backend = runtime.backend
    checks["backend"] = {
        "status": "healthy" if backend is not None else "unconfigured",
        "name": backend.name if backend is not None else runtime.settings.model_backend.value,
    }
    healthy = store_ok and backend is not None
    return JSONResponse(
        status_code=200 if store_ok else 503,
        content={
            "status": "ok" if healthy else "degraded",
            "checks": checks,
            "version": __version__,
            "build": __build__,
        },
    )


async def _run_quota_sweep(store: MemoryQuotaStore, interval_seconds: int) -> None:
    """Periodically drop expired in-memory windows and counters."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            removed = store.sweep_expired()
            if removed:
                logger.debug("quota_sweep_completed", removed=removed)
    except asyncio.CancelledError:
        logger.info("quota_sweep_task_cancelled")


def create_app() -> FastAPI:
    return app
