from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from edulearn_chat.config import Settings, get_settings, reset_settings_cache
from edulearn_chat.logging import get_logger
from edulearn_chat.service.activity_log import ActivityLogger
from edulearn_chat.service.auth import IdentityVerifier
from edulearn_chat.service.model_backend import CompletionBackend, build_backend
from edulearn_chat.service.quota import QuotaService, RateLimitConfig
from edulearn_chat.service.tasks import BackgroundTaskRunner
from edulearn_chat.storage.memory import MemoryQuotaStore
from edulearn_chat.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_UNSET = object()


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        backend: object = _UNSET,
        store: Optional[Union[RedisCache, MemoryQuotaStore]] = None,
        activity_logger: Optional[ActivityLogger] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            model_backend=self.settings.model_backend.value,
            test_mode=self.settings.test_mode,
        )

        self.store = store if store is not None else self._build_store()
        self.quota = QuotaService(
            self.store,
            RateLimitConfig(
                requests_per_minute=self.settings.chat_requests_per_minute,
                tokens_per_day=self.settings.daily_token_quota,
                window_seconds=self.settings.chat_rate_limit_window_seconds,
                token_window_seconds=self.settings.token_quota_window_seconds,
            ),
        )
        self.verifier = IdentityVerifier(
            self.settings.jwt_secret,
            clock_skew_seconds=self.settings.jwt_clock_skew_seconds,
        )
        self.backend: Optional[CompletionBackend] = (
            build_backend(self.settings) if backend is _UNSET else backend  # type: ignore[assignment]
        )
        self.activity_logger = activity_logger or ActivityLogger(
            self.settings.backend_api_url,
            timeout_seconds=self.settings.activity_log_timeout_seconds,
        )
        self.tasks = BackgroundTaskRunner()
        logger.info(
            "runtime_init_completed",
            store_type="redis" if isinstance(self.store, RedisCache) else "memory",
            backend_ready=self.backend is not None,
        )

    def _build_store(self) -> Union[RedisCache, MemoryQuotaStore]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for chat rate limits and token quotas; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; rate limits and token quotas "
                "are in-memory and per worker."
            ),
            mode=fallback_mode,
        )
        return MemoryQuotaStore()

    async def close(self) -> None:
        await self.tasks.close()
        await self.activity_logger.close()
        if self.backend is not None:
            await self.backend.close()
        await self.store.close()
        logger.info("runtime_closed")


_runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide runtime, building it on first use."""
    global _runtime
    if _runtime is None:
        with _runtime_lock:
            if _runtime is None:
                _runtime = Runtime()
    return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    global _runtime
    with _runtime_lock:
        _runtime = runtime


def reset_runtime_for_tests() -> Runtime:
    """Reset the global runtime so tests start from a clean slate."""

    global _runtime
    reset_settings_cache()
    with _runtime_lock:
        _runtime = Runtime()
    return _runtime
