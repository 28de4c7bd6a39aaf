from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional, Protocol, Tuple

from edulearn_chat.logging import get_logger

logger = get_logger(__name__)


class QuotaStore(Protocol):
    def verify_connection(self) -> None: ...

    async def hit_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]: ...

    async def incr_counter(self, key: str, amount: int, window_seconds: int) -> int: ...

    async def get_counter(self, key: str) -> int: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class RateLimitConfig:
    requests_per_minute: int = 10
    tokens_per_day: int = 100_000
    window_seconds: int = 60
    token_window_seconds: int = 86_400


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_time: int  # epoch milliseconds
    window_seconds: int
    message: Optional[str] = None

    def headers(self) -> dict[str, str]:
        """Rate limit headers per IETF draft-polli-ratelimit-headers."""
        reset = datetime.fromtimestamp(self.reset_time / 1000, tz=timezone.utc)
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": reset.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        }

    @property
    def reset_time_iso(self) -> str:
        return self.headers()["X-RateLimit-Reset"]


class QuotaService:
    """Per-user request rate limiting and daily token budgets."""

    def __init__(self, store: QuotaStore, config: Optional[RateLimitConfig] = None) -> None:
        self.store = store
        self.config = config or RateLimitConfig()

    @staticmethod
    def _request_key(user_id: str) -> str:
        return f"chat:requests:user:{user_id}"

    @staticmethod
    def _token_key(user_id: str) -> str:
        return f"chat:tokens:user:{user_id}"

    async def check_rate_limit(
        self, user_id: str, config: Optional[RateLimitConfig] = None
    ) -> RateLimitResult:
        """Count a request against the user's per-minute budget."""
        cfg = config or self.config
        limit = cfg.requests_per_minute
        window_seconds = cfg.window_seconds
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                user_id=user_id,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = 60
            cfg = replace(cfg, window_seconds=window_seconds)
        if limit <= 0:
            now_ms = int(datetime.now(timezone.utc).timestamp() * 1000)
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=0,
                reset_time=now_ms + window_seconds * 1000,
                window_seconds=window_seconds,
            )

        allowed, count, reset_time = await self.store.hit_window(
            self._request_key(user_id), limit, window_seconds
        )
        if not allowed:
            now_ms = int(datetime.now(timezone.utc).timestamp() * 1000)
            wait_seconds = max(1, math.ceil((reset_time - now_ms) / 1000))
            logger.info(
                "chat_rate_limited",
                user_id=user_id,
                limit=limit,
                reset_in_seconds=wait_seconds,
            )
            return RateLimitResult(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_time=reset_time,
                window_seconds=window_seconds,
                message=f"Rate limit exceeded. Please wait {wait_seconds} seconds.",
            )
        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - count),
            reset_time=reset_time,
            window_seconds=window_seconds,
        )

    async def get_token_usage(self, user_id: str) -> int:
        return await self.store.get_counter(self._token_key(user_id))

    async def check_token_quota(self, user_id: str) -> bool:
        """True while the user's daily token usage is below the budget."""
        if self.config.tokens_per_day <= 0:
            return True
        used = await self.get_token_usage(user_id)
        return used < self.config.tokens_per_day

    async def track_token_usage(self, user_id: str, tokens: int) -> int:
        """Add ``tokens`` to the user's daily usage; negative amounts are ignored."""
        amount = max(0, int(tokens))
        total = await self.store.incr_counter(
            self._token_key(user_id), amount, self.config.token_window_seconds
        )
        logger.info("chat_tokens_tracked", user_id=user_id, tokens=amount, daily_total=total)
        return total
