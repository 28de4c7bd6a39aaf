from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from edulearn_chat.logging import get_logger

logger = get_logger(__name__)


class ModelBackend(str, Enum):
    """Completion engines the chat proxy can stream from."""

    GEMINI = "gemini"
    GOOGLE = "google"
    OPENAI = "openai"
    STUB = "stub"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the chat proxy."""

    # Auth
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_clock_skew_seconds: int = env_field(30, "JWT_CLOCK_SKEW_SECONDS")

    # Completion engine
    model_backend: ModelBackend = env_field(ModelBackend.GEMINI, "MODEL_BACKEND")
    model_name: str = env_field("gemini-2.0-flash", "MODEL_NAME")
    max_output_tokens: int = env_field(4000, "MAX_OUTPUT_TOKENS")
    gemini_api_key: str | None = env_field(None, "GOOGLE_GENERATIVE_AI_API_KEY")
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")

    # Quota store
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviour: in-memory quota store and no retry sleeps are allowed.",
    )

    # Rate limits and budgets
    chat_requests_per_minute: int = env_field(10, "CHAT_REQUESTS_PER_MINUTE")
    chat_rate_limit_window_seconds: int = env_field(60, "CHAT_RATE_LIMIT_WINDOW_SECONDS")
    daily_token_quota: int = env_field(100_000, "DAILY_TOKEN_QUOTA")
    token_quota_window_seconds: int = env_field(86_400, "TOKEN_QUOTA_WINDOW_SECONDS")

    # Streaming
    chat_max_retries: int = env_field(2, "CHAT_MAX_RETRIES")
    chat_retry_base_delay_ms: int = env_field(1000, "CHAT_RETRY_BASE_DELAY_MS")
    chat_stream_timeout_seconds: float = env_field(
        120.0,
        "CHAT_STREAM_TIMEOUT_SECONDS",
        description="Wall-clock cap across all attempts and backoff sleeps of one chat stream",
    )

    # Activity log side channel
    backend_api_url: str = env_field("http://localhost:3001/api", "BACKEND_API_URL")
    activity_log_timeout_seconds: float = env_field(5.0, "ACTIVITY_LOG_TIMEOUT_SECONDS")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("model_backend", mode="before")
    @classmethod
    def _validate_backend(cls, value: Any) -> ModelBackend:
        if isinstance(value, str):
            value = value.strip().lower()
        return ModelBackend(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("jwt_secret")
    @classmethod
    def _warn_short_secret(cls, value: str | None) -> str | None:
        if value and len(value) < 32:
            logger.warning(
                "jwt_secret_short",
                length=len(value),
                message="JWT_SECRET shorter than 32 characters",
            )
        return value or None

    @property
    def engine_api_key(self) -> str | None:
        """API key for the configured completion engine, if it needs one."""
        if self.model_backend in (ModelBackend.GEMINI, ModelBackend.GOOGLE):
            return self.gemini_api_key
        if self.model_backend == ModelBackend.OPENAI:
            return self.openai_api_key
        return None

    @property
    def engine_requires_api_key(self) -> bool:
        return self.model_backend != ModelBackend.STUB


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
