"""Tests for environment-driven settings."""

import pytest

from edulearn_chat.config import ModelBackend, Settings, get_settings, reset_settings_cache


class TestSettingsFromEnv:
    def test_defaults(self, monkeypatch):
        for name in ("MODEL_NAME", "CHAT_REQUESTS_PER_MINUTE", "DAILY_TOKEN_QUOTA", "CHAT_MAX_RETRIES"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.model_name == "gemini-2.0-flash"
        assert settings.chat_requests_per_minute == 10
        assert settings.daily_token_quota == 100_000
        assert settings.chat_max_retries == 2
        assert settings.chat_retry_base_delay_ms == 1000
        assert settings.chat_stream_timeout_seconds == 120.0

    def test_env_names_map_to_fields(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_GENERATIVE_AI_API_KEY", "AIza-test")
        monkeypatch.setenv("MODEL_BACKEND", "Gemini")
        monkeypatch.setenv("CHAT_REQUESTS_PER_MINUTE", "25")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://lms.example.edu, http://localhost:3000")
        settings = Settings.from_env()
        assert settings.model_backend == ModelBackend.GEMINI
        assert settings.gemini_api_key == "AIza-test"
        assert settings.engine_api_key == "AIza-test"
        assert settings.chat_requests_per_minute == 25
        assert settings.cors_allow_origins == ["https://lms.example.edu", "http://localhost:3000"]

    def test_unknown_backend_is_rejected(self):
        with pytest.raises(ValueError):
            Settings(model_backend="carrier-pigeon")

    def test_stub_backend_needs_no_key(self):
        settings = Settings(model_backend="stub")
        assert settings.engine_requires_api_key is False
        assert settings.engine_api_key is None

    def test_openai_backend_uses_openai_key(self):
        settings = Settings(model_backend="openai", openai_api_key="sk-test")
        assert settings.engine_api_key == "sk-test"

    def test_blank_secret_is_none(self):
        assert Settings(jwt_secret="").jwt_secret is None

    def test_cache_reset_rereads_environment(self, monkeypatch):
        reset_settings_cache()
        monkeypatch.setenv("DAILY_TOKEN_QUOTA", "500")
        assert get_settings().daily_token_quota == 500
        monkeypatch.setenv("DAILY_TOKEN_QUOTA", "700")
        assert get_settings().daily_token_quota == 500
        reset_settings_cache()
        assert get_settings().daily_token_quota == 700
        reset_settings_cache()
