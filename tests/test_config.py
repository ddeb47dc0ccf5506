"""Tests for valora.config — Settings validation and load_settings()."""

import pytest
from pydantic import ValidationError

from valora.config import Settings, load_settings


def _settings(**overrides):
    values = {"TELEGRAM_BOT_TOKEN": "t", "LLM_API_KEY": "k"}
    values.update(overrides)
    return Settings(**values)


class TestSettings:
    def test_defaults(self):
        settings = _settings()
        assert settings.LLM_PROVIDER == "gemini"
        assert settings.MAX_ITERATIONS == 50
        assert settings.QUERY_ROW_LIMIT == 100
        assert settings.CONCURRENT_OPERATIONS is False
        assert settings.search_enabled is False

    def test_provider_is_normalized(self):
        assert _settings(LLM_PROVIDER=" Anthropic ").LLM_PROVIDER == "anthropic"
        assert _settings(LLM_PROVIDER="").LLM_PROVIDER == "gemini"

    def test_unknown_provider(self):
        with pytest.raises(ValidationError, match="LLM_PROVIDER"):
            _settings(LLM_PROVIDER="mistral")

    def test_user_ids_from_csv(self):
        assert _settings(ALLOWED_USER_IDS="1, 2,,3").ALLOWED_USER_IDS == [1, 2, 3]
        assert _settings(ALLOWED_USER_IDS="").ALLOWED_USER_IDS == []

    @pytest.mark.parametrize("field", ["MAX_ITERATIONS", "QUERY_ROW_LIMIT", "TURN_TIMEOUT_SECONDS"])
    def test_positive_ints(self, field):
        assert getattr(_settings(**{field: "7"}), field) == 7
        with pytest.raises(ValidationError):
            _settings(**{field: "0"})

    @pytest.mark.parametrize("raw, expected", [
        ("true", True), ("1", True), ("YES", True), ("false", False), ("", False),
    ])
    def test_bool_parsing(self, raw, expected):
        assert _settings(CONCURRENT_OPERATIONS=raw).CONCURRENT_OPERATIONS is expected

    def test_search_enabled_by_url(self):
        assert _settings(QDRANT_URL="http://localhost:6333").search_enabled


class TestLoadSettings:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
        monkeypatch.setenv("LLM_API_KEY", "sk-test")
        monkeypatch.setenv("LLM_PROVIDER", "openai")
        monkeypatch.setenv("MAX_ITERATIONS", "10")
        monkeypatch.setenv("CONCURRENT_OPERATIONS", "true")
        settings = load_settings()
        assert settings.LLM_PROVIDER == "openai"
        assert settings.MAX_ITERATIONS == 10
        assert settings.CONCURRENT_OPERATIONS is True

    @pytest.mark.parametrize("var, value", [
        ("TELEGRAM_BOT_TOKEN", ""),
        ("TELEGRAM_BOT_TOKEN", "your-telegram-token"),
        ("LLM_API_KEY", ""),
    ])
    def test_exits_without_credentials(self, monkeypatch, var, value):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
        monkeypatch.setenv("LLM_API_KEY", "sk-test")
        monkeypatch.setenv(var, value)
        with pytest.raises(SystemExit):
            load_settings()
