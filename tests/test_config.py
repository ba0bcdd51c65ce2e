"""Tests for config validation and repr redaction."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from vigil.config import VigilSettings, get_settings


def test_missing_required_fields_raises():
    with patch.dict(os.environ, {}, clear=True):
        with pytest.raises(ValidationError):
            VigilSettings()


def test_defaults():
    with patch.dict(os.environ, {"OPENROUTER_API_KEY": "sk-test"}, clear=True):
        settings = VigilSettings()
        assert settings.REDIS_URL is None
        assert settings.POSTGRES_URL is None
        assert settings.QDRANT_URL is None
        assert settings.RECENT_MAX_ENTRIES == 1000
        assert settings.RECENT_TTL_SECONDS == 8 * 3600
        assert settings.CONSOLIDATION_EVERY_N_ITERATIONS == 100
        assert settings.PROMOTION_THRESHOLD == 0.5
        assert settings.LONG_TERM_MIN_SCORE == 0.7
        assert settings.SIMILAR_TASK_MIN_SCORE == 0.85
        assert settings.EMBEDDING_BACKEND == "openrouter"


def test_blank_urls_mean_unset():
    with patch.dict(os.environ, {
        "OPENROUTER_API_KEY": "sk-test",
        "REDIS_URL": "  ",
        "QDRANT_URL": "http://localhost:6333",
    }, clear=True):
        settings = VigilSettings()
        assert settings.REDIS_URL is None
        assert settings.QDRANT_URL == "http://localhost:6333"


def test_embedding_backend_is_validated():
    with patch.dict(os.environ, {"OPENROUTER_API_KEY": "sk-test", "EMBEDDING_BACKEND": "HASH"}, clear=True):
        assert VigilSettings().EMBEDDING_BACKEND == "hash"
    with patch.dict(os.environ, {"OPENROUTER_API_KEY": "sk-test", "EMBEDDING_BACKEND": "ollama"}, clear=True):
        with pytest.raises(ValidationError):
            VigilSettings()


def test_log_level_is_normalised():
    with patch.dict(os.environ, {"OPENROUTER_API_KEY": "sk-test", "LOG_LEVEL": "debug"}, clear=True):
        assert VigilSettings().LOG_LEVEL == "DEBUG"
    with patch.dict(os.environ, {"OPENROUTER_API_KEY": "sk-test", "LOG_LEVEL": "loud"}, clear=True):
        with pytest.raises(ValidationError):
            VigilSettings()


def test_thresholds_are_bounded():
    with patch.dict(os.environ, {"OPENROUTER_API_KEY": "sk-test", "PROMOTION_THRESHOLD": "1.5"}, clear=True):
        with pytest.raises(ValidationError):
            VigilSettings()


def test_sensitive_fields_redacted_in_repr():
    with patch.dict(os.environ, {
        "OPENROUTER_API_KEY": "sk-secret-key",
        "POSTGRES_URL": "postgresql://vigil:hunter2@db/vigil",
    }, clear=True):
        r = repr(VigilSettings())
        assert "sk-secret-key" not in r
        assert "hunter2" not in r
        assert "***" in r


def test_optional_secrets_show_none_in_repr():
    with patch.dict(os.environ, {"OPENROUTER_API_KEY": "sk-test"}, clear=True):
        r = repr(VigilSettings())
        # Unset optional secrets show None, not ***
        assert "REDIS_URL=None" in r


def test_get_settings_is_cached(monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "test-key")
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()
