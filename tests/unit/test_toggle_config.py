"""Tests for settings, wiring and logging."""

import json
import logging

import pytest

from toggle_engine.core.config import ToggleSettings, get_settings, reset_settings
from toggle_engine.core.errors import ConfigurationError, ErrorCode, OperationResult, StorageError, ToggleError
from toggle_engine.core.feature_toggles import (
    Environment,
    FileFeatureStorage,
    HttpRemoteConfigProvider,
    InMemoryFeatureStorage,
    RedisFeatureStorage,
    build_toggle_manager,
)
from toggle_engine.utils.logging import JsonFormatter


class TestSettings:
    """Tests for ToggleSettings."""

    def test_defaults(self):
        settings = ToggleSettings()
        assert settings.ENVIRONMENT == "dev"
        assert settings.STORAGE_BACKEND == "memory"
        assert settings.REMOTE_URL == ""
        assert settings.UPDATE_QUEUE_SIZE == 256

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("FEATURE_TOGGLE_ENVIRONMENT", "production")
        monkeypatch.setenv("FEATURE_TOGGLE_REMOTE_TIMEOUT_SECONDS", "2.5")
        reset_settings()
        settings = get_settings()
        assert settings.ENVIRONMENT == "production"
        assert settings.REMOTE_TIMEOUT_SECONDS == 2.5

    def test_cached(self):
        assert get_settings() is get_settings()


class TestBuildToggleManager:
    """Tests for settings-driven wiring."""

    def test_memory_backend(self):
        manager = build_toggle_manager(ToggleSettings())
        assert isinstance(manager.storage, InMemoryFeatureStorage)
        assert manager.remote_provider is None
        assert manager.environment == Environment.DEV

    def test_file_backend(self, tmp_path):
        settings = ToggleSettings(STORAGE_BACKEND="file", STORAGE_PATH=str(tmp_path / "t.json"))
        manager = build_toggle_manager(settings)
        assert isinstance(manager.storage, FileFeatureStorage)
        assert manager.storage.file_path == tmp_path / "t.json"

    def test_redis_backend(self):
        settings = ToggleSettings(STORAGE_BACKEND="redis", REDIS_NAMESPACE="app")
        manager = build_toggle_manager(settings)
        assert isinstance(manager.storage, RedisFeatureStorage)
        assert manager.storage.features_key == "app:feature"

    def test_remote_provider(self):
        settings = ToggleSettings(
            REMOTE_URL="https://config.example.com/toggles.json",
            REMOTE_TIMEOUT_SECONDS=3.0,
            ENVIRONMENT="prod",
        )
        manager = build_toggle_manager(settings)
        assert isinstance(manager.remote_provider, HttpRemoteConfigProvider)
        assert manager.remote_provider.timeout == 3.0
        assert manager.remote_timeout == 3.0
        assert manager.environment == Environment.PROD

    def test_overrides_win(self):
        storage = InMemoryFeatureStorage()
        manager = build_toggle_manager(ToggleSettings(STORAGE_BACKEND="file"), storage=storage)
        assert manager.storage is storage

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            build_toggle_manager(ToggleSettings(STORAGE_BACKEND="etcd"))

    def test_unknown_environment(self):
        with pytest.raises(ConfigurationError):
            build_toggle_manager(ToggleSettings(ENVIRONMENT="moon"))


class TestErrors:
    """Tests for error types and results."""

    def test_failure_from_toggle_error(self):
        result = OperationResult.failure(StorageError("disk full"))
        assert not result
        assert result.code == ErrorCode.STORAGE_ERROR
        assert result.to_dict() == {"success": False, "error": "disk full", "code": "STORAGE_ERROR"}

    def test_failure_from_string(self):
        result = OperationResult.failure("boom")
        assert result.code == ErrorCode.INTERNAL_ERROR

    def test_raise_for_error(self):
        OperationResult.ok().raise_for_error()
        with pytest.raises(ToggleError):
            OperationResult.failure("boom").raise_for_error()


class TestJsonFormatter:
    """Tests for structured log output."""

    def test_includes_extra_fields(self):
        record = logging.LogRecord("toggle", logging.INFO, __file__, 1, "Feature x enabled", None, None)
        record.feature = "x"
        record.source = "LOCAL"
        data = json.loads(JsonFormatter().format(record))
        assert data["message"] == "Feature x enabled"
        assert data["level"] == "INFO"
        assert data["feature"] == "x"
        assert data["source"] == "LOCAL"
        assert "variant" not in data
