"""
Configuration Tests
===================

Tests for settings models, YAML loading and environment overrides.
"""

import logging

import pytest
from pydantic import ValidationError

from chrome_stream.config import (
    DeltaConfig,
    Settings,
    StreamConfig,
    SyncConfig,
    load_config,
    setup_logging,
)


class TestDefaults:

    def test_defaults(self):
        settings = Settings()

        assert settings.stream.delta_threshold == 2.0
        assert settings.stream.keep_alive_ms == 2000
        assert settings.stream.max_buffer_size == 10
        assert settings.stream.quality == 80
        assert settings.stream.viewport_width == 1280
        assert settings.stream.viewport_height == 800
        assert settings.sync.stability_wait_ms == 200
        assert settings.sync.max_wait_ms == 2000
        assert settings.sync.stability_threshold == 0.5
        assert settings.delta.color_threshold == 0.1
        assert settings.source.max_reconnect_attempts == 0


class TestValidation:

    def test_max_wait_must_exceed_stability_wait(self):
        with pytest.raises(ValidationError):
            SyncConfig(stability_wait_ms=500, max_wait_ms=400)

    def test_delta_threshold_range(self):
        with pytest.raises(ValidationError):
            StreamConfig(delta_threshold=120)

    def test_keep_alive_must_be_positive(self):
        with pytest.raises(ValidationError):
            StreamConfig(keep_alive_ms=0)

    def test_color_threshold_excludes_zero(self):
        with pytest.raises(ValidationError):
            DeltaConfig(color_threshold=0)

        assert DeltaConfig(color_threshold=1.0).color_threshold == 1.0


class TestLoadConfig:

    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "stream:\n"
            "  delta_threshold: 4.0\n"
            "  max_buffer_size: 20\n"
            "sync:\n"
            "  max_wait_ms: 3000\n"
        )

        settings = load_config(str(path))

        assert settings.stream.delta_threshold == 4.0
        assert settings.stream.max_buffer_size == 20
        assert settings.sync.max_wait_ms == 3000
        assert settings.stream.keep_alive_ms == 2000

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("stream:\n  delta_threshold: 4.0\n")
        monkeypatch.setenv("CHROME_STREAM_DELTA_THRESHOLD", "7.5")
        monkeypatch.setenv("CHROME_STREAM_URL", "ws://relay:9300/screencast")
        monkeypatch.setenv("CHROME_STREAM_LOG_LEVEL", "DEBUG")

        settings = load_config(str(path))

        assert settings.stream.delta_threshold == 7.5
        assert settings.source.url == "ws://relay:9300/screencast"
        assert settings.logging.level == "DEBUG"

    def test_missing_file_uses_defaults(self, tmp_path):
        settings = load_config(str(tmp_path / "missing.yaml"))

        assert settings.stream.delta_threshold == 2.0

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(str(path)).sync.max_wait_ms == 2000

    def test_invalid_values_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("sync:\n  stability_wait_ms: 3000\n")

        with pytest.raises(ValidationError):
            load_config(str(path))


class TestSetupLogging:

    def test_setup_logging_text(self, monkeypatch):
        calls = {}
        monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.update(kwargs))
        settings = Settings.model_validate({"logging": {"level": "debug", "format": "text"}})

        setup_logging(settings)

        assert calls["level"] == logging.DEBUG
        assert calls["format"].startswith("%(asctime)s")

    def test_setup_logging_json(self, monkeypatch):
        calls = {}
        monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.update(kwargs))

        setup_logging(Settings())

        assert calls["level"] == logging.INFO
        assert calls["format"].startswith("{")
