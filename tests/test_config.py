"""Tests for settings and logging configuration."""

import json
import logging

import pytest
import structlog
from pydantic import ValidationError

from schema_engine.config.logging import configure_logging
from schema_engine.config.settings import DEFAULT_SETTINGS_FILE, EngineSettings, load_settings


class TestSettings:
    """Tests for EngineSettings and load_settings."""

    def test_defaults(self):
        settings = EngineSettings()
        assert settings.allow_self_loop is False
        assert settings.default_timeout_seconds is None
        assert settings.package_patterns == ("*.yaml", "*.yml", "*.json")

    def test_rejects_invalid_values(self):
        with pytest.raises(ValidationError):
            EngineSettings(deadline_check_interval=0)
        with pytest.raises(ValidationError):
            EngineSettings(default_timeout_seconds=-1)

    def test_load_file(self, write_package):
        path = write_package("settings.yaml", "allow_self_loop: true\ndefault_timeout_seconds: 2.5\n")
        settings = load_settings(path)
        assert settings.allow_self_loop is True
        assert settings.default_timeout_seconds == 2.5

    def test_empty_file_gives_defaults(self, write_package):
        assert load_settings(write_package("settings.yaml", "")) == EngineSettings()

    def test_missing_explicit_file(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            load_settings(temp_dir / "missing.yaml")

    def test_unknown_key(self, write_package):
        with pytest.raises(ValueError, match="invalid settings"):
            load_settings(write_package("settings.yaml", "colour: blue\n"))

    def test_not_a_mapping(self, write_package):
        with pytest.raises(ValueError, match="must be a mapping"):
            load_settings(write_package("settings.yaml", "- a\n"))

    def test_invalid_yaml(self, write_package):
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_settings(write_package("settings.yaml", "a: [\n"))

    def test_working_directory_file(self, write_package, temp_dir, monkeypatch):
        write_package(DEFAULT_SETTINGS_FILE, "allow_self_loop: true\n")
        monkeypatch.chdir(temp_dir)
        assert load_settings().allow_self_loop is True

    def test_no_working_directory_file(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)
        assert load_settings() == EngineSettings()


class TestConfigureLogging:
    """Tests for structlog configuration."""

    def test_verbose_enables_debug(self):
        configure_logging(verbose=True)
        assert logging.getLogger("schema_engine").level == logging.DEBUG
        assert logging.getLogger().level == logging.WARNING

    def test_verbose_leaves_third_party_loggers_quiet(self):
        configure_logging(verbose=True)
        assert logging.getLogger("faker").getEffectiveLevel() == logging.WARNING

    def test_non_verbose_sets_warning(self):
        configure_logging(verbose=False)
        assert logging.getLogger("schema_engine").level == logging.WARNING

    def test_json_mode_output(self, capfd):
        configure_logging(verbose=True, log_json=True)
        log = structlog.get_logger("schema_engine.test")
        log.warning("reload_failed", errors=2)
        captured = capfd.readouterr()
        parsed = json.loads(captured.err.strip())
        assert parsed["event"] == "reload_failed"
        assert parsed["errors"] == 2
        assert parsed["level"] == "warning"
        assert parsed["logger"] == "schema_engine.test"

    def test_idempotent_calls(self):
        configure_logging(verbose=True)
        configure_logging(verbose=True, log_json=True)
        assert len(logging.getLogger().handlers) == 1
