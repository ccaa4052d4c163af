"""Tests for sync_config.yaml loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from src.highlights.config_loader import (
    ConfigValidationError,
    EngineConfig,
    RetryPolicy,
    _validate_and_build,
    load_engine_config,
    reload_engine_config,
)

_MINIMAL_PROVIDERS = {
    "readwise": {
        "export_url": "https://readwise.io/api/v2/export/",
        "auth_url": "https://readwise.io/api/v2/auth/",
    }
}


class TestConfigLoading:
    """Tests for loading the bundled sync_config.yaml."""

    def test_load_default_config(self, engine_config: EngineConfig) -> None:
        assert engine_config.version == "1.0"
        assert engine_config.http_timeout_seconds == 30.0
        assert engine_config.run.timeout_seconds == 600.0

    def test_default_schedule(self, engine_config: EngineConfig) -> None:
        assert engine_config.schedule.default == "0 */6 * * *"
        assert engine_config.schedule.timezone == "UTC"

    def test_readwise_endpoints(self, engine_config: EngineConfig) -> None:
        readwise = engine_config.provider("readwise")
        assert readwise.export_url == "https://readwise.io/api/v2/export/"
        assert readwise.auth_url == "https://readwise.io/api/v2/auth/"
        assert readwise.source_label == "readwise"

    def test_obsidian_export_kind(self, engine_config: EngineConfig) -> None:
        assert engine_config.exports["obsidian"].format == "markdown"
        assert engine_config.kinds == ["readwise", "obsidian"]

    def test_unknown_provider_raises(self, engine_config: EngineConfig) -> None:
        with pytest.raises(KeyError, match="kobo"):
            engine_config.provider("kobo")

    def test_load_nonexistent_file_raises(self) -> None:
        with pytest.raises(FileNotFoundError):
            load_engine_config(path=Path("/nonexistent/path/sync_config.yaml"))


class TestRetryPolicy:
    def test_default_delays_double(self) -> None:
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_delay_is_capped(self) -> None:
        policy = RetryPolicy(max_attempts=10, base_delay_seconds=4.0, backoff_factor=3.0, max_delay_seconds=30.0)
        assert policy.delay_for(2) == 12.0
        assert policy.delay_for(3) == 30.0
        assert policy.delay_for(8) == 30.0


class TestConfigValidation:
    def test_valid_minimal_config(self) -> None:
        config = _validate_and_build({"providers": _MINIMAL_PROVIDERS})
        assert config.retry == RetryPolicy()
        assert config.provider("readwise").source_label == "readwise"

    def test_missing_providers_raises(self) -> None:
        with pytest.raises(ConfigValidationError, match="providers"):
            _validate_and_build({"version": "1.0"})

    def test_provider_missing_urls_raises(self) -> None:
        with pytest.raises(ConfigValidationError, match="auth_url"):
            _validate_and_build({"providers": {"readwise": {"export_url": "https://x"}}})

    def test_errors_are_reported_together(self) -> None:
        raw = {
            "retry": {"max_attempts": 0, "backoff_factor": "fast"},
            "run": {"timeout_seconds": -5},
            "providers": _MINIMAL_PROVIDERS,
        }
        with pytest.raises(ConfigValidationError) as exc_info:
            _validate_and_build(raw)

        message = str(exc_info.value)
        assert "3 validation error(s)" in message
        assert "retry.max_attempts" in message
        assert "retry.backoff_factor" in message
        assert "run.timeout_seconds" in message

    def test_exports_are_optional(self) -> None:
        config = _validate_and_build({"providers": _MINIMAL_PROVIDERS})
        assert config.exports == {}
        assert config.kinds == ["readwise"]

    def test_unknown_export_format_raises(self) -> None:
        raw = {"providers": _MINIMAL_PROVIDERS, "exports": {"obsidian": {"format": "pdf"}}}
        with pytest.raises(ConfigValidationError, match="exports.obsidian.format"):
            _validate_and_build(raw)

    def test_export_named_like_provider_raises(self) -> None:
        raw = {"providers": _MINIMAL_PROVIDERS, "exports": {"readwise": {}}}
        with pytest.raises(ConfigValidationError, match="clashes"):
            _validate_and_build(raw)

    def test_max_delay_below_base_raises(self) -> None:
        raw = {
            "retry": {"base_delay_seconds": 10, "max_delay_seconds": 5},
            "providers": _MINIMAL_PROVIDERS,
        }
        with pytest.raises(ConfigValidationError, match="max_delay_seconds"):
            _validate_and_build(raw)

    def test_invalid_yaml_raises(self, tmp_path: Path) -> None:
        config_file = tmp_path / "sync_config.yaml"
        config_file.write_text("retry: [unclosed")
        with pytest.raises(ConfigValidationError, match="YAML parse error"):
            load_engine_config(path=config_file)

    def test_hot_reload(self, tmp_path: Path) -> None:
        config_content = """
version: "2.0-test"
retry:
  max_attempts: 5
schedule:
  default: "*/15 * * * *"
providers:
  readwise:
    export_url: "https://readwise.io/api/v2/export/"
    auth_url: "https://readwise.io/api/v2/auth/"
"""
        config_file = tmp_path / "sync_config.yaml"
        config_file.write_text(config_content.strip())

        new_config = reload_engine_config(path=config_file)
        try:
            assert new_config.version == "2.0-test"
            assert new_config.retry.max_attempts == 5
            assert new_config.schedule.default == "*/15 * * * *"
        finally:
            reload_engine_config()
