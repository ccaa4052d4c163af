"""Load, validate, and hot-reload the sync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_engine_config()`` to re-read from
disk after an admin update; no restart required.

Usage::

    from src.highlights.config_loader import get_engine_config

    config = get_engine_config()
    config.retry.max_attempts                   # 3
    config.provider("readwise").export_url      # https://readwise.io/api/v2/export/
    config.kinds                                # ["readwise", "obsidian"]
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("marginalia.highlights.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"

SUPPORTED_EXPORT_FORMATS = frozenset({"markdown"})


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff settings for provider requests.

    ``max_attempts`` counts every attempt including the first one, so a
    policy of 3 allows two retries.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    backoff_factor: float = 2.0
    max_delay_seconds: float = 30.0

    def delay_for(self, retry_number: int) -> float:
        """Return the wait before retry ``retry_number`` (1-based)."""
        delay = self.base_delay_seconds * (self.backoff_factor ** (retry_number - 1))
        return min(delay, self.max_delay_seconds)


@dataclass(frozen=True)
class RunConfig:
    timeout_seconds: float = 600.0


@dataclass(frozen=True)
class ScheduleConfig:
    default: str = "0 */6 * * *"
    timezone: str = "UTC"


@dataclass(frozen=True)
class ProviderConfig:
    """Endpoints for one remote export API."""

    name: str
    export_url: str
    auth_url: str
    source_label: str


@dataclass(frozen=True)
class ExportConfig:
    """A file-based sync kind that writes stored books to a destination."""

    name: str
    format: str = "markdown"


@dataclass
class EngineConfig:
    """Complete, validated engine configuration.

    Attributes:
        version:              Config schema version string.
        retry:                Backoff policy for provider requests.
        http_timeout_seconds: Per-request timeout for provider calls.
        run:                  Run deadline settings.
        schedule:             Default cron schedule and timezone.
        providers:            Provider slug → endpoints.
        exports:              Export kind → output format.
    """

    version: str
    retry: RetryPolicy
    http_timeout_seconds: float
    run: RunConfig
    schedule: ScheduleConfig
    providers: dict[str, ProviderConfig]
    exports: dict[str, ExportConfig] = field(default_factory=dict)
    _raw: dict = field(default_factory=dict, repr=False)

    def provider(self, name: str) -> ProviderConfig:
        """Return the endpoints for a provider slug.

        Raises:
            KeyError: If the provider is not configured.
        """
        if name not in self.providers:
            raise KeyError(
                f"No provider configured for '{name}'. Available: {list(self.providers)}"
            )
        return self.providers[name]

    @property
    def kinds(self) -> list[str]:
        """Every configured sync kind: providers first, then exports."""
        return list(self.providers) + list(self.exports)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> EngineConfig:
    """Validate the raw YAML dict and construct an EngineConfig.

    All problems are collected and reported together.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: float, name: str, minimum: float = 0.0) -> float:
        value = section.get(key, default)
        try:
            number = float(value)
        except (TypeError, ValueError):
            errors.append(f"{name}.{key} must be a number, got {value!r}")
            return default
        if number < minimum:
            errors.append(f"{name}.{key} = {number} must be >= {minimum}")
        return number

    version = str(raw.get("version", "1.0"))

    # ── Retry ──
    retry_raw: dict[str, Any] = raw.get("retry") or {}
    retry = RetryPolicy(
        max_attempts=int(_number(retry_raw, "max_attempts", 3, "retry", minimum=1)),
        base_delay_seconds=_number(retry_raw, "base_delay_seconds", 1.0, "retry"),
        backoff_factor=_number(retry_raw, "backoff_factor", 2.0, "retry", minimum=1.0),
        max_delay_seconds=_number(retry_raw, "max_delay_seconds", 30.0, "retry"),
    )
    if retry.max_delay_seconds < retry.base_delay_seconds:
        errors.append("retry.max_delay_seconds must be >= retry.base_delay_seconds")

    # ── HTTP ──
    http_raw: dict[str, Any] = raw.get("http") or {}
    http_timeout = _number(http_raw, "timeout_seconds", 30.0, "http", minimum=0.1)

    # ── Run ──
    run_raw: dict[str, Any] = raw.get("run") or {}
    run = RunConfig(
        timeout_seconds=_number(run_raw, "timeout_seconds", 600.0, "run", minimum=1.0),
    )

    # ── Schedule ──
    sched_raw: dict[str, Any] = raw.get("schedule") or {}
    schedule = ScheduleConfig(
        default=str(sched_raw.get("default", "0 */6 * * *")),
        timezone=str(sched_raw.get("timezone", "UTC")),
    )

    # ── Providers ──
    providers: dict[str, ProviderConfig] = {}
    providers_raw = raw.get("providers") or {}
    if not providers_raw:
        errors.append("'providers' section is missing or empty")
    for name, cfg in providers_raw.items():
        if not isinstance(cfg, dict):
            errors.append(f"providers.{name} must be a mapping")
            continue
        missing = [k for k in ("export_url", "auth_url") if not cfg.get(k)]
        if missing:
            errors.append(f"providers.{name} is missing {', '.join(missing)}")
            continue
        providers[name] = ProviderConfig(
            name=name,
            export_url=str(cfg["export_url"]),
            auth_url=str(cfg["auth_url"]),
            source_label=str(cfg.get("source_label", name)),
        )

    # ── Exports ──
    exports: dict[str, ExportConfig] = {}
    for name, cfg in (raw.get("exports") or {}).items():
        cfg = cfg or {}
        if not isinstance(cfg, dict):
            errors.append(f"exports.{name} must be a mapping")
            continue
        export_format = str(cfg.get("format", "markdown"))
        if export_format not in SUPPORTED_EXPORT_FORMATS:
            errors.append(
                f"exports.{name}.format must be one of {sorted(SUPPORTED_EXPORT_FORMATS)}, "
                f"got {export_format!r}"
            )
            continue
        if name in providers:
            errors.append(f"exports.{name} clashes with a provider of the same name")
            continue
        exports[name] = ExportConfig(name=name, format=export_format)

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return EngineConfig(
        version=version,
        retry=retry,
        http_timeout_seconds=http_timeout,
        run=run,
        schedule=schedule,
        providers=providers,
        exports=exports,
        _raw=raw,
    )


def load_engine_config(path: Path | None = None) -> EngineConfig:
    """Load and validate the engine config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync engine config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global cache with hot-reload support
# ---------------------------------------------------------------------------

_config: EngineConfig | None = None
_config_lock = threading.Lock()


def get_engine_config() -> EngineConfig:
    """Return the cached EngineConfig, loading it on first call.

    Thread-safe.  Use ``reload_engine_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_engine_config()
    return _config


def reload_engine_config(path: Path | None = None) -> EngineConfig:
    """Reload the engine config from disk and replace the cached instance.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_engine_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync engine config: %s → %s", old_version, new_config.version)
    return new_config
