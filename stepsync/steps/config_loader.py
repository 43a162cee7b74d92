"""Load, validate, and hot-reload the StepSync sync configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk — no restart required.

Usage::

    from stepsync.steps.config_loader import get_sync_config

    config = get_sync_config()
    config.queue.batch_size          # 10
    config.backfill.chunk_days       # 30
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger("stepsync.steps.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"

_INTRADAY_DETAIL_LEVELS = {"1min", "5min", "15min"}


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class QueueConfig:
    """Webhook job queue worker settings."""

    batch_size: int
    interval_seconds: int
    stuck_after_minutes: int


@dataclass
class BackfillConfig:
    """Historical backfill settings."""

    chunk_days: int
    rate_limit_ms: int
    default_window_days: int


@dataclass
class PollerConfig:
    enabled: bool


@dataclass
class CredentialsConfig:
    refresh_buffer_seconds: int


@dataclass
class IntradayConfig:
    """Intraday sample fetching.  Off unless the Fitbit app is approved for it."""

    enabled: bool
    detail_level: str


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    This is the single in-memory representation of sync_config.yaml.
    """

    version: str
    queue: QueueConfig
    backfill: BackfillConfig
    poller: PollerConfig
    credentials: CredentialsConfig
    intraday: IntradayConfig
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Missing sections fall back to defaults; present values must be positive
    integers where a count or duration is expected.

    Raises:
        ConfigValidationError: If any value is invalid.
    """
    errors: list[str] = []

    def _positive_int(section: dict, key: str, default: int, name: str) -> int:
        value = section.get(key, default)
        try:
            number = int(value)
        except (TypeError, ValueError):
            errors.append(f"{name}.{key} must be an integer, got {value!r}")
            return default
        if number <= 0:
            errors.append(f"{name}.{key} must be > 0, got {number}")
        return number

    def _non_negative_int(section: dict, key: str, default: int, name: str) -> int:
        value = section.get(key, default)
        try:
            number = int(value)
        except (TypeError, ValueError):
            errors.append(f"{name}.{key} must be an integer, got {value!r}")
            return default
        if number < 0:
            errors.append(f"{name}.{key} must be >= 0, got {number}")
        return number

    def _section(key: str) -> dict:
        section = raw.get(key) or {}
        if not isinstance(section, dict):
            errors.append(f"'{key}' must be a mapping")
            return {}
        return section

    version = str(raw.get("version", "1.0"))

    q_raw = _section("queue")
    queue = QueueConfig(
        batch_size=_positive_int(q_raw, "batch_size", 10, "queue"),
        interval_seconds=_positive_int(q_raw, "interval_seconds", 60, "queue"),
        stuck_after_minutes=_positive_int(q_raw, "stuck_after_minutes", 30, "queue"),
    )

    bf_raw = _section("backfill")
    backfill = BackfillConfig(
        chunk_days=_positive_int(bf_raw, "chunk_days", 30, "backfill"),
        rate_limit_ms=_non_negative_int(bf_raw, "rate_limit_ms", 1000, "backfill"),
        default_window_days=_positive_int(bf_raw, "default_window_days", 30, "backfill"),
    )
    if backfill.chunk_days > 1095:
        errors.append("backfill.chunk_days exceeds Fitbit's 1095-day range limit")

    p_raw = _section("poller")
    poller = PollerConfig(enabled=bool(p_raw.get("enabled", True)))

    c_raw = _section("credentials")
    credentials = CredentialsConfig(
        refresh_buffer_seconds=_positive_int(c_raw, "refresh_buffer_seconds", 300, "credentials"),
    )

    i_raw = _section("intraday")
    intraday = IntradayConfig(
        enabled=bool(i_raw.get("enabled", False)),
        detail_level=str(i_raw.get("detail_level", "15min")),
    )
    if intraday.detail_level not in _INTRADAY_DETAIL_LEVELS:
        errors.append(
            f"intraday.detail_level must be one of {sorted(_INTRADAY_DETAIL_LEVELS)}, "
            f"got {intraday.detail_level!r}"
        )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        queue=queue,
        backfill=backfill,
        poller=poller,
        credentials=credentials,
        intraday=intraday,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
