"""Load, validate, and hot-reload the sync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an update — no restart required.

Usage::

    from src.healthsync.config_loader import get_sync_config

    config = get_sync_config()
    config.windowing.lookback_days          # 7
    config.sleep.gap_minutes_for(SourceType.PHONE)   # 120
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from src.healthsync.base import Resource, SourceType
from src.healthsync.errors import HealthSyncError

logger = logging.getLogger("healthsync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class WindowingConfig:
    """Statistics query window policy."""

    lookback_days: int = 7
    legacy_backfill_days: int = 21


@dataclass
class SleepConfig:
    """Sleep session reconstruction settings."""

    allowed_sources: list[str] = field(default_factory=list)
    phone_gap_minutes: int = 120
    default_gap_minutes: int = 30
    smooth_heart_rate: bool = True

    def gap_minutes_for(self, source_type: SourceType) -> int:
        """Return the stitching gap allowance for a device kind."""
        if source_type is SourceType.PHONE:
            return self.phone_gap_minutes
        return self.default_gap_minutes

    def is_allowed(self, source_bundle: str | None) -> bool:
        """True if the bundle belongs to an allow-listed data source."""
        if not source_bundle:
            return False
        return any(fragment in source_bundle for fragment in self.allowed_sources)


@dataclass
class BucketingConfig:
    accumulate_interval_minutes: int = 15
    average_window_seconds: int = 5


@dataclass
class ActivityConfig:
    detail_interval_minutes: int = 60


@dataclass
class HistoricalConfig:
    """How far back the historical stage reaches, per resource."""

    default_days_to_backfill: int = 30
    overrides: dict[Resource, int] = field(default_factory=dict)

    def days_for(self, resource: Resource) -> int:
        return self.overrides.get(resource, self.default_days_to_backfill)


@dataclass
class SyncConfig:
    """Complete, validated sync engine configuration.

    Attributes:
        version:    Config schema version string.
        windowing:  Statistics window policy.
        sleep:      Sleep reconstruction settings.
        bucketing:  SampleBucketer defaults.
        activity:   Activity aggregation settings.
        historical: Historical stage reach.
    """

    version: str
    windowing: WindowingConfig
    sleep: SleepConfig
    bucketing: BucketingConfig
    activity: ActivityConfig
    historical: HistoricalConfig
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(HealthSyncError, ValueError):
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

    All problems are collected and reported together.

    Raises:
        ConfigValidationError: If any field is missing or invalid.
    """
    errors: list[str] = []

    def _positive_int(section: dict, key: str, section_name: str, default: int) -> int:
        value = section.get(key, default)
        try:
            number = int(value)
        except (TypeError, ValueError):
            errors.append(f"{section_name}.{key} must be an integer, got {value!r}")
            return default
        if number <= 0:
            errors.append(f"{section_name}.{key} must be positive, got {number}")
        return number

    version = str(raw.get("version", "1.0"))

    # ── Windowing ──
    win_raw = raw.get("windowing") or {}
    windowing = WindowingConfig(
        lookback_days=_positive_int(win_raw, "lookback_days", "windowing", 7),
        legacy_backfill_days=_positive_int(
            win_raw, "legacy_backfill_days", "windowing", 21
        ),
    )

    # ── Sleep ──
    sleep_raw = raw.get("sleep") or {}
    allowed = sleep_raw.get("allowed_sources") or []
    if not isinstance(allowed, list) or not all(isinstance(s, str) for s in allowed):
        errors.append("sleep.allowed_sources must be a list of strings")
        allowed = []
    if not allowed:
        logger.warning("sleep.allowed_sources is empty; every sleep sample will be dropped")
    sleep = SleepConfig(
        allowed_sources=list(allowed),
        phone_gap_minutes=_positive_int(sleep_raw, "phone_gap_minutes", "sleep", 120),
        default_gap_minutes=_positive_int(sleep_raw, "default_gap_minutes", "sleep", 30),
        smooth_heart_rate=bool(sleep_raw.get("smooth_heart_rate", True)),
    )

    # ── Bucketing ──
    bk_raw = raw.get("bucketing") or {}
    bucketing = BucketingConfig(
        accumulate_interval_minutes=_positive_int(
            bk_raw, "accumulate_interval_minutes", "bucketing", 15
        ),
        average_window_seconds=_positive_int(
            bk_raw, "average_window_seconds", "bucketing", 5
        ),
    )
    if bucketing.accumulate_interval_minutes > 60:
        errors.append("bucketing.accumulate_interval_minutes must be at most 60")

    # ── Activity ──
    act_raw = raw.get("activity") or {}
    activity = ActivityConfig(
        detail_interval_minutes=_positive_int(
            act_raw, "detail_interval_minutes", "activity", 60
        ),
    )

    # ── Historical ──
    hist_raw = raw.get("historical") or {}
    overrides: dict[Resource, int] = {}
    for name, days in (hist_raw.get("overrides") or {}).items():
        try:
            resource = Resource(name)
        except ValueError:
            errors.append(f"historical.overrides.{name} is not a known resource")
            continue
        overrides[resource] = _positive_int(
            {"days": days}, "days", f"historical.overrides.{name}", 30
        )
    historical = HistoricalConfig(
        default_days_to_backfill=_positive_int(
            hist_raw, "default_days_to_backfill", "historical", 30
        ),
        overrides=overrides,
    )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        windowing=windowing,
        sleep=sleep,
        bucketing=bucketing,
        activity=activity,
        historical=historical,
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

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
