"""Health sample sync and session-reconstruction engine.

Ingests atomic samples from a platform health store and reconciles them into
sleep sessions, daily activity summaries and deduplicated statistics for
one-way delivery, keeping incremental restart-safe sync state per series.

Subpackages:
    sync/  — Anchors, dedup, statistics passes, instructions, progress, scheduler

Core modules:
    base                — Data models and SampleSource / Uploader ABCs
    bucketer            — Sum and average reduction of sample series
    windowing           — Statistics query windows (first sync, incremental, legacy)
    sleep_reconstructor — Stitch and merge sleep slices into sessions
    activity_aggregator — Local-calendar daily activity summaries
    config_loader       — Load/validate/reload sync_config.yaml
"""

from src.healthsync.base import (
    ActivityDay,
    AggregateRecord,
    DaySummary,
    MetricKind,
    QuantitySample,
    RawSample,
    Resource,
    SampleSource,
    SleepSession,
    Uploader,
)
from src.healthsync.config_loader import SyncConfig, get_sync_config

__all__ = [
    "SampleSource",
    "Uploader",
    "RawSample",
    "QuantitySample",
    "AggregateRecord",
    "SleepSession",
    "DaySummary",
    "ActivityDay",
    "MetricKind",
    "Resource",
    "SyncConfig",
    "get_sync_config",
]
