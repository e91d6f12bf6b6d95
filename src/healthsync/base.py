"""Core data models and collaborator interfaces for the health sync engine.

Every pipeline in this package consumes RawSample / AggregateRecord values
produced by a SampleSource and emits SleepSession / ActivityDay /
AggregateRecord values for an Uploader.  These types are the single source
of truth shared by the bucketer, windower, deduplicator and the two
reconstruction pipelines.

All timestamps are timezone-aware UTC datetimes.  Naive datetimes handed in
by callers are assumed to be UTC.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable

from src.healthsync.errors import MalformedSample

logger = logging.getLogger("healthsync.base")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class MetricKind(str, Enum):
    """Normalized metric kinds, independent of any platform SDK type."""

    SLEEP_ANALYSIS = "sleep_analysis"
    HEART_RATE = "heart_rate"
    HEART_RATE_VARIABILITY = "heart_rate_variability"
    OXYGEN_SATURATION = "oxygen_saturation"
    RESTING_HEART_RATE = "resting_heart_rate"
    RESPIRATORY_RATE = "respiratory_rate"
    WRIST_TEMPERATURE = "wrist_temperature"
    ACTIVE_ENERGY_BURNED = "active_energy_burned"
    BASAL_ENERGY_BURNED = "basal_energy_burned"
    STEPS = "steps"
    FLOORS_CLIMBED = "floors_climbed"
    DISTANCE_WALKING_RUNNING = "distance_walking_running"
    VO2_MAX = "vo2_max"
    GLUCOSE = "glucose"
    BODY_MASS = "body_mass"
    BODY_FAT_PERCENTAGE = "body_fat_percentage"


class Resource(str, Enum):
    """Top-level resource types, each synced by an independent pipeline."""

    SLEEP = "sleep"
    ACTIVITY = "activity"
    VITALS = "vitals"
    BODY = "body"


class Granularity(str, Enum):
    """Bucket size for aggregate (statistics) queries."""

    HOURLY = "hourly"
    DAILY = "daily"


class SleepStage(str, Enum):
    UNSPECIFIED = "unspecified"
    AWAKE = "awake"
    LIGHT = "light"
    REM = "rem"
    DEEP = "deep"
    IN_BED = "in_bed"
    UNKNOWN = "unknown"

    @classmethod
    def from_value(cls, value: object) -> "SleepStage":
        """Decode a source stage value (integer code or name) into a SleepStage.

        Integer codes follow the common health-record convention:
        0 in bed, 1 asleep (unspecified), 2 awake, 3 core/light, 4 deep, 5 REM.
        """
        if isinstance(value, bool):
            return cls.UNKNOWN
        if isinstance(value, (int, float)):
            return _SLEEP_STAGE_CODES.get(int(value), cls.UNKNOWN)
        if isinstance(value, str):
            key = value.strip().lower().replace("-", "_").replace(" ", "_")
            if key.isdigit():
                return _SLEEP_STAGE_CODES.get(int(key), cls.UNKNOWN)
            return _SLEEP_STAGE_NAMES.get(key, cls.UNKNOWN)
        return cls.UNKNOWN

    @property
    def code(self) -> int:
        """Integer code of the stage; -1 for unknown."""
        for code, stage in _SLEEP_STAGE_CODES.items():
            if stage is self:
                return code
        return -1


_SLEEP_STAGE_CODES: dict[int, SleepStage] = {
    0: SleepStage.IN_BED,
    1: SleepStage.UNSPECIFIED,
    2: SleepStage.AWAKE,
    3: SleepStage.LIGHT,
    4: SleepStage.DEEP,
    5: SleepStage.REM,
}

_SLEEP_STAGE_NAMES: dict[str, SleepStage] = {
    "in_bed": SleepStage.IN_BED,
    "inbed": SleepStage.IN_BED,
    "unspecified": SleepStage.UNSPECIFIED,
    "asleep": SleepStage.UNSPECIFIED,
    "asleep_unspecified": SleepStage.UNSPECIFIED,
    "awake": SleepStage.AWAKE,
    "light": SleepStage.LIGHT,
    "core": SleepStage.LIGHT,
    "asleep_core": SleepStage.LIGHT,
    "deep": SleepStage.DEEP,
    "asleep_deep": SleepStage.DEEP,
    "rem": SleepStage.REM,
    "asleep_rem": SleepStage.REM,
}


class SourceType(str, Enum):
    """Kind of device that recorded a sample."""

    PHONE = "phone"
    WATCH = "watch"
    RING = "ring"
    UNKNOWN = "unknown"

    @classmethod
    def infer(cls, source_bundle: str | None, product_type: str | None) -> "SourceType":
        product = (product_type or "").lower()
        if "iphone" in product:
            return cls.PHONE
        if "watch" in product:
            return cls.WATCH
        if "oura" in (source_bundle or "").lower():
            return cls.RING
        return cls.UNKNOWN


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def to_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive input is assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(value: datetime) -> datetime:
    """Midnight (UTC) of the day containing ``value``."""
    value = to_utc(value)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_hour(value: datetime) -> datetime:
    value = to_utc(value)
    return value.replace(minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class TimeRange:
    """An end-exclusive time interval ``[start, end)``."""

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """True if the closed interval [start, end] touches this range."""
        return start < self.end and end >= self.start

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


# ---------------------------------------------------------------------------
# Samples
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawSample:
    """An atomic sample exactly as produced by the external source.

    Never modified.  Fields may be missing when the source is sloppy; such
    samples fail normalization and are dropped.

    Attributes:
        metric:        Metric kind of the sample.
        start:         Sample start.
        end:           Sample end.
        value:         Numeric value, or a stage code/name for sleep samples.
        unit:          Unit string reported by the source.
        source_bundle: Identifier of the app that wrote the sample.
        product_type:  Hardware product identifier (e.g. 'Watch6,2').
    """

    metric: MetricKind
    start: datetime | None
    end: datetime | None
    value: Any = None
    unit: str | None = None
    source_bundle: str | None = None
    product_type: str | None = None


@dataclass(frozen=True)
class QuantitySample:
    """Normalized sample used internally by every pipeline."""

    value: float
    start: datetime
    end: datetime
    source_bundle: str | None = None
    unit: str | None = None

    @classmethod
    def from_raw(cls, raw: RawSample, value: float | None = None) -> "QuantitySample":
        """Normalize a RawSample.

        Args:
            raw:   The source sample.
            value: Override for the value (used for categorical sleep samples,
                   whose value is a stage rather than a quantity).

        Raises:
            MalformedSample: If start, end or a numeric value is missing.
        """
        if raw.start is None or raw.end is None:
            raise MalformedSample(f"{raw.metric.value} sample is missing start or end")
        numeric = value if value is not None else _safe_float(raw.value)
        if numeric is None:
            raise MalformedSample(
                f"{raw.metric.value} sample has non-numeric value {raw.value!r}"
            )
        return cls(
            value=numeric,
            start=to_utc(raw.start),
            end=to_utc(raw.end),
            source_bundle=raw.source_bundle,
            unit=raw.unit,
        )


def normalize_samples(raws: Iterable[RawSample]) -> list[QuantitySample]:
    """Normalize a batch, silently dropping malformed samples."""
    samples: list[QuantitySample] = []
    dropped = 0
    for raw in raws:
        try:
            samples.append(QuantitySample.from_raw(raw))
        except MalformedSample as exc:
            dropped += 1
            logger.debug("Dropping malformed sample: %s", exc)
    if dropped:
        logger.warning("Dropped %d malformed sample(s) during normalization", dropped)
    return samples


@dataclass(frozen=True)
class AggregateRecord:
    """A statistic computed over one hourly or daily bucket.

    Attributes:
        metric:               Metric kind.
        start:                Bucket start (inclusive).
        end:                  Bucket end (exclusive).
        value:                Aggregated value, None when the bucket is empty.
        contributing_sources: Bundles of the apps whose samples contributed.
    """

    metric: MetricKind
    start: datetime
    end: datetime
    value: float | None
    contributing_sources: tuple[str, ...] = ()

    def to_sample(self) -> QuantitySample:
        return QuantitySample(
            value=self.value if self.value is not None else 0.0,
            start=to_utc(self.start),
            end=to_utc(self.end),
        )


# ---------------------------------------------------------------------------
# Reconstructed records
# ---------------------------------------------------------------------------


@dataclass
class SleepSession:
    """One logical sleep session stitched together from source slices.

    Mutable while the reconstructor builds it; treated as immutable once
    emitted.
    """

    start: datetime
    end: datetime
    source_bundle: str
    product_type: str | None = None
    stage_samples: dict[SleepStage, list[QuantitySample]] = field(default_factory=dict)
    side_channel: dict[MetricKind, list[QuantitySample]] = field(default_factory=dict)

    @property
    def source_type(self) -> SourceType:
        return SourceType.infer(self.source_bundle, self.product_type)

    @property
    def group_key(self) -> tuple[str, str | None]:
        return (self.source_bundle, self.product_type)

    def overlaps(self, other: "SleepSession") -> bool:
        """Closed-interval overlap: sessions that merely touch overlap."""
        return self.start <= other.end and other.start <= self.end


@dataclass
class DaySummary:
    """Floored daily totals for one floating (timezone-less) calendar date."""

    calendar_date: date
    active_energy_burned: float | None = None
    basal_energy_burned: float | None = None
    steps: int | None = None
    floors_climbed: int | None = None
    distance_walking_running: float | None = None

    @property
    def is_empty(self) -> bool:
        return all(
            v is None
            for v in (
                self.active_energy_burned,
                self.basal_energy_burned,
                self.steps,
                self.floors_climbed,
                self.distance_walking_running,
            )
        )


@dataclass
class ActivityDay:
    """A day summary together with the hourly detail for the same date."""

    summary: DaySummary
    detail: dict[MetricKind, list[QuantitySample]] = field(default_factory=dict)

    @property
    def calendar_date(self) -> date:
        return self.summary.calendar_date


@dataclass(frozen=True)
class QueryResult:
    """Samples returned by an incremental source query plus the new cursor."""

    samples: list[RawSample]
    cursor: str | None = None


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------


class SampleSource(ABC):
    """The platform health store.  Read mechanics are out of scope here.

    Implementations return samples in no particular order.  Time ranges are
    end-exclusive; samples overlapping the range are returned.
    """

    @abstractmethod
    async def query(
        self,
        metric: MetricKind,
        time_range: TimeRange,
        cursor: str | None = None,
    ) -> QueryResult:
        """Return samples for ``metric`` newer than ``cursor`` within ``time_range``."""

    @abstractmethod
    async def query_aggregates(
        self,
        metric: MetricKind,
        time_range: TimeRange,
        granularity: Granularity,
    ) -> list[AggregateRecord]:
        """Return one merged-across-sources statistic per bucket of ``granularity``."""


class Uploader(ABC):
    """Delivers reconstructed payloads to the remote service (out of scope)."""

    @abstractmethod
    async def post(
        self,
        resource: Resource,
        payload: Any,
        stage: dict[str, Any],
        timezone_id: str,
    ) -> None:
        """Deliver ``payload`` with its stage tag and timezone identifier.

        ``stage`` carries ``stage`` ("daily" or "historical") plus ISO
        ``start_date`` and ``end_date`` (None for the daily stage).
        """


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _safe_float(value: object) -> float | None:
    """Safely coerce a value to a finite float, returning None on failure."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result
