"""Shared fixtures and an in-memory sample source for sync engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.healthsync.base import (
    AggregateRecord,
    Granularity,
    MetricKind,
    QueryResult,
    QuantitySample,
    RawSample,
    Resource,
    SampleSource,
    TimeRange,
    Uploader,
)
from src.healthsync.config_loader import SyncConfig, load_sync_config
from src.healthsync.sync.anchor_store import InMemoryAnchorStore

# Fixed "now" for every time-dependent test
NOW = datetime(2026, 3, 10, 12, 30, tzinfo=timezone.utc)

WATCH_BUNDLE = "com.apple.health.8B2F1C3E"
WATCH_PRODUCT = "Watch6,2"
PHONE_PRODUCT = "iPhone14,2"
OURA_BUNDLE = "com.ouraring.oura"


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def sleep_slice(
    start: datetime,
    end: datetime,
    stage: Any = 1,
    bundle: str = WATCH_BUNDLE,
    product: str | None = WATCH_PRODUCT,
) -> RawSample:
    return RawSample(
        metric=MetricKind.SLEEP_ANALYSIS,
        start=start,
        end=end,
        value=stage,
        source_bundle=bundle,
        product_type=product,
    )


def raw_quantity(
    metric: MetricKind,
    value: Any,
    start: datetime,
    end: datetime | None = None,
    bundle: str | None = WATCH_BUNDLE,
) -> RawSample:
    return RawSample(
        metric=metric,
        start=start,
        end=end or start,
        value=value,
        unit="count",
        source_bundle=bundle,
        product_type=WATCH_PRODUCT,
    )


def quantity(
    value: float,
    start: datetime,
    end: datetime | None = None,
    bundle: str | None = WATCH_BUNDLE,
) -> QuantitySample:
    return QuantitySample(value=value, start=start, end=end or start, source_bundle=bundle)


def hourly(metric: MetricKind, start: datetime, value: float | None) -> AggregateRecord:
    return AggregateRecord(metric=metric, start=start, end=start + timedelta(hours=1), value=value)


def daily(metric: MetricKind, start: datetime, value: float | None) -> AggregateRecord:
    return AggregateRecord(metric=metric, start=start, end=start + timedelta(days=1), value=value)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeSampleSource(SampleSource):
    """In-memory SampleSource.

    Raw samples are stored per metric in insertion order; the cursor is the
    number of samples of that metric already handed out.  Aggregates are
    returned unfiltered so callers' range filtering is exercised.
    """

    def __init__(self) -> None:
        self.samples: dict[MetricKind, list[RawSample]] = {}
        self.aggregates: dict[tuple[MetricKind, Granularity], list[AggregateRecord]] = {}
        self.failures: dict[MetricKind, Exception] = {}
        self.calls: list[tuple[str, MetricKind, TimeRange]] = []

    def add_samples(self, *samples: RawSample) -> None:
        for sample in samples:
            self.samples.setdefault(sample.metric, []).append(sample)

    def add_aggregates(self, granularity: Granularity, *records: AggregateRecord) -> None:
        for record in records:
            self.aggregates.setdefault((record.metric, granularity), []).append(record)

    def fail(self, metric: MetricKind, exc: Exception) -> None:
        self.failures[metric] = exc

    async def query(
        self,
        metric: MetricKind,
        time_range: TimeRange,
        cursor: str | None = None,
    ) -> QueryResult:
        self.calls.append(("query", metric, time_range))
        if metric in self.failures:
            raise self.failures[metric]
        stored = self.samples.get(metric, [])
        offset = int(cursor) if cursor else 0
        selected = [
            s
            for s in stored[offset:]
            if s.start is None or s.end is None or time_range.overlaps(s.start, s.end)
        ]
        return QueryResult(samples=selected, cursor=str(len(stored)))

    async def query_aggregates(
        self,
        metric: MetricKind,
        time_range: TimeRange,
        granularity: Granularity,
    ) -> list[AggregateRecord]:
        self.calls.append((f"aggregates:{granularity.value}", metric, time_range))
        if metric in self.failures:
            raise self.failures[metric]
        return list(self.aggregates.get((metric, granularity), []))


class FakeUploader(Uploader):
    def __init__(self, error: Exception | None = None) -> None:
        self.posts: list[dict[str, Any]] = []
        self.error = error

    async def post(
        self, resource: Resource, payload: Any, stage: dict[str, Any], timezone_id: str
    ) -> None:
        if self.error is not None:
            raise self.error
        self.posts.append(
            {"resource": resource, "payload": payload, "stage": stage, "timezone": timezone_id}
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real sync config for tests."""
    return load_sync_config()


@pytest.fixture
def source() -> FakeSampleSource:
    return FakeSampleSource()


@pytest.fixture
def uploader() -> FakeUploader:
    return FakeUploader()


@pytest.fixture
def anchor_store() -> InMemoryAnchorStore:
    return InMemoryAnchorStore()
