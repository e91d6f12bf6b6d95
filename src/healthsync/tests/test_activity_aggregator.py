"""Tests for local-calendar activity aggregation."""

from __future__ import annotations

from datetime import date
from zoneinfo import ZoneInfo

import pytest

from src.healthsync.activity_aggregator import (
    SUMMARY_METRICS,
    ActivityAggregator,
    date_span,
    floor_total,
    local_date,
    local_day_range,
)
from src.healthsync.base import Granularity, MetricKind, Resource
from src.healthsync.config_loader import SyncConfig
from src.healthsync.sync.anchor_store import series_key
from src.healthsync.tests.conftest import (
    NOW,
    FakeSampleSource,
    daily,
    hourly,
    raw_quantity,
    utc,
)

BERLIN = ZoneInfo("Europe/Berlin")  # UTC+1 in early March 2026

ACTIVITY_KEYS = {
    series_key(Resource.ACTIVITY, m) for m in (*SUMMARY_METRICS, MetricKind.VO2_MAX)
}


@pytest.fixture
def aggregator(source: FakeSampleSource, sync_config: SyncConfig) -> ActivityAggregator:
    return ActivityAggregator(source, tz=BERLIN, config=sync_config)


class TestCalendarHelpers:
    def test_floor_total_floors_down(self) -> None:
        assert floor_total(MetricKind.STEPS, 9.99) == 9
        assert isinstance(floor_total(MetricKind.STEPS, 9.99), int)
        assert floor_total(MetricKind.ACTIVE_ENERGY_BURNED, 123.7) == 123.0
        assert isinstance(floor_total(MetricKind.ACTIVE_ENERGY_BURNED, 123.7), float)
        assert floor_total(MetricKind.FLOORS_CLIMBED, None) is None

    def test_local_date_uses_wall_clock(self) -> None:
        assert local_date(utc(2026, 3, 9, 23, 30), BERLIN) == date(2026, 3, 10)
        assert local_date(utc(2026, 3, 9, 22, 30), BERLIN) == date(2026, 3, 9)

    def test_local_day_range_spans_local_midnights(self) -> None:
        time_range = local_day_range(date(2026, 3, 10), date(2026, 3, 11), BERLIN)
        assert time_range.start == utc(2026, 3, 9, 23)
        assert time_range.end == utc(2026, 3, 11, 23)

    def test_local_day_range_across_dst_change(self) -> None:
        # Berlin moves to UTC+2 on 2026-03-29.
        time_range = local_day_range(date(2026, 3, 29), date(2026, 3, 29), BERLIN)
        assert time_range.duration.total_seconds() == 23 * 3600

    def test_date_span_caps_start_to_end(self) -> None:
        assert date_span(date(2026, 3, 12), date(2026, 3, 10)) == [date(2026, 3, 10)]
        assert len(date_span(date(2026, 3, 1), date(2026, 3, 10))) == 10


class TestActivityAggregator:
    @pytest.mark.asyncio
    async def test_day_summary_floored_and_keyed_by_local_date(
        self, source: FakeSampleSource, aggregator: ActivityAggregator
    ) -> None:
        source.add_aggregates(
            Granularity.HOURLY,
            hourly(MetricKind.STEPS, utc(2026, 3, 9, 23), 100),  # 00:00 local
            hourly(MetricKind.STEPS, utc(2026, 3, 10, 8), 200),
        )
        source.add_aggregates(
            Granularity.DAILY,
            daily(MetricKind.STEPS, utc(2026, 3, 9, 23), 9.99),
            daily(MetricKind.ACTIVE_ENERGY_BURNED, utc(2026, 3, 9, 23), 123.7),
            daily(MetricKind.STEPS, utc(2026, 3, 8, 23), 5000),  # outside the span
        )

        result = await aggregator.aggregate(utc(2026, 3, 9, 23), NOW)

        assert [d.calendar_date for d in result.days] == [date(2026, 3, 10)]
        summary = result.days[0].summary
        assert summary.steps == 9
        assert summary.active_energy_burned == 123.0
        assert summary.basal_energy_burned is None
        assert summary.floors_climbed is None

    @pytest.mark.asyncio
    async def test_hourly_detail_attached_to_its_day(
        self, source: FakeSampleSource, aggregator: ActivityAggregator
    ) -> None:
        source.add_aggregates(
            Granularity.HOURLY,
            hourly(MetricKind.STEPS, utc(2026, 3, 9, 22), 10),  # Mar 9 local
            hourly(MetricKind.STEPS, utc(2026, 3, 9, 23), 100),  # Mar 10 local
            hourly(MetricKind.STEPS, utc(2026, 3, 10, 8), 200),
        )
        source.add_aggregates(
            Granularity.DAILY,
            daily(MetricKind.STEPS, utc(2026, 3, 8, 23), 10),
            daily(MetricKind.STEPS, utc(2026, 3, 9, 23), 300),
        )

        result = await aggregator.aggregate(utc(2026, 3, 9, 0), NOW)

        assert [d.calendar_date for d in result.days] == [date(2026, 3, 9), date(2026, 3, 10)]
        march_10 = result.days[1]
        assert [s.value for s in march_10.detail[MetricKind.STEPS]] == [100, 200]
        assert [s.value for s in result.days[0].detail[MetricKind.STEPS]] == [10]

    @pytest.mark.asyncio
    async def test_days_without_totals_not_emitted(
        self, source: FakeSampleSource, aggregator: ActivityAggregator
    ) -> None:
        source.add_aggregates(
            Granularity.HOURLY, hourly(MetricKind.STEPS, utc(2026, 3, 8, 10), 40)
        )
        source.add_aggregates(
            Granularity.DAILY, daily(MetricKind.STEPS, utc(2026, 3, 7, 23), 40)
        )

        result = await aggregator.aggregate(utc(2026, 3, 8, 0), NOW)

        # Mar 8 has a total; Mar 9 and Mar 10 have none.
        assert [d.calendar_date for d in result.days] == [date(2026, 3, 8)]

    @pytest.mark.asyncio
    async def test_no_hourly_records_means_no_days(
        self, source: FakeSampleSource, aggregator: ActivityAggregator
    ) -> None:
        source.add_aggregates(
            Granularity.DAILY, daily(MetricKind.STEPS, utc(2026, 3, 9, 23), 40)
        )

        result = await aggregator.aggregate(utc(2026, 3, 10), NOW)

        assert result.days == []
        assert not any(call[0] == "aggregates:daily" for call in source.calls)

    @pytest.mark.asyncio
    async def test_anchors_returned_for_every_series(
        self, source: FakeSampleSource, aggregator: ActivityAggregator
    ) -> None:
        source.add_samples(raw_quantity(MetricKind.VO2_MAX, 41.5, utc(2026, 3, 10, 7)))

        result = await aggregator.aggregate(utc(2026, 3, 10), NOW)

        keys = {a.key for a in result.anchors}
        assert keys == ACTIVITY_KEYS
        assert [s.value for s in result.vo2_max] == [41.5]
        vo2_anchor = next(a for a in result.anchors if a.key.endswith("vo2_max"))
        assert vo2_anchor.cursor == "1"

    @pytest.mark.asyncio
    async def test_second_pass_delivers_nothing_new(
        self, source: FakeSampleSource, aggregator: ActivityAggregator
    ) -> None:
        source.add_aggregates(
            Granularity.HOURLY, hourly(MetricKind.STEPS, utc(2026, 3, 10, 8), 200)
        )
        source.add_aggregates(
            Granularity.DAILY, daily(MetricKind.STEPS, utc(2026, 3, 9, 23), 200)
        )
        first = await aggregator.aggregate(utc(2026, 3, 10), NOW)

        anchors = {a.key: a for a in first.anchors}
        second = await aggregator.aggregate(utc(2026, 3, 10), NOW, anchors)

        assert len(first.days) == 1
        assert second.days == []
        assert second.is_empty

