"""Daily activity aggregation in the device's local timezone.

Hourly statistics are read incrementally (windowed and deduplicated), then
turned into one ActivityDay per local calendar date:

    1. Hourly    — statistics pass per summary metric (active energy, basal
                   energy, steps, floors, distance)
    2. Span      — local date of the earliest hourly record → local date of end
    3. Daily     — one daily aggregate per metric per date, floored
    4. Detail    — hourly records grouped by local date and rebucketed
    5. Emit      — dates with at least one non-empty summary metric, in order

Calendar dates are floating: 2026-03-10 means the 10th on the device's wall
clock, whatever its UTC offset was.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo

from src.healthsync.base import (
    ActivityDay,
    AggregateRecord,
    DaySummary,
    Granularity,
    MetricKind,
    QuantitySample,
    Resource,
    SampleSource,
    TimeRange,
    to_utc,
)
from src.healthsync.bucketer import SampleBucketer
from src.healthsync.config_loader import SyncConfig, get_sync_config
from src.healthsync.errors import InvalidInterval
from src.healthsync.sync.anchor_store import SyncAnchor, series_key
from src.healthsync.sync.quantities import query_quantities
from src.healthsync.sync.statistics import fetch_aggregates, query_statistics
from src.healthsync.windowing import StatisticsWindower

logger = logging.getLogger("healthsync.activity_aggregator")


# Summary metric → DaySummary attribute
SUMMARY_FIELDS: dict[MetricKind, str] = {
    MetricKind.ACTIVE_ENERGY_BURNED: "active_energy_burned",
    MetricKind.BASAL_ENERGY_BURNED: "basal_energy_burned",
    MetricKind.STEPS: "steps",
    MetricKind.FLOORS_CLIMBED: "floors_climbed",
    MetricKind.DISTANCE_WALKING_RUNNING: "distance_walking_running",
}

SUMMARY_METRICS: tuple[MetricKind, ...] = tuple(SUMMARY_FIELDS)

# Counted metrics are reported as integers
INTEGER_METRICS = frozenset({MetricKind.STEPS, MetricKind.FLOORS_CLIMBED})


@dataclass
class ActivityPass:
    """Result of an activity pass.

    Attributes:
        days:    Non-empty activity days, sorted by date.
        vo2_max: VO2 max samples read since the stored cursor.
        anchors: Anchors to persist once the payload has been delivered.
    """

    days: list[ActivityDay] = field(default_factory=list)
    vo2_max: list[QuantitySample] = field(default_factory=list)
    anchors: list[SyncAnchor] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.days and not self.vo2_max


# ---------------------------------------------------------------------------
# Calendar helpers
# ---------------------------------------------------------------------------


def floor_total(metric: MetricKind, value: float | None) -> float | int | None:
    """Floor a daily total: 9.99 → 9.  Counted metrics come back as int."""
    if value is None:
        return None
    floored = math.floor(value)
    return int(floored) if metric in INTEGER_METRICS else float(floored)


def local_date(moment: datetime, tz: tzinfo) -> date:
    """Floating calendar date of ``moment`` on the device's wall clock."""
    return to_utc(moment).astimezone(tz).date()


def local_day_range(first: date, last: date, tz: tzinfo) -> TimeRange:
    """UTC range from local midnight of ``first`` to local midnight after ``last``."""
    start = datetime.combine(first, time.min, tzinfo=tz)
    end = datetime.combine(last + timedelta(days=1), time.min, tzinfo=tz)
    return TimeRange(start=to_utc(start), end=to_utc(end))


def date_span(first: date, last: date) -> list[date]:
    if first > last:
        first = last
    return [first + timedelta(days=n) for n in range((last - first).days + 1)]


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class ActivityAggregator:
    """Produce daily activity summaries with hourly detail.

    Usage::

        aggregator = ActivityAggregator(source, tz=ZoneInfo("Europe/Berlin"))
        result = await aggregator.aggregate(start, end, anchors)
    """

    def __init__(
        self,
        source: SampleSource,
        tz: tzinfo | str = "UTC",
        config: SyncConfig | None = None,
        windower: StatisticsWindower | None = None,
        bucketer: SampleBucketer | None = None,
    ) -> None:
        self._source = source
        self._tz = ZoneInfo(tz) if isinstance(tz, str) else tz
        self._config = config or get_sync_config()
        self._windower = windower or StatisticsWindower(self._config)
        self._bucketer = bucketer or SampleBucketer(self._config, tz=self._tz)

    @property
    def tz(self) -> tzinfo:
        return self._tz

    async def aggregate(
        self,
        start: datetime,
        end: datetime,
        anchors: dict[str, SyncAnchor | None] | None = None,
    ) -> ActivityPass:
        """Run a full activity pass over ``[start, end)``.

        Args:
            start:   Requested window start.
            end:     Requested window end.
            anchors: Stored anchors by series key; missing keys are synced
                     for the first time.

        Raises:
            InvalidInterval:    If ``start`` is after ``end``.
            SourceQueryFailure: If any source read fails.
        """
        start, end = to_utc(start), to_utc(end)
        if start > end:
            raise InvalidInterval(start, end, context="ActivityAggregator.aggregate")
        anchors = anchors or {}

        passes = await asyncio.gather(
            *(
                query_statistics(
                    self._source,
                    self._windower,
                    metric,
                    series_key(Resource.ACTIVITY, metric),
                    start,
                    end,
                    anchors.get(series_key(Resource.ACTIVITY, metric)),
                )
                for metric in SUMMARY_METRICS
            )
        )
        hourly = {metric: p.records for metric, p in zip(SUMMARY_METRICS, passes)}

        vo2_key = series_key(Resource.ACTIVITY, MetricKind.VO2_MAX)
        vo2 = await query_quantities(
            self._source, MetricKind.VO2_MAX, vo2_key, start, end, anchors.get(vo2_key)
        )

        days: list[ActivityDay] = []
        starts = [r.start for records in hourly.values() for r in records]
        if starts:
            first = local_date(min(starts), self._tz)
            last = local_date(end, self._tz)
            summaries = await self.day_summaries(first, last)
            days = self.attach_detail(summaries, hourly)

        logger.info(
            "Activity pass [%s, %s): %d day(s), %d VO2 max sample(s)",
            start,
            end,
            len(days),
            len(vo2.samples),
        )
        return ActivityPass(
            days=days,
            vo2_max=vo2.samples,
            anchors=[p.anchor for p in passes] + [vo2.anchor],
        )

    async def day_summaries(self, first: date, last: date) -> list[DaySummary]:
        """One floored summary per local date in ``[first, last]``; empty dates dropped."""
        dates = date_span(first, last)
        query_range = local_day_range(dates[0], dates[-1], self._tz)

        results = await asyncio.gather(
            *(
                fetch_aggregates(self._source, metric, query_range, Granularity.DAILY)
                for metric in SUMMARY_METRICS
            )
        )

        by_date: dict[MetricKind, dict[date, AggregateRecord]] = {}
        for metric, records in zip(SUMMARY_METRICS, results):
            keyed = by_date.setdefault(metric, {})
            for record in records:
                day = local_date(record.start, self._tz)
                if day in keyed:
                    logger.warning(
                        "Duplicate daily %s aggregate for %s; keeping the later one",
                        metric.value,
                        day,
                    )
                keyed[day] = record

        summaries: list[DaySummary] = []
        for day in dates:
            values = {}
            for metric, attr in SUMMARY_FIELDS.items():
                record = by_date[metric].get(day)
                values[attr] = floor_total(metric, record.value if record else None)
            summary = DaySummary(calendar_date=day, **values)
            if summary.is_empty:
                logger.debug("No activity on %s", day)
                continue
            summaries.append(summary)
        return summaries

    def attach_detail(
        self,
        summaries: list[DaySummary],
        hourly: dict[MetricKind, list[AggregateRecord]],
    ) -> list[ActivityDay]:
        """Pair each summary with the rebucketed hourly detail of its date."""
        interval = self._config.activity.detail_interval_minutes

        grouped: dict[date, dict[MetricKind, list[QuantitySample]]] = {}
        for metric, records in hourly.items():
            for record in records:
                day = local_date(record.start, self._tz)
                grouped.setdefault(day, {}).setdefault(metric, []).append(record.to_sample())

        days: list[ActivityDay] = []
        for summary in sorted(summaries, key=lambda s: s.calendar_date):
            detail = {
                metric: self._bucketer.accumulate(samples, interval)
                for metric, samples in grouped.get(summary.calendar_date, {}).items()
            }
            days.append(ActivityDay(summary=summary, detail=detail))
        return days
