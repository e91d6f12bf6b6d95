"""Run one incremental statistics pass for a single series.

Combines the window policy, the one-time legacy identity backfill and the
identity dedup into a single call that returns the records to deliver and
the anchor to persist once they are delivered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from src.healthsync.base import (
    AggregateRecord,
    Granularity,
    MetricKind,
    SampleSource,
    TimeRange,
    to_utc,
)
from src.healthsync.errors import HealthSyncError, SourceQueryFailure
from src.healthsync.sync.anchor_store import SyncAnchor
from src.healthsync.sync.dedup import deduplicate, seed_identities
from src.healthsync.windowing import StatisticsWindower

logger = logging.getLogger("healthsync.sync.statistics")


@dataclass
class StatisticsPass:
    """Result of a statistics pass.

    Attributes:
        records: Aggregates to deliver, sorted by start.
        anchor:  Anchor to persist after the records have been delivered.
    """

    records: list[AggregateRecord]
    anchor: SyncAnchor


async def fetch_aggregates(
    source: SampleSource,
    metric: MetricKind,
    time_range: TimeRange,
    granularity: Granularity,
) -> list[AggregateRecord]:
    """Query aggregates and discard buckets starting outside ``time_range``.

    Sources bucket samples that straddle the query bounds too, producing
    partial statistics on either side; only buckets whose start lies inside
    the end-exclusive range are backed by a complete set of samples.

    Raises:
        SourceQueryFailure: If the source raises.
    """
    try:
        records = await source.query_aggregates(metric, time_range, granularity)
    except HealthSyncError:
        raise
    except Exception as exc:
        raise SourceQueryFailure(metric.value, str(exc)) from exc
    return [r for r in records if time_range.contains(to_utc(r.start))]


async def query_statistics(
    source: SampleSource,
    windower: StatisticsWindower,
    metric: MetricKind,
    key: str,
    start: datetime,
    end: datetime,
    anchor: SyncAnchor | None,
    granularity: Granularity = Granularity.HOURLY,
) -> StatisticsPass:
    """Compute the aggregates of ``metric`` that still need to be delivered.

    A missing anchor means the series is synced for the first time; an anchor
    without an identity set marks a legacy series, whose identity set is
    rebuilt from a backfill pass before the normal window is read.

    Raises:
        InvalidInterval:    If ``start`` is after ``end``.
        SourceQueryFailure: If the source fails; nothing should be persisted.
    """
    is_first_sync = anchor is None
    is_legacy = anchor is not None and anchor.is_legacy

    window = windower.compute(
        start,
        end,
        stored_date=anchor.last_synced_at if anchor else None,
        is_first_sync=is_first_sync,
        is_legacy=is_legacy,
    )

    if window.backfill is not None:
        backfilled = await fetch_aggregates(source, metric, window.backfill, granularity)
        existing_ids = seed_identities(backfilled)
        logger.info(
            "Legacy series %s: seeded %d identities from [%s, %s)",
            key,
            len(existing_ids),
            window.backfill.start,
            window.backfill.end,
        )
    else:
        existing_ids = set(anchor.id_set or ()) if anchor else set()

    records = await fetch_aggregates(source, metric, window.query, granularity)
    result = deduplicate(records, existing_ids)

    new_anchor = SyncAnchor(
        key=key,
        cursor=anchor.cursor if anchor else None,
        last_synced_at=window.watermark,
        id_set=result.id_set,
    )
    logger.debug(
        "Statistics %s: %d fetched, %d new, %d identities",
        key,
        len(records),
        len(result.to_emit),
        len(result.id_set),
    )
    return StatisticsPass(
        records=sorted(result.to_emit, key=lambda r: r.start),
        anchor=new_anchor,
    )
