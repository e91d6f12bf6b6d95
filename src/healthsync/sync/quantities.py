"""Cursor-based incremental reads of raw samples."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from src.healthsync.base import (
    MetricKind,
    QuantitySample,
    RawSample,
    SampleSource,
    TimeRange,
    normalize_samples,
    to_utc,
)
from src.healthsync.errors import HealthSyncError, InvalidInterval, SourceQueryFailure
from src.healthsync.sync.anchor_store import SyncAnchor

logger = logging.getLogger("healthsync.sync.quantities")


@dataclass
class RawPass:
    """Raw samples read since the stored cursor, plus the anchor to persist."""

    samples: list[RawSample]
    anchor: SyncAnchor


@dataclass
class QuantityPass:
    samples: list[QuantitySample]
    anchor: SyncAnchor


async def read_since_cursor(
    source: SampleSource,
    metric: MetricKind,
    key: str,
    start: datetime,
    end: datetime,
    anchor: SyncAnchor | None,
) -> RawPass:
    """Read samples of ``metric`` newer than the series' stored cursor.

    The returned anchor carries the source's new cursor (or the old one when
    the source returned none) and ``end`` as its watermark.

    Raises:
        InvalidInterval:    If ``start`` is after ``end``.
        SourceQueryFailure: If the source fails.
    """
    start, end = to_utc(start), to_utc(end)
    if start > end:
        raise InvalidInterval(start, end, context="read_since_cursor")

    cursor = anchor.cursor if anchor else None
    try:
        result = await source.query(metric, TimeRange(start=start, end=end), cursor)
    except HealthSyncError:
        raise
    except Exception as exc:
        raise SourceQueryFailure(metric.value, str(exc)) from exc

    new_anchor = SyncAnchor(
        key=key,
        cursor=result.cursor if result.cursor is not None else cursor,
        last_synced_at=end,
        id_set=anchor.id_set if anchor else None,
    )
    logger.debug("Read %s: %d sample(s) since cursor %r", key, len(result.samples), cursor)
    return RawPass(samples=list(result.samples), anchor=new_anchor)


async def query_quantities(
    source: SampleSource,
    metric: MetricKind,
    key: str,
    start: datetime,
    end: datetime,
    anchor: SyncAnchor | None,
) -> QuantityPass:
    """Like read_since_cursor, with samples normalized and sorted by start."""
    raw = await read_since_cursor(source, metric, key, start, end, anchor)
    samples = sorted(normalize_samples(raw.samples), key=lambda s: s.start)
    return QuantityPass(samples=samples, anchor=raw.anchor)
