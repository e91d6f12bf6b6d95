"""Statistics query window policy.

Decides which interval to ask the sample source for, given the requested
range, the series' stored watermark and its sync history::

                  legacy identity backfill
          |______________________________________________|
    watermark - 21d (day start)                  watermark (hour start)

                                  |____________________________________|
                        watermark - 7d (lookback)                    end

A first sync instead starts at the beginning of the requested start day so
the whole first day is captured.  Because other writers may insert samples
behind our watermark, incremental passes always re-read a week; the identity
set filters out what was already delivered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from src.healthsync.base import TimeRange, start_of_day, start_of_hour, to_utc
from src.healthsync.config_loader import SyncConfig, WindowingConfig, get_sync_config
from src.healthsync.errors import InvalidInterval

logger = logging.getLogger("healthsync.windowing")


@dataclass(frozen=True)
class StatisticsWindow:
    """The intervals one statistics pass should query.

    Attributes:
        query:     End-exclusive interval whose aggregates may be emitted.
        backfill:  Interval read only to seed the identity set (legacy series).
        watermark: The new stored watermark once the pass succeeds.
    """

    query: TimeRange
    backfill: TimeRange | None
    watermark: datetime


class StatisticsWindower:
    """Compute query intervals for a statistics series."""

    def __init__(self, config: SyncConfig | None = None) -> None:
        self._config: WindowingConfig = (config or get_sync_config()).windowing

    def compute(
        self,
        start: datetime,
        end: datetime,
        stored_date: datetime | None = None,
        is_first_sync: bool = False,
        is_legacy: bool = False,
    ) -> StatisticsWindow:
        """Compute the window for one pass.

        Args:
            start:         Requested start.
            end:           Requested end (exclusive).
            stored_date:   Watermark persisted by the previous pass, if any.
            is_first_sync: True when the series has never been synced.
            is_legacy:     True when the series predates identity-based dedup.

        Raises:
            InvalidInterval: If ``start`` is after ``end``.
        """
        start, end = to_utc(start), to_utc(end)
        if start > end:
            raise InvalidInterval(start, end, context="StatisticsWindower.compute")

        effective_start = to_utc(stored_date) if stored_date is not None else start
        effective_end = end

        # The wall clock can move backwards between passes.
        effective_start = min(effective_start, effective_end)
        effective_end = max(effective_start, effective_end)

        backfill: TimeRange | None = None
        if is_legacy:
            backfill = TimeRange(
                start=start_of_day(
                    effective_start - timedelta(days=self._config.legacy_backfill_days)
                ),
                end=start_of_hour(effective_start),
            )

        if is_first_sync:
            query_start = start_of_day(effective_start)
        else:
            query_start = effective_start - timedelta(days=self._config.lookback_days)

        window = StatisticsWindow(
            query=TimeRange(start=query_start, end=effective_end),
            backfill=backfill,
            watermark=effective_end,
        )
        logger.debug(
            "Window: query=[%s, %s) backfill=%s first=%s legacy=%s",
            window.query.start,
            window.query.end,
            backfill,
            is_first_sync,
            is_legacy,
        )
        return window
