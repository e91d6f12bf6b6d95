"""Time-bucket reduction of a single metric's sample series.

Samples are first partitioned by source bundle (two apps' readings are never
combined), each partition is reduced on its own, and the results are merged
back and sorted by start time.
"""

from __future__ import annotations

import logging
import statistics
from dataclasses import replace
from datetime import timedelta, timezone, tzinfo
from typing import Callable, Iterable

from src.healthsync.base import QuantitySample
from src.healthsync.config_loader import BucketingConfig, SyncConfig, get_sync_config

logger = logging.getLogger("healthsync.bucketer")


def split_per_bundle(samples: Iterable[QuantitySample]) -> list[list[QuantitySample]]:
    """Partition samples by source bundle, preserving input order within each.

    Samples without a bundle share one partition.
    """
    partitions: dict[str | None, list[QuantitySample]] = {}
    for sample in samples:
        partitions.setdefault(sample.source_bundle, []).append(sample)
    return list(partitions.values())


def _order_by_start(samples: Iterable[QuantitySample]) -> list[QuantitySample]:
    return sorted(samples, key=lambda s: s.start)


def _accumulate(
    samples: list[QuantitySample], interval_minutes: int, tz: tzinfo
) -> list[QuantitySample]:
    result: list[QuantitySample] = []
    for sample in _order_by_start(samples):
        if result:
            last = result[-1]
            last_start = last.start.astimezone(tz)
            new_start = sample.start.astimezone(tz)
            same_hour = last_start.replace(minute=0, second=0, microsecond=0) == (
                new_start.replace(minute=0, second=0, microsecond=0)
            )
            same_bucket = (
                last_start.minute // interval_minutes
                == new_start.minute // interval_minutes
            )
            if same_hour and same_bucket:
                result[-1] = replace(last, value=last.value + sample.value, end=sample.end)
                continue
        result.append(sample)
    return result


def _average(samples: list[QuantitySample], window: timedelta) -> list[QuantitySample]:
    ordered = _order_by_start(samples)
    if len(ordered) <= 2:
        return list(samples)

    # The extremes are kept verbatim; on ties the latest sample wins.
    minimum = min(reversed(ordered), key=lambda s: s.value)
    maximum = max(reversed(ordered), key=lambda s: s.value)

    groups: list[list[QuantitySample]] = []
    for sample in ordered:
        if groups and sample.start <= groups[-1][0].start + window:
            groups[-1].append(sample)
        else:
            groups.append([sample])

    result = [
        replace(
            group[0],
            value=statistics.fmean(s.value for s in group),
            end=group[-1].end,
        )
        for group in groups
    ]
    result.append(maximum)
    result.append(minimum)
    return result


class SampleBucketer:
    """Reduce a metric series into coarser buckets.

    Usage::

        bucketer = SampleBucketer()
        steps = bucketer.accumulate(step_samples)            # 15-minute sums
        heart_rate = bucketer.average(heart_rate_samples)    # 5-second means
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        tz: tzinfo = timezone.utc,
    ) -> None:
        """Initialize the bucketer.

        Args:
            config: Sync config supplying default interval/window sizes.
            tz:     Calendar used to decide which clock hour a sample falls in.
        """
        self._config: BucketingConfig = (config or get_sync_config()).bucketing
        self._tz = tz

    def accumulate(
        self,
        samples: Iterable[QuantitySample],
        interval_minutes: int | None = None,
    ) -> list[QuantitySample]:
        """Sum samples sharing a clock hour and a sub-hour bucket.

        The bucket of a sample is ``minute_of_hour // interval_minutes``.  Each
        run of same-bucket samples becomes one sample spanning
        ``[first.start, last.end]``.
        """
        interval = (
            self._config.accumulate_interval_minutes
            if interval_minutes is None
            else interval_minutes
        )
        if not 0 < interval <= 60:
            raise ValueError(f"interval_minutes must be within 1..60, got {interval}")
        return self._per_bundle(
            samples, lambda part: _accumulate(part, interval, self._tz)
        )

    def average(
        self,
        samples: Iterable[QuantitySample],
        window_seconds: int | None = None,
    ) -> list[QuantitySample]:
        """Collapse bursts of samples into their mean.

        Samples starting within ``window_seconds`` of a group's first sample
        join that group.  The global minimum and maximum samples of each
        bundle are appended unmodified.  Bundles with two or fewer samples
        pass through unchanged.
        """
        if window_seconds is None:
            window_seconds = self._config.average_window_seconds
        if window_seconds < 0:
            raise ValueError(f"window_seconds must not be negative, got {window_seconds}")
        window = timedelta(seconds=window_seconds)
        return self._per_bundle(samples, lambda part: _average(part, window))

    @staticmethod
    def _per_bundle(
        samples: Iterable[QuantitySample],
        reducer: Callable[[list[QuantitySample]], list[QuantitySample]],
    ) -> list[QuantitySample]:
        partitions = split_per_bundle(samples)
        reduced = [s for part in partitions for s in reducer(part)]
        logger.debug(
            "Bucketed %d partition(s) into %d sample(s)", len(partitions), len(reduced)
        )
        return _order_by_start(reduced)
