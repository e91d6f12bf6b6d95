"""Sleep session reconstruction — turn fragmentary sleep slices into sessions.

Sources write sleep as many small slices (one per stage change, sometimes
duplicated or out of order).  The reconstructor rebuilds logical sessions:

    1. Filter   — keep slices from allow-listed recording devices/apps only
    2. Group    — partition by (source bundle, product type)
    3. Sort     — order each group by start; source ordering is unreliable
    4. Stitch   — join temporally close slices within a gap allowance
    5. Merge    — union overlapping sessions of the same source to a fixed point
    6. Stages   — attribute every slice to its session's stage buckets
    7. Enrich   — attach side-channel vitals recorded during the session
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Iterable

from src.healthsync.base import (
    MetricKind,
    QuantitySample,
    RawSample,
    SampleSource,
    SleepSession,
    SleepStage,
    SourceType,
    TimeRange,
    normalize_samples,
    to_utc,
)
from src.healthsync.bucketer import SampleBucketer
from src.healthsync.config_loader import SyncConfig, get_sync_config
from src.healthsync.errors import HealthSyncError, SourceQueryFailure

logger = logging.getLogger("healthsync.sleep_reconstructor")


@dataclass(frozen=True)
class SideChannel:
    """A vital queried over each session.

    Attributes:
        metric: Metric to query.
        strict: When True only samples starting inside the session are kept;
                otherwise any sample overlapping the session is kept.
    """

    metric: MetricKind
    strict: bool = True


SIDE_CHANNELS: tuple[SideChannel, ...] = (
    SideChannel(MetricKind.HEART_RATE),
    SideChannel(MetricKind.HEART_RATE_VARIABILITY),
    SideChannel(MetricKind.OXYGEN_SATURATION),
    SideChannel(MetricKind.RESTING_HEART_RATE),
    SideChannel(MetricKind.RESPIRATORY_RATE),
    # Some wearables emit wrist temperature slightly outside the sleep window.
    SideChannel(MetricKind.WRIST_TEMPERATURE, strict=False),
)


# ---------------------------------------------------------------------------
# Pipeline stages (pure)
# ---------------------------------------------------------------------------


def _session_from_slice(sample: RawSample) -> SleepSession | None:
    if sample.start is None or sample.end is None or not sample.source_bundle:
        logger.debug("Dropping malformed sleep slice: %r", sample)
        return None
    return SleepSession(
        start=to_utc(sample.start),
        end=to_utc(sample.end),
        source_bundle=sample.source_bundle,
        product_type=sample.product_type,
    )


def group_by_source(
    samples: Iterable[RawSample],
) -> dict[tuple[str, str | None], list[RawSample]]:
    """Partition slices by (source bundle, product type)."""
    groups: dict[tuple[str, str | None], list[RawSample]] = {}
    for sample in samples:
        if not sample.source_bundle:
            continue
        groups.setdefault((sample.source_bundle, sample.product_type), []).append(sample)
    return groups


def stitch_sessions(
    sessions: Iterable[SleepSession], allowed_gap: timedelta
) -> list[SleepSession]:
    """Join slices of one source group that lie within ``allowed_gap`` of each other.

    Each slice is compared with the currently open session:

    a) it starts after the open session ends, within the gap → extend the end
    b) it ends before the open session starts, within the gap → extend the start
    c) the two overlap → take the union
    otherwise it opens a new session.  A gap exactly equal to the allowance
    still stitches.  Inverted slices (end < start) are discarded.
    """
    ordered = sorted(
        (s for s in sessions if s.end >= s.start), key=lambda s: (s.start, s.end)
    )
    stitched: list[SleepSession] = []

    for new in ordered:
        if not stitched or stitched[-1].group_key != new.group_key:
            stitched.append(replace(new))
            continue

        current = stitched[-1]
        if new.start > current.end and new.start - current.end <= allowed_gap:
            current.end = new.end
        elif current.start > new.end and current.start - new.end <= allowed_gap:
            current.start = new.start
        elif current.overlaps(new):
            current.start = min(current.start, new.start)
            current.end = max(current.end, new.end)
        else:
            stitched.append(replace(new))

    return stitched


def merge_sessions(sessions: Iterable[SleepSession]) -> list[SleepSession]:
    """Union overlapping sessions from the same source until nothing changes.

    Worklist fixed point: every full scan that performs a union restarts the
    scan, so the loop is O(n²) in the worst case.  That is fine for the
    handful of sessions a day of sleep data produces, not for bulk history.
    Merging an already merged list returns it unchanged.
    """
    merged = [replace(s) for s in sessions if s.end >= s.start]

    changed = True
    while changed:
        changed = False
        for i in range(len(merged)):
            for j in range(i + 1, len(merged)):
                a, b = merged[i], merged[j]
                if a.source_bundle == b.source_bundle and a.overlaps(b):
                    a.start = min(a.start, b.start)
                    a.end = max(a.end, b.end)
                    del merged[j]
                    changed = True
                    break
            if changed:
                break

    return sorted(merged, key=lambda s: (s.start, s.source_bundle))


def attribute_stages(session: SleepSession, group: Iterable[RawSample]) -> SleepSession:
    """Assign every slice of ``group`` lying within ``session`` to its stage."""
    stages: dict[SleepStage, list[QuantitySample]] = {}
    for sample in group:
        if sample.source_bundle != session.source_bundle:
            continue
        if sample.product_type != session.product_type:
            continue
        if sample.start is None or sample.end is None:
            continue
        start, end = to_utc(sample.start), to_utc(sample.end)
        if start < session.start or end > session.end:
            continue
        stage = SleepStage.from_value(sample.value)
        quantity = QuantitySample.from_raw(sample, value=float(stage.code))
        stages.setdefault(stage, []).append(quantity)
    for samples in stages.values():
        samples.sort(key=lambda s: s.start)
    session.stage_samples = stages
    return session


def _within(sample: QuantitySample, start: datetime, end: datetime, strict: bool) -> bool:
    if strict:
        return start <= sample.start <= end
    return sample.start <= end and sample.end >= start


# ---------------------------------------------------------------------------
# Reconstructor
# ---------------------------------------------------------------------------


class SleepReconstructor:
    """Build sleep sessions from raw sleep slices and enrich them.

    Usage::

        reconstructor = SleepReconstructor(source)
        sessions = await reconstructor.build(raw_sleep_samples)
    """

    def __init__(
        self,
        source: SampleSource,
        config: SyncConfig | None = None,
        bucketer: SampleBucketer | None = None,
    ) -> None:
        self._source = source
        self._config = config or get_sync_config()
        self._bucketer = bucketer or SampleBucketer(self._config)

    def admitted(self, samples: Iterable[RawSample]) -> list[RawSample]:
        """Keep slices from recognized recording sources only.

        Analysis-only apps re-publish other devices' sleep and would produce
        duplicate sessions.
        """
        samples = list(samples)
        kept = [s for s in samples if self._config.sleep.is_allowed(s.source_bundle)]
        if len(kept) != len(samples):
            logger.debug(
                "Filtered out %d sleep slice(s) from non-recording sources",
                len(samples) - len(kept),
            )
        return kept

    def gap_allowance(self, source_type: SourceType) -> timedelta:
        return timedelta(minutes=self._config.sleep.gap_minutes_for(source_type))

    def reconstruct(self, samples: Iterable[RawSample]) -> list[SleepSession]:
        """Run the filter → group → sort → stitch → merge → stage stages."""
        stitched: dict[str, list[SleepSession]] = {}
        bundle_samples: dict[str, list[RawSample]] = {}

        for (bundle, product_type), group in group_by_source(self.admitted(samples)).items():
            slices = [s for s in map(_session_from_slice, group) if s is not None]
            slices.sort(key=lambda s: s.start)
            allowance = self.gap_allowance(SourceType.infer(bundle, product_type))
            stitched.setdefault(bundle, []).extend(stitch_sessions(slices, allowance))
            bundle_samples.setdefault(bundle, []).extend(group)

        # Products sharing a bundle are merged together; the earliest session
        # keeps its product type and only that product's slices give stages.
        sessions: list[SleepSession] = []
        for bundle, candidates in stitched.items():
            candidates.sort(key=lambda s: (s.start, s.end))
            for session in merge_sessions(candidates):
                sessions.append(attribute_stages(session, bundle_samples[bundle]))

        sessions.sort(key=lambda s: (s.start, s.source_bundle))
        logger.info("Reconstructed %d sleep session(s)", len(sessions))
        return sessions

    async def enrich(self, session: SleepSession) -> SleepSession:
        """Attach the side-channel vitals recorded during ``session``.

        Any query failure propagates and aborts the caller's pass.
        """
        results = await asyncio.gather(
            *(self._side_channel(session, channel) for channel in SIDE_CHANNELS)
        )
        session.side_channel = {
            channel.metric: samples for channel, samples in zip(SIDE_CHANNELS, results)
        }
        return session

    async def build(self, samples: Iterable[RawSample]) -> list[SleepSession]:
        """Reconstruct and enrich sessions from raw sleep slices."""
        sessions = self.reconstruct(samples)
        for session in sessions:
            await self.enrich(session)
        return sessions

    async def _side_channel(
        self, session: SleepSession, channel: SideChannel
    ) -> list[QuantitySample]:
        time_range = TimeRange(start=session.start, end=session.end)
        try:
            result = await self._source.query(channel.metric, time_range)
        except HealthSyncError:
            raise
        except Exception as exc:
            raise SourceQueryFailure(channel.metric.value, str(exc)) from exc

        samples = [
            s
            for s in normalize_samples(
                r for r in result.samples if r.source_bundle == session.source_bundle
            )
            if _within(s, session.start, session.end, channel.strict)
        ]
        samples.sort(key=lambda s: s.start)

        if channel.metric is MetricKind.HEART_RATE and self._config.sleep.smooth_heart_rate:
            samples = self._bucketer.average(samples)
        return samples
