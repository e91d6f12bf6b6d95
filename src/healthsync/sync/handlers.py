"""Metric → resource and resource → handler tables.

Each resource is synced by one async handler.  A handler receives the
instruction for the pass and the stored anchors of its series, reads from
the source and returns the payload to deliver plus the anchors to persist
once delivery succeeded.  Handlers never write anchors themselves.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import tzinfo
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

from src.healthsync.activity_aggregator import SUMMARY_METRICS, ActivityAggregator
from src.healthsync.base import MetricKind, Resource, SampleSource
from src.healthsync.bucketer import SampleBucketer
from src.healthsync.config_loader import SyncConfig, get_sync_config
from src.healthsync.sleep_reconstructor import SleepReconstructor
from src.healthsync.sync.anchor_store import SyncAnchor, series_key
from src.healthsync.sync.instructions import SyncInstruction
from src.healthsync.sync.quantities import query_quantities, read_since_cursor
from src.healthsync.windowing import StatisticsWindower

logger = logging.getLogger("healthsync.sync.handlers")


# Every metric with its own anchor, by the resource that syncs it.  Sleep
# side-channel vitals are read per session and have no anchor of their own.
METRIC_RESOURCES: dict[MetricKind, Resource] = {
    MetricKind.SLEEP_ANALYSIS: Resource.SLEEP,
    **{metric: Resource.ACTIVITY for metric in SUMMARY_METRICS},
    MetricKind.VO2_MAX: Resource.ACTIVITY,
    MetricKind.HEART_RATE: Resource.VITALS,
    MetricKind.HEART_RATE_VARIABILITY: Resource.VITALS,
    MetricKind.OXYGEN_SATURATION: Resource.VITALS,
    MetricKind.RESPIRATORY_RATE: Resource.VITALS,
    MetricKind.GLUCOSE: Resource.VITALS,
    MetricKind.BODY_MASS: Resource.BODY,
    MetricKind.BODY_FAT_PERCENTAGE: Resource.BODY,
}

# Metrics whose raw series is collapsed with SampleBucketer.average()
AVERAGED_METRICS = frozenset({MetricKind.HEART_RATE})


def metrics_for(resource: Resource) -> list[MetricKind]:
    return [metric for metric, owner in METRIC_RESOURCES.items() if owner is resource]


def anchor_keys(resource: Resource) -> list[str]:
    """Series keys whose anchors a pass of ``resource`` reads and writes."""
    return [series_key(resource, metric) for metric in metrics_for(resource)]


@dataclass
class SyncContext:
    """Collaborators shared by every handler of one scheduler."""

    source: SampleSource
    config: SyncConfig = field(default_factory=get_sync_config)
    tz: tzinfo = field(default_factory=lambda: ZoneInfo("UTC"))
    windower: StatisticsWindower | None = None
    bucketer: SampleBucketer | None = None

    def __post_init__(self) -> None:
        if self.windower is None:
            self.windower = StatisticsWindower(self.config)
        if self.bucketer is None:
            self.bucketer = SampleBucketer(self.config, tz=self.tz)


@dataclass
class ResourcePass:
    """Payload of one resource pass and the anchors to persist after delivery."""

    payload: dict[str, list[Any]]
    anchors: list[SyncAnchor] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not any(self.payload.values())

    @property
    def record_count(self) -> int:
        return sum(len(v) for v in self.payload.values())


Handler = Callable[
    [SyncContext, SyncInstruction, dict[str, SyncAnchor | None]],
    Awaitable[ResourcePass],
]


async def sync_sleep(
    ctx: SyncContext,
    instruction: SyncInstruction,
    anchors: dict[str, SyncAnchor | None],
) -> ResourcePass:
    key = series_key(Resource.SLEEP, MetricKind.SLEEP_ANALYSIS)
    raw = await read_since_cursor(
        ctx.source,
        MetricKind.SLEEP_ANALYSIS,
        key,
        instruction.query.start,
        instruction.query.end,
        anchors.get(key),
    )
    reconstructor = SleepReconstructor(ctx.source, ctx.config, ctx.bucketer)
    sessions = await reconstructor.build(raw.samples)
    return ResourcePass(payload={"sleep": sessions}, anchors=[raw.anchor])


async def sync_activity(
    ctx: SyncContext,
    instruction: SyncInstruction,
    anchors: dict[str, SyncAnchor | None],
) -> ResourcePass:
    aggregator = ActivityAggregator(
        ctx.source,
        tz=ctx.tz,
        config=ctx.config,
        windower=ctx.windower,
        bucketer=ctx.bucketer,
    )
    result = await aggregator.aggregate(
        instruction.query.start, instruction.query.end, anchors
    )
    return ResourcePass(
        payload={"activity": result.days, MetricKind.VO2_MAX.value: result.vo2_max},
        anchors=result.anchors,
    )


async def _sync_quantities(
    resource: Resource,
    ctx: SyncContext,
    instruction: SyncInstruction,
    anchors: dict[str, SyncAnchor | None],
) -> ResourcePass:
    metrics = metrics_for(resource)
    passes = await asyncio.gather(
        *(
            query_quantities(
                ctx.source,
                metric,
                series_key(resource, metric),
                instruction.query.start,
                instruction.query.end,
                anchors.get(series_key(resource, metric)),
            )
            for metric in metrics
        )
    )

    payload: dict[str, list[Any]] = {}
    for metric, quantities in zip(metrics, passes):
        samples = quantities.samples
        if metric in AVERAGED_METRICS:
            samples = ctx.bucketer.average(samples)
        payload[metric.value] = samples
        logger.debug("%s %s: %d sample(s)", resource.value, metric.value, len(samples))
    return ResourcePass(payload=payload, anchors=[p.anchor for p in passes])


async def sync_vitals(
    ctx: SyncContext,
    instruction: SyncInstruction,
    anchors: dict[str, SyncAnchor | None],
) -> ResourcePass:
    return await _sync_quantities(Resource.VITALS, ctx, instruction, anchors)


async def sync_body(
    ctx: SyncContext,
    instruction: SyncInstruction,
    anchors: dict[str, SyncAnchor | None],
) -> ResourcePass:
    return await _sync_quantities(Resource.BODY, ctx, instruction, anchors)


RESOURCE_HANDLERS: dict[Resource, Handler] = {
    Resource.SLEEP: sync_sleep,
    Resource.ACTIVITY: sync_activity,
    Resource.VITALS: sync_vitals,
    Resource.BODY: sync_body,
}


def get_handler(resource: Resource) -> Handler:
    """Return the handler for ``resource``.

    Raises:
        KeyError: If no handler is registered.
    """
    try:
        return RESOURCE_HANDLERS[resource]
    except KeyError:
        raise KeyError(f"No handler registered for resource '{resource}'") from None
