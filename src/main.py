"""healthsync — sync pass entry point.

The host application supplies the platform SampleSource, the Uploader and
the device's LocalSyncState, then calls ``run_sync`` whenever new data may
be available (app launch, background delivery, manual refresh)::

    results = await run_sync(source, uploader, sync_state)
"""

from __future__ import annotations

import logging
import sys
from typing import Iterable

from src.config import Settings, get_settings
from src.healthsync.base import Resource, SampleSource, Uploader
from src.healthsync.sync.instructions import LocalSyncState
from src.healthsync.sync.progress import SyncProgressRecorder
from src.healthsync.sync.scheduler import SyncResult, SyncScheduler

logger = logging.getLogger("healthsync")


# ---------- Logging ----------

def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


# ---------- Sync pass ----------

async def run_sync(
    source: SampleSource,
    uploader: Uploader,
    sync_state: LocalSyncState,
    resources: Iterable[Resource] | None = None,
    has_completed_historical: bool = True,
    progress: SyncProgressRecorder | None = None,
    settings: Settings | None = None,
) -> list[SyncResult]:
    """Run one pass for each resource (all resources by default)."""
    settings = settings or get_settings()
    configure_logging(settings)
    logger.info(
        "Starting %s v%s [%s]",
        settings.app_name,
        settings.app_version,
        settings.environment,
    )
    if sync_state.is_expired():
        logger.warning("Local sync state expired at %s; refresh it", sync_state.expires_at)

    scheduler = SyncScheduler.from_settings(
        source, uploader, sync_state, progress=progress, settings=settings
    )
    scheduler.enqueue_all(resources or list(Resource), has_completed_historical)
    return await scheduler.run_all()
