"""Sync scheduler: run one pass per resource and persist anchors on success.

Coordinates the sync workflow for each queued resource:
1. Build the instruction (historical stage first, daily afterwards)
2. Read the stored anchors of the resource's series
3. Run the resource handler
4. Deliver the payload through the uploader
5. Persist the new anchors as one batch, only after delivery succeeded
6. Record progress

Resources run concurrently under a semaphore.  A failing resource yields an
error result and writes no anchors; the others are unaffected.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable
from zoneinfo import ZoneInfo

from src.config import Settings, get_settings
from src.healthsync.base import Resource, SampleSource, Uploader, to_utc
from src.healthsync.config_loader import get_sync_config, load_sync_config
from src.healthsync.sync.anchor_store import AnchorStore, JsonFileAnchorStore, SyncAnchor
from src.healthsync.sync.handlers import SyncContext, anchor_keys, get_handler
from src.healthsync.sync.instructions import LocalSyncState
from src.healthsync.sync.progress import SyncProgressRecorder, SyncStatus

logger = logging.getLogger("healthsync.sync.scheduler")


@dataclass
class SyncJob:
    """A queued pass for one resource.

    Attributes:
        resource:                 Resource to sync.
        has_completed_historical: False while the historical stage is pending.
        priority:                 Lower = higher priority. 1–10.
    """

    resource: Resource
    has_completed_historical: bool = True
    priority: int = 5


@dataclass
class SyncResult:
    """Result of a single resource pass.

    Attributes:
        resource:       Resource that was synced.
        status:         COMPLETED, NO_DATA or ERROR.
        records:        Number of records delivered.
        anchors_written: Number of anchors persisted.
        error:          Error message if status is ERROR.
        synced_at:      UTC timestamp of completion.
    """

    resource: Resource
    status: SyncStatus = SyncStatus.COMPLETED
    records: int = 0
    anchors_written: int = 0
    error: str | None = None
    synced_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SyncScheduler:
    """Queue and execute resource sync passes.

    Usage::

        scheduler = SyncScheduler(
            context=SyncContext(source),
            uploader=uploader,
            anchor_store=JsonFileAnchorStore(".healthsync/anchors"),
            sync_state=state,
            progress=SyncProgressRecorder(),
        )
        scheduler.enqueue(SyncJob(Resource.SLEEP))
        results = await scheduler.run_all()
    """

    def __init__(
        self,
        context: SyncContext,
        uploader: Uploader,
        anchor_store: AnchorStore,
        sync_state: LocalSyncState,
        progress: SyncProgressRecorder,
        max_concurrent: int = 4,
    ) -> None:
        self._context = context
        self._uploader = uploader
        self._anchor_store = anchor_store
        self._sync_state = sync_state
        self._progress = progress
        self._max_concurrent = max_concurrent
        self._queue: list[SyncJob] = []

    @classmethod
    def from_settings(
        cls,
        source: SampleSource,
        uploader: Uploader,
        sync_state: LocalSyncState,
        progress: SyncProgressRecorder | None = None,
        settings: Settings | None = None,
    ) -> "SyncScheduler":
        """Build a scheduler wired from environment settings."""
        settings = settings or get_settings()
        config = (
            load_sync_config(Path(settings.sync_config_path))
            if settings.sync_config_path
            else get_sync_config()
        )
        context = SyncContext(
            source=source, config=config, tz=ZoneInfo(settings.device_timezone)
        )
        return cls(
            context=context,
            uploader=uploader,
            anchor_store=JsonFileAnchorStore(settings.anchor_store_dir),
            sync_state=sync_state,
            progress=progress or SyncProgressRecorder(),
            max_concurrent=settings.max_concurrent_resources,
        )

    @property
    def progress(self) -> SyncProgressRecorder:
        return self._progress

    def enqueue(self, job: SyncJob) -> None:
        """Add a job to the queue, sorted by priority (ascending = higher priority)."""
        self._queue.append(job)
        self._queue.sort(key=lambda j: j.priority)
        logger.debug("Enqueued sync job: %s (priority=%d)", job.resource.value, job.priority)

    def enqueue_all(self, resources: Iterable[Resource], has_completed_historical: bool = True) -> None:
        for resource in resources:
            self.enqueue(SyncJob(resource, has_completed_historical))

    async def run_all(self, now: datetime | None = None) -> list[SyncResult]:
        """Execute all queued jobs with ``max_concurrent`` parallelism."""
        if not self._queue:
            logger.debug("SyncScheduler: no jobs in queue")
            return []

        now = to_utc(now) if now else datetime.now(timezone.utc)
        jobs, self._queue = self._queue, []

        logger.info("SyncScheduler: running %d jobs", len(jobs))
        semaphore = asyncio.Semaphore(self._max_concurrent)
        results = await asyncio.gather(*(self._run_job(job, now, semaphore) for job in jobs))

        logger.info(
            "SyncScheduler: %d jobs complete, %d errors",
            len(results),
            sum(1 for r in results if r.status is SyncStatus.ERROR),
        )
        return list(results)

    async def _run_job(
        self, job: SyncJob, now: datetime, semaphore: asyncio.Semaphore
    ) -> SyncResult:
        async with semaphore:
            return await self._execute(job, now)

    async def _execute(self, job: SyncJob, now: datetime) -> SyncResult:
        """Run one resource pass.  Exceptions become an ERROR result."""
        resource = job.resource
        result = SyncResult(resource=resource)
        sync_id = self._progress.new_sync_id()
        self._progress.record_sync(resource, SyncStatus.STARTED, sync_id)

        try:
            instruction = self._sync_state.instruction_for(
                resource, now, job.has_completed_historical
            )
            logger.info("Syncing %s (%s)", resource.value, instruction)

            keys = anchor_keys(resource)
            stored = await asyncio.gather(*(self._anchor_store.read(k) for k in keys))
            anchors = dict(zip(keys, stored))

            handler = get_handler(resource)
            resource_pass = await handler(self._context, instruction, anchors)
            self._progress.record_sync(resource, SyncStatus.READ_CHUNK, sync_id)

            if resource_pass.is_empty:
                result.status = SyncStatus.NO_DATA
            else:
                await self._uploader.post(
                    resource,
                    resource_pass.payload,
                    instruction.stage.to_payload_tag(),
                    self._timezone_id,
                )
                self._progress.record_sync(resource, SyncStatus.UPLOADED_CHUNK, sync_id)
                result.records = resource_pass.record_count

            await self._commit_anchors(resource_pass.anchors)
            result.anchors_written = len(resource_pass.anchors)

        except asyncio.CancelledError:
            self._progress.record_sync(resource, SyncStatus.TIMEOUT, sync_id)
            raise
        except Exception as exc:
            logger.error("Sync failed for %s: %s", resource.value, exc)
            result.status = SyncStatus.ERROR
            result.error = str(exc)

        self._progress.record_sync(resource, result.status, sync_id)
        logger.info(
            "Sync complete: %s → %d records, status=%s",
            resource.value,
            result.records,
            result.status.value,
        )
        return result

    async def _commit_anchors(self, anchors: list[SyncAnchor]) -> None:
        """Persist a pass's anchors as one batch.

        Once the payload is delivered the batch runs to completion even if
        the pass is cancelled; the cancellation is re-raised afterwards.
        """
        commit = asyncio.create_task(self._anchor_store.write_many(anchors))
        try:
            await asyncio.shield(commit)
        except asyncio.CancelledError:
            await commit
            raise

    @property
    def _timezone_id(self) -> str:
        tz = self._context.tz
        return getattr(tz, "key", None) or str(tz)
