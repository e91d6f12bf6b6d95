"""Per-resource sync progress history.

A SyncProgressRecorder is created by the caller and handed to the
scheduler; nothing here is a process-wide singleton.  The snapshot models are
pydantic so a host application can serialize them as they are.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable

from pydantic import BaseModel, ConfigDict, Field

from src.healthsync.base import Resource

MAX_SYNCS_PER_RESOURCE = 50
MAX_SYSTEM_EVENTS_PER_RESOURCE = 25
SYSTEM_EVENT_COALESCE_WINDOW = timedelta(seconds=2)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncStatus(str, Enum):
    DEPRIORITIZED = "deprioritized"
    STARTED = "started"
    READ_CHUNK = "read_chunk"
    UPLOADED_CHUNK = "uploaded_chunk"
    NO_DATA = "no_data"
    TIMEOUT = "timeout"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_in_progress(self) -> bool:
        return self in _IN_PROGRESS

    @property
    def is_terminal(self) -> bool:
        return not self.is_in_progress


_IN_PROGRESS = frozenset(
    {
        SyncStatus.DEPRIORITIZED,
        SyncStatus.STARTED,
        SyncStatus.READ_CHUNK,
        SyncStatus.UPLOADED_CHUNK,
    }
)


class SystemEventType(str, Enum):
    RECEIVED_NOTIFICATION = "received_notification"


class ProgressBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StatusEvent(ProgressBase):
    timestamp: datetime
    type: SyncStatus


class SystemEvent(ProgressBase):
    timestamp: datetime
    type: SystemEventType


class Sync(ProgressBase):
    """One sync attempt; its id is its start timestamp."""

    start: datetime
    end: datetime | None = None
    statuses: list[StatusEvent] = Field(default_factory=list)

    @property
    def last_status(self) -> SyncStatus | None:
        return self.statuses[-1].type if self.statuses else None


class ResourceProgress(ProgressBase):
    syncs: list[Sync] = Field(default_factory=list)
    system_events: list[SystemEvent] = Field(default_factory=list)
    uploaded_chunks: int = 0

    @property
    def latest_sync(self) -> Sync | None:
        return self.syncs[-1] if self.syncs else None


class SyncProgress(ProgressBase):
    resources: dict[Resource, ResourceProgress] = Field(default_factory=dict)


class SyncProgressRecorder:
    """Thread-safe recorder of sync statuses and system events.

    Usage::

        recorder = SyncProgressRecorder()
        sync_id = recorder.new_sync_id()
        recorder.record_sync(Resource.SLEEP, SyncStatus.STARTED, sync_id)
        recorder.record_sync(Resource.SLEEP, SyncStatus.COMPLETED, sync_id)
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._state = SyncProgress()

    def new_sync_id(self) -> datetime:
        """A sync is identified by the moment it started."""
        return self._clock()

    def get(self) -> SyncProgress:
        """Return a deep copy of the current state."""
        with self._lock:
            return self._state.model_copy(deep=True)

    def clear(self) -> None:
        with self._lock:
            self._state = SyncProgress()

    def mutate(
        self,
        resources: Iterable[Resource],
        action: Callable[[ResourceProgress], None],
    ) -> None:
        with self._lock:
            for resource in resources:
                progress = self._state.resources.setdefault(resource, ResourceProgress())
                action(progress)

    def record_sync(self, resource: Resource, status: SyncStatus, sync_id: datetime) -> None:
        """Append ``status`` to the sync ``sync_id``, or start a new sync.

        The status joins the latest sync when that sync has the same id, or
        when both it and the latest status are ``deprioritized``.  Terminal
        statuses close the sync.
        """
        now = self._clock()

        def action(progress: ResourceProgress) -> None:
            latest = progress.latest_sync
            appends = latest is not None and (
                latest.start == sync_id
                or (
                    status is SyncStatus.DEPRIORITIZED
                    and latest.last_status is SyncStatus.DEPRIORITIZED
                )
            )
            if appends:
                latest.statuses.append(StatusEvent(timestamp=now, type=status))
                if status.is_terminal:
                    latest.end = now
            else:
                if len(progress.syncs) >= MAX_SYNCS_PER_RESOURCE:
                    del progress.syncs[0]
                progress.syncs.append(
                    Sync(start=sync_id, statuses=[StatusEvent(timestamp=sync_id, type=status)])
                )
            if status is SyncStatus.UPLOADED_CHUNK:
                progress.uploaded_chunks += 1

        self.mutate([resource], action)

    def record_system(self, resources: Iterable[Resource], event_type: SystemEventType) -> None:
        """Record a system event, coalescing repeats within two seconds."""
        now = self._clock()

        def action(progress: ResourceProgress) -> None:
            if progress.system_events:
                last = progress.system_events[-1]
                if last.type == event_type and now - last.timestamp < SYSTEM_EVENT_COALESCE_WINDOW:
                    return
            if len(progress.system_events) >= MAX_SYSTEM_EVENTS_PER_RESOURCE:
                del progress.system_events[0]
            progress.system_events.append(SystemEvent(timestamp=now, type=event_type))

        self.mutate(resources, action)
