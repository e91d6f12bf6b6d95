"""Sync stages and the per-resource instruction for a pass.

Every resource is first synced through a one-off *historical* stage that
reaches back a configurable number of days from the moment the device was
connected (the historical stage anchor).  After that, every pass is a
*daily* pass covering the anchor onwards.  Delivered payloads are tagged
with their stage so the remote service can tell a bulk import from
ongoing data.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from src.healthsync.base import Resource, TimeRange, to_utc
from src.healthsync.config_loader import HistoricalConfig, get_sync_config
from src.healthsync.errors import InvalidInterval


@dataclass(frozen=True)
class SyncStage:
    """Either the daily stage or a historical stage over ``[start, end)``."""

    name: str
    start: datetime | None = None
    end: datetime | None = None

    @classmethod
    def daily(cls) -> "SyncStage":
        return cls(name="daily")

    @classmethod
    def historical(cls, start: datetime, end: datetime) -> "SyncStage":
        return cls(name="historical", start=to_utc(start), end=to_utc(end))

    @property
    def is_daily(self) -> bool:
        return self.name == "daily"

    def to_payload_tag(self) -> dict[str, Any]:
        """Stage fields attached to every delivered payload."""
        return {
            "stage": self.name,
            "start_date": self.start.isoformat() if self.start else None,
            "end_date": self.end.isoformat() if self.end else None,
        }

    def __str__(self) -> str:
        if self.is_daily:
            return "daily"
        return f"historical: {self.start} - {self.end}"


@dataclass(frozen=True)
class SyncInstruction:
    """What one resource pass should read, and how to tag it."""

    stage: SyncStage
    query: TimeRange

    def __str__(self) -> str:
        return f"{self.stage.name}: {self.query.start} - {self.query.end}"


@dataclass
class LocalSyncState:
    """Device-local sync state established when the device is connected.

    Attributes:
        historical_stage_anchor: Moment the historical stage reaches back from.
        expires_at:              When the state must be refreshed.
        ingestion_end:           Optional hard stop for all reads.
        historical:              Backfill reach, default and per resource.
    """

    historical_stage_anchor: datetime
    expires_at: datetime
    ingestion_end: datetime | None = None
    historical: HistoricalConfig = field(
        default_factory=lambda: get_sync_config().historical
    )

    def __post_init__(self) -> None:
        self.historical_stage_anchor = to_utc(self.historical_stage_anchor)
        self.expires_at = to_utc(self.expires_at)
        if self.ingestion_end is not None:
            self.ingestion_end = to_utc(self.ingestion_end)

    def historical_start_date(self, resource: Resource) -> datetime:
        """Earliest moment the historical stage of ``resource`` reads from."""
        days = self.historical.days_for(resource)
        return self.historical_stage_anchor - timedelta(days=days)

    def is_expired(self, now: datetime | None = None) -> bool:
        now = to_utc(now) if now else datetime.now(timezone.utc)
        return now >= self.expires_at

    def instruction_for(
        self,
        resource: Resource,
        now: datetime,
        has_completed_historical: bool,
    ) -> SyncInstruction:
        """Build the instruction for the next pass of ``resource``.

        Raises:
            InvalidInterval: If the ingestion end precedes the query start.
        """
        now = to_utc(now)
        if has_completed_historical:
            start = self.historical_stage_anchor
            end = now
        else:
            start = self.historical_start_date(resource)
            end = self.historical_stage_anchor

        if self.ingestion_end is not None:
            end = min(end, self.ingestion_end)
        if start > end:
            raise InvalidInterval(start, end, context=f"instruction_for({resource.value})")

        query = TimeRange(start=start, end=end)
        if has_completed_historical:
            return SyncInstruction(stage=SyncStage.daily(), query=query)
        return SyncInstruction(stage=SyncStage.historical(start, end), query=query)
