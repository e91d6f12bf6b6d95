"""Persistent per-series sync anchors.

One SyncAnchor is stored per series key.  A pass reads each of its series'
anchors once up front and writes each at most once, after the pass's payload
has been delivered.  An interrupted pass therefore leaves the previous
anchors in place and can simply be re-run.

Within one key the read-modify-write sequence is assumed to have a single
owner per pass; nothing here locks.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.healthsync.base import MetricKind, Resource, to_utc

logger = logging.getLogger("healthsync.sync.anchor_store")


def series_key(resource: Resource, metric: MetricKind) -> str:
    """Anchor key of one metric series within a resource, e.g. ``activity:steps``."""
    return f"{resource.value}:{metric.value}"


class SyncAnchor(BaseModel):
    """Incremental sync state of one series.

    Attributes:
        key:            Series identity (e.g. ``activity:steps``).
        cursor:         Opaque watermark returned by the sample source.
        last_synced_at: Watermark date of the last successful pass.
        id_set:         Identities of aggregates already emitted.  ``None``
                        marks a series that predates identity-based dedup.
    """

    model_config = ConfigDict(populate_by_name=True)

    key: str
    cursor: str | None = None
    last_synced_at: datetime = Field(alias="timestamp")
    id_set: set[str] | None = None

    @property
    def is_legacy(self) -> bool:
        return self.id_set is None


class AnchorStore(ABC):
    """Key-value store of SyncAnchors."""

    @abstractmethod
    async def read(self, key: str) -> SyncAnchor | None:
        """Return the anchor stored under ``key``, or None."""

    @abstractmethod
    async def write(self, anchor: SyncAnchor) -> None:
        """Replace the anchor stored under ``anchor.key``."""

    async def write_many(self, anchors: list[SyncAnchor]) -> None:
        """Replace every anchor of one pass.

        Stores that can commit a batch atomically override this; the default
        writes in order.
        """
        for anchor in anchors:
            await self.write(anchor)


class InMemoryAnchorStore(AnchorStore):
    """Process-local anchor store.  Values are copied in and out."""

    def __init__(self, anchors: dict[str, SyncAnchor] | None = None) -> None:
        self._anchors: dict[str, SyncAnchor] = {
            k: v.model_copy(deep=True) for k, v in (anchors or {}).items()
        }
        self.writes = 0

    async def read(self, key: str) -> SyncAnchor | None:
        anchor = self._anchors.get(key)
        return anchor.model_copy(deep=True) if anchor else None

    async def write(self, anchor: SyncAnchor) -> None:
        self._anchors[anchor.key] = anchor.model_copy(deep=True)
        self.writes += 1

    def keys(self) -> list[str]:
        return sorted(self._anchors)


class JsonFileAnchorStore(AnchorStore):
    """One JSON document per series key inside a directory.

    Writes go to a temporary file that is atomically renamed over the
    previous document, so a crash or cancellation mid-write never leaves a
    torn anchor behind.
    """

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._directory / f"{quote(key, safe='')}.json"

    async def read(self, key: str) -> SyncAnchor | None:
        return await asyncio.to_thread(self._read_sync, key)

    async def write(self, anchor: SyncAnchor) -> None:
        await asyncio.to_thread(self._write_many_sync, [anchor])

    async def write_many(self, anchors: list[SyncAnchor]) -> None:
        await asyncio.to_thread(self._write_many_sync, anchors)

    def _read_sync(self, key: str) -> SyncAnchor | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            anchor = SyncAnchor.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            logger.warning("Ignoring unreadable anchor %s: %s", path, exc)
            return None
        anchor.last_synced_at = to_utc(anchor.last_synced_at)
        return anchor

    def _write_many_sync(self, anchors: list[SyncAnchor]) -> None:
        # Every document is staged before any is renamed into place.
        staged: list[tuple[str, Path]] = []
        try:
            for anchor in anchors:
                fd, tmp_name = tempfile.mkstemp(dir=self._directory, suffix=".tmp")
                staged.append((tmp_name, self._path(anchor.key)))
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(anchor.model_dump_json(by_alias=True))
        except BaseException:
            for tmp_name, _ in staged:
                Path(tmp_name).unlink(missing_ok=True)
            raise
        for tmp_name, path in staged:
            os.replace(tmp_name, path)
        logger.debug("Wrote %d anchor(s)", len(staged))
