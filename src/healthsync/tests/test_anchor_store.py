"""Tests for the in-memory and JSON-file anchor stores."""

from __future__ import annotations

import json
import tempfile
from pathlib import Path

import pytest

from src.healthsync.base import MetricKind, Resource
from src.healthsync.sync.anchor_store import (
    InMemoryAnchorStore,
    JsonFileAnchorStore,
    SyncAnchor,
    series_key,
)
from src.healthsync.tests.conftest import NOW


def make_anchor(key: str = "activity:steps") -> SyncAnchor:
    return SyncAnchor(key=key, cursor="7", last_synced_at=NOW, id_set={"a", "b"})


class TestSyncAnchor:
    def test_series_key(self) -> None:
        assert series_key(Resource.ACTIVITY, MetricKind.STEPS) == "activity:steps"

    def test_missing_id_set_marks_legacy(self) -> None:
        assert SyncAnchor(key="k", last_synced_at=NOW).is_legacy
        assert not SyncAnchor(key="k", last_synced_at=NOW, id_set=set()).is_legacy

    def test_accepts_timestamp_alias(self) -> None:
        anchor = SyncAnchor.model_validate({"key": "k", "timestamp": NOW.isoformat()})
        assert anchor.last_synced_at == NOW


class TestInMemoryAnchorStore:
    @pytest.mark.asyncio
    async def test_missing_key_reads_none(self) -> None:
        assert await InMemoryAnchorStore().read("nope") is None

    @pytest.mark.asyncio
    async def test_round_trip_copies_values(self) -> None:
        store = InMemoryAnchorStore()
        anchor = make_anchor()
        await store.write(anchor)

        anchor.id_set.add("mutated")
        stored = await store.read(anchor.key)

        assert stored.id_set == {"a", "b"}
        assert store.writes == 1
        assert store.keys() == ["activity:steps"]


class TestJsonFileAnchorStore:
    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path: Path) -> None:
        store = JsonFileAnchorStore(tmp_path)
        await store.write(make_anchor())

        stored = await store.read("activity:steps")

        assert stored == make_anchor()

    @pytest.mark.asyncio
    async def test_one_document_per_key(self, tmp_path: Path) -> None:
        store = JsonFileAnchorStore(tmp_path)
        await store.write(make_anchor("activity:steps"))
        await store.write(make_anchor("vitals:heart_rate"))

        files = sorted(p.name for p in tmp_path.iterdir())

        assert files == ["activity%3Asteps.json", "vitals%3Aheart_rate.json"]
        document = json.loads((tmp_path / files[0]).read_text())
        assert set(document) == {"key", "cursor", "timestamp", "id_set"}

    @pytest.mark.asyncio
    async def test_overwrite_leaves_no_temp_files(self, tmp_path: Path) -> None:
        store = JsonFileAnchorStore(tmp_path)
        await store.write(make_anchor())
        await store.write(SyncAnchor(key="activity:steps", last_synced_at=NOW))

        stored = await store.read("activity:steps")

        assert stored.is_legacy
        assert not list(tmp_path.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_corrupt_document_reads_none(self, tmp_path: Path) -> None:
        store = JsonFileAnchorStore(tmp_path)
        (tmp_path / "activity%3Asteps.json").write_text("{not json")
        assert await store.read("activity:steps") is None

    @pytest.mark.asyncio
    async def test_write_many_commits_batch(self, tmp_path: Path) -> None:
        store = JsonFileAnchorStore(tmp_path)
        await store.write_many([make_anchor("activity:steps"), make_anchor("activity:floors")])

        assert (await store.read("activity:floors")).cursor == "7"
        assert (await store.read("activity:steps")).cursor == "7"
        assert not list(tmp_path.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_write_many_staging_failure_writes_nothing(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        store = JsonFileAnchorStore(tmp_path)
        real_mkstemp = tempfile.mkstemp
        calls = []

        def flaky_mkstemp(*args, **kwargs):
            calls.append(args)
            if len(calls) == 2:
                raise OSError("disk full")
            return real_mkstemp(*args, **kwargs)

        monkeypatch.setattr(tempfile, "mkstemp", flaky_mkstemp)

        with pytest.raises(OSError):
            await store.write_many([make_anchor("activity:steps"), make_anchor("activity:floors")])

        assert list(tmp_path.iterdir()) == []
