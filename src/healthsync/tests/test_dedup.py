"""Tests for identity-based deduplication."""

from __future__ import annotations

import math
from datetime import timedelta
from zoneinfo import ZoneInfo

from src.healthsync.base import AggregateRecord, MetricKind
from src.healthsync.sync.dedup import (
    deduplicate,
    is_valid_record,
    record_identity,
    seed_identities,
)
from src.healthsync.tests.conftest import hourly, utc

STEPS = MetricKind.STEPS


def make_batch() -> list[AggregateRecord]:
    base = utc(2026, 3, 10, 6)
    return [hourly(STEPS, base + timedelta(hours=h), 100 + h) for h in range(4)]


class TestRecordIdentity:
    def test_identity_ignores_value(self) -> None:
        start = utc(2026, 3, 10, 6)
        assert record_identity(hourly(STEPS, start, 10)) == record_identity(
            hourly(STEPS, start, 999)
        )

    def test_identity_independent_of_timezone(self) -> None:
        start = utc(2026, 3, 10, 6)
        local = start.astimezone(ZoneInfo("America/New_York"))
        a = hourly(STEPS, start, 10)
        b = AggregateRecord(STEPS, local, local + timedelta(hours=1), 10)
        assert record_identity(a) == record_identity(b)

    def test_identity_depends_on_metric_and_bounds(self) -> None:
        start = utc(2026, 3, 10, 6)
        ids = {
            record_identity(hourly(STEPS, start, 10)),
            record_identity(hourly(MetricKind.FLOORS_CLIMBED, start, 10)),
            record_identity(hourly(STEPS, start + timedelta(hours=1), 10)),
        }
        assert len(ids) == 3

    def test_identity_is_sha256_hex(self) -> None:
        identity = record_identity(hourly(STEPS, utc(2026, 3, 10), 1))
        assert len(identity) == 64
        int(identity, 16)


class TestValidity:
    def test_rejects_empty_values(self) -> None:
        start = utc(2026, 3, 10, 6)
        assert not is_valid_record(hourly(STEPS, start, None))
        assert not is_valid_record(hourly(STEPS, start, 0))
        assert not is_valid_record(hourly(STEPS, start, math.nan))
        assert is_valid_record(hourly(STEPS, start, 0.5))

    def test_rejects_inverted_bucket(self) -> None:
        start = utc(2026, 3, 10, 6)
        record = AggregateRecord(STEPS, start, start - timedelta(minutes=1), 3)
        assert not is_valid_record(record)


class TestDeduplicate:
    def test_first_pass_emits_everything(self) -> None:
        batch = make_batch()
        result = deduplicate(batch, None)
        assert len(result.to_emit) == 4
        assert len(result.id_set) == 4

    def test_rerun_with_returned_ids_emits_nothing(self) -> None:
        batch = make_batch()
        first = deduplicate(batch, set())
        second = deduplicate(batch, first.id_set)
        assert second.to_emit == []
        assert second.id_set == first.id_set

    def test_only_new_records_emitted(self) -> None:
        batch = make_batch()
        first = deduplicate(batch[:3], set())
        second = deduplicate(batch, first.id_set)
        assert second.to_emit == [batch[3]]
        assert len(second.id_set) == 4

    def test_duplicates_within_one_pass_emitted_once(self) -> None:
        record = make_batch()[0]
        result = deduplicate([record, record], set())
        assert len(result.to_emit) == 1

    def test_invalid_records_dropped_and_counted(self) -> None:
        batch = make_batch() + [hourly(STEPS, utc(2026, 3, 10, 12), 0)]
        result = deduplicate(batch, set())
        assert result.dropped == 1
        assert len(result.id_set) == 4

    def test_existing_ids_not_mutated(self) -> None:
        existing = {"abc"}
        deduplicate(make_batch(), existing)
        assert existing == {"abc"}

    def test_id_set_is_superset_of_existing(self) -> None:
        result = deduplicate(make_batch(), {"abc"})
        assert "abc" in result.id_set


class TestSeedIdentities:
    def test_seed_matches_dedup_id_set(self) -> None:
        batch = make_batch()
        assert seed_identities(batch) == deduplicate(batch, None).id_set

    def test_seed_skips_invalid(self) -> None:
        assert seed_identities([hourly(STEPS, utc(2026, 3, 10), None)]) == set()
