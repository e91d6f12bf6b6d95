"""Tests for the statistics window policy."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from src.healthsync.config_loader import SyncConfig
from src.healthsync.errors import InvalidInterval
from src.healthsync.tests.conftest import NOW, utc
from src.healthsync.windowing import StatisticsWindower


@pytest.fixture
def windower(sync_config: SyncConfig) -> StatisticsWindower:
    return StatisticsWindower(sync_config)


class TestStatisticsWindower:
    def test_start_after_end_rejected(self, windower: StatisticsWindower) -> None:
        with pytest.raises(InvalidInterval):
            windower.compute(NOW, NOW - timedelta(hours=1))

    def test_first_sync_starts_at_day_start(self, windower: StatisticsWindower) -> None:
        window = windower.compute(utc(2026, 3, 1, 15, 42), NOW, is_first_sync=True)
        assert window.query.start == utc(2026, 3, 1)
        assert window.query.end == NOW
        assert window.backfill is None
        assert window.watermark == NOW

    def test_incremental_looks_back_a_week(self, windower: StatisticsWindower) -> None:
        stored = utc(2026, 3, 10, 6, 0)
        window = windower.compute(utc(2026, 2, 1), NOW, stored_date=stored)
        assert window.query.start == stored - timedelta(days=7)
        assert window.query.end == NOW
        assert window.backfill is None

    def test_requested_start_used_without_stored_date(
        self, windower: StatisticsWindower
    ) -> None:
        window = windower.compute(utc(2026, 3, 9, 0, 0), NOW)
        assert window.query.start == utc(2026, 3, 2, 0, 0)

    def test_stored_date_clamped_to_end(self, windower: StatisticsWindower) -> None:
        # Clock moved backwards: the stored watermark lies after the requested end.
        stored = NOW + timedelta(hours=5)
        window = windower.compute(NOW - timedelta(days=1), NOW, stored_date=stored)
        assert window.query.start == NOW - timedelta(days=7)
        assert window.watermark == NOW

    def test_legacy_backfill_range(self, windower: StatisticsWindower) -> None:
        stored = utc(2026, 3, 10, 12, 20)
        window = windower.compute(
            utc(2026, 3, 1), NOW, stored_date=stored, is_legacy=True
        )
        assert window.backfill is not None
        assert window.backfill.start == utc(2026, 2, 17)
        assert window.backfill.end == utc(2026, 3, 10, 12, 0)
        assert window.query.start == stored - timedelta(days=7)

    def test_naive_datetimes_treated_as_utc(self, windower: StatisticsWindower) -> None:
        window = windower.compute(
            datetime(2026, 3, 10, 9, 0), datetime(2026, 3, 10, 10, 0), is_first_sync=True
        )
        assert window.query.start == utc(2026, 3, 10)
        assert window.query.end == utc(2026, 3, 10, 10, 0)

    def test_lookback_is_configurable(self, sync_config: SyncConfig) -> None:
        sync_config.windowing.lookback_days = 2
        window = StatisticsWindower(sync_config).compute(NOW - timedelta(hours=1), NOW)
        assert window.query.start == NOW - timedelta(days=2, hours=1)
