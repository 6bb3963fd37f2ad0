"""Unit tests for network usage accounting."""

import json
from datetime import UTC, date, datetime

import pytest

from reddit_relay.models import UsageStats
from reddit_relay.usage import UsageMeter, format_bytes, week_number


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class TestUsageMeterUnit:
    """Unit tests for UsageMeter."""

    def test_add_usage_accumulates_all_periods(self, tmp_path):
        clock = FakeClock(datetime(2024, 3, 15, 12, 0, tzinfo=UTC))
        meter = UsageMeter(tmp_path / "usage.json", clock=clock)

        meter.add_usage(100)
        meter.add_usage(250)

        assert meter.get_stats() == UsageStats(today=350, this_week=350, this_month=350)

    def test_new_day_starts_fresh_but_month_keeps_total(self, tmp_path):
        clock = FakeClock(datetime(2024, 3, 15, 12, 0, tzinfo=UTC))
        meter = UsageMeter(tmp_path / "usage.json", clock=clock)
        meter.add_usage(100)

        clock.now = datetime(2024, 3, 28, 12, 0, tzinfo=UTC)
        meter.add_usage(40)

        stats = meter.get_stats()
        assert stats.today == 40
        assert stats.this_week == 40
        assert stats.this_month == 140

    def test_usage_persists_in_original_layout(self, tmp_path):
        path = tmp_path / "usage.json"
        clock = FakeClock(datetime(2024, 3, 15, 12, 0, tzinfo=UTC))
        UsageMeter(path, clock=clock).add_usage(1024)

        data = json.loads(path.read_text())

        assert data["daily"] == {"2024-03-15": 1024}
        assert data["monthly"] == {"2024-03": 1024}
        assert data["weekly"] == {f"2024-W{week_number(date(2024, 3, 15))}": 1024}
        assert "lastUpdated" in data

        reloaded = UsageMeter(path, clock=clock)
        assert reloaded.get_stats().today == 1024

    @pytest.mark.parametrize("hour", [0, 12, 23])
    def test_saturday_stays_in_its_week_at_any_hour(self, tmp_path, hour):
        path = tmp_path / "usage.json"
        # 2023-01-07 is the Saturday closing week 1
        clock = FakeClock(datetime(2023, 1, 7, hour, 30, tzinfo=UTC))

        UsageMeter(path, clock=clock).add_usage(10)

        assert json.loads(path.read_text())["weekly"] == {"2023-W1": 10}

    def test_clear_resets_counters(self, tmp_path):
        meter = UsageMeter(tmp_path / "usage.json")
        meter.add_usage(500)

        meter.clear()

        assert meter.get_stats() == UsageStats()

    def test_negative_usage_rejected(self, tmp_path):
        meter = UsageMeter(tmp_path / "usage.json")

        with pytest.raises(ValueError):
            meter.add_usage(-1)

    def test_corrupt_file_starts_fresh(self, tmp_path):
        path = tmp_path / "usage.json"
        path.write_text("{broken")
        meter = UsageMeter(path)

        meter.add_usage(10)

        assert meter.get_stats().today == 10
        assert json.loads(path.read_text())["daily"]


class TestUsageHelpersUnit:
    """Unit tests for week_number and format_bytes."""

    def test_week_number_boundaries(self):
        # 2023-01-01 is a Sunday, so weeks start on Jan 1, 8, 15...
        assert week_number(date(2023, 1, 1)) == 1
        assert week_number(date(2023, 1, 7)) == 1
        assert week_number(date(2023, 1, 8)) == 2
        # 2024-01-01 is a Monday: Sunday 2024-01-07 starts week 2
        assert week_number(date(2024, 1, 6)) == 1
        assert week_number(date(2024, 1, 7)) == 2

    @pytest.mark.parametrize(
        "byte_count, expected",
        [
            (0, "0 B"),
            (1023, "1023 B"),
            (1024, "1.00 KB"),
            (1536, "1.50 KB"),
            (1024**2, "1.00 MB"),
            (5 * 1024**3, "5.00 GB"),
        ],
    )
    def test_format_bytes(self, byte_count, expected):
        assert format_bytes(byte_count) == expected
