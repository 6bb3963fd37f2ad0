"""Network usage accounting for Reddit Relay."""

import json
import math
import tempfile
import threading
from dataclasses import asdict
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Callable

from .logging_config import create_execution_logger
from .models import UsageRecord, UsageStats


def week_number(day: date) -> int:
    """Week of the year, with weeks starting on Sunday and week 1 holding Jan 1.

    Only the calendar day counts, so every hour of a Saturday stays in the
    week that began the Sunday before.
    """
    first_day = date(day.year, 1, 1)
    past_days = (day - first_day).days
    # isoweekday: Monday=1 .. Sunday=7, shifted to Sunday=0 .. Saturday=6
    first_weekday = first_day.isoweekday() % 7
    return math.ceil((past_days + first_weekday + 1) / 7)


def format_bytes(byte_count: int) -> str:
    """Render a byte count with a binary unit suffix."""
    if byte_count < 1024:
        return f"{byte_count} B"
    if byte_count < 1024**2:
        return f"{byte_count / 1024:.2f} KB"
    if byte_count < 1024**3:
        return f"{byte_count / 1024**2:.2f} MB"
    return f"{byte_count / 1024**3:.2f} GB"


class UsageMeter:
    """Accumulates bytes transferred, keyed by day, week and month.

    Every update reloads the file first so separate processes sharing the
    same file do not overwrite each other's totals.
    """

    def __init__(
        self,
        path: str | Path,
        execution_id: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the meter.

        Args:
            path: Location of the JSON usage file
            execution_id: Execution ID for logging context
            clock: Returns the current time, defaults to UTC now
        """
        self.path = Path(path)
        self.logger = create_execution_logger("usage_meter", execution_id)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()
        self.usage = UsageRecord(last_updated=self._clock().isoformat())

    def load(self) -> None:
        """Read the usage file, creating it when missing or unreadable."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self.usage = UsageRecord(
                daily=dict(data.get("daily", {})),
                weekly=dict(data.get("weekly", {})),
                monthly=dict(data.get("monthly", {})),
                last_updated=data.get("lastUpdated", ""),
            )
        except FileNotFoundError:
            self.save()
        except (json.JSONDecodeError, AttributeError) as e:
            self.logger.warning(
                f"Usage file {self.path} is unreadable, starting fresh: {e}",
                error=str(e),
            )
            self.usage = UsageRecord(last_updated=self._clock().isoformat())
            self.save()

    def save(self) -> None:
        data = asdict(self.usage)
        data["lastUpdated"] = data.pop("last_updated")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", dir=str(self.path.parent), delete=False, encoding="utf-8"
        ) as tmp:
            json.dump(data, tmp, indent=2)
            tmp_path = Path(tmp.name)
        tmp_path.replace(self.path)

    def _date_keys(self) -> tuple[str, str, str]:
        now = self._clock().astimezone(UTC)
        day = now.strftime("%Y-%m-%d")
        week = f"{now.year}-W{week_number(now.date())}"
        month = now.strftime("%Y-%m")
        return day, week, month

    def add_usage(self, byte_count: int) -> None:
        """Add bytes to today's, this week's and this month's totals.

        Raises:
            ValueError: If byte_count is negative
        """
        if byte_count < 0:
            raise ValueError(f"Byte count cannot be negative: {byte_count}")

        with self._lock:
            self.load()
            day, week, month = self._date_keys()
            self.usage.daily[day] = self.usage.daily.get(day, 0) + byte_count
            self.usage.weekly[week] = self.usage.weekly.get(week, 0) + byte_count
            self.usage.monthly[month] = self.usage.monthly.get(month, 0) + byte_count
            self.usage.last_updated = self._clock().isoformat()
            self.save()

        self.logger.debug("Recorded usage", bytes=byte_count, day=day)

    def get_stats(self) -> UsageStats:
        with self._lock:
            self.load()
            day, week, month = self._date_keys()
            return UsageStats(
                today=self.usage.daily.get(day, 0),
                this_week=self.usage.weekly.get(week, 0),
                this_month=self.usage.monthly.get(month, 0),
            )

    def clear(self) -> None:
        """Reset all counters."""
        with self._lock:
            self.usage = UsageRecord(last_updated=self._clock().isoformat())
            self.save()
        self.logger.info("Usage counters cleared")
