"""Data models for Reddit Relay."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class MediaHint(str, Enum):
    """Kind of media a post carries, used to shape the delivered message."""

    NONE = "none"
    IMAGE = "image"
    VIDEO = "video"
    LINK = "link"


@dataclass
class Source:
    """A monitored subreddit and where its new posts are delivered."""

    name: str
    interval_minutes: float
    webhook_url: str = ""
    enabled: bool = True
    last_checked: datetime | None = None

    @property
    def is_schedulable(self) -> bool:
        """True when the source is enabled and has a delivery target."""
        return self.enabled and bool(self.webhook_url)

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60


@dataclass(frozen=True)
class Item:
    """A single post fetched from a source during one poll cycle."""

    id: str
    title: str
    author: str
    created_at: datetime
    body: str
    url: str
    media_hint: MediaHint = MediaHint.LINK
    thumbnail: str | None = None
    subreddit: str = ""
    permalink: str = ""


@dataclass
class UsageRecord:
    """Cumulative byte counts keyed by day, week and month."""

    daily: dict[str, int] = field(default_factory=dict)
    weekly: dict[str, int] = field(default_factory=dict)
    monthly: dict[str, int] = field(default_factory=dict)
    last_updated: str = ""


@dataclass(frozen=True)
class UsageStats:
    """Byte totals for the current day, week and month."""

    today: int = 0
    this_week: int = 0
    this_month: int = 0
