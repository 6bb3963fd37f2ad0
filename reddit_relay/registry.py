"""Source registry backed by a JSON config file."""

from __future__ import annotations

import json
import tempfile
import threading
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from dateutil import parser as date_parser

from .exceptions import ConfigurationError
from .logging_config import create_execution_logger
from .models import Source

DEFAULT_SETTINGS = {
    "notificationDelay": 2000,
    "redditClientId": "",
    "redditClientSecret": "",
    "redditUserAgent": "",
}


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a stored timestamp into an aware UTC datetime.

    Args:
        value: ISO-8601 string, epoch seconds, or None

    Returns:
        Aware datetime in UTC, or None if the value is empty

    Raises:
        ValueError: If the value cannot be parsed
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=UTC)
    else:
        parsed = date_parser.isoparse(str(value))
    # Naive timestamps in the file are taken as UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


class SourceRegistry:
    """Ordered list of monitored sources persisted to a JSON file.

    The file keeps the layout the relay has always used, so existing
    ``config.json`` files load unchanged::

        {"subreddits": [{"name": ..., "interval": ..., "lastChecked": ...,
                         "enabled": ..., "webhookUrl": ...}],
         "settings": {"notificationDelay": 2000, ...}}
    """

    def __init__(self, path: str | Path, execution_id: str | None = None):
        """Initialize the registry.

        Args:
            path: Location of the JSON config file
            execution_id: Execution ID for logging context
        """
        self.path = Path(path)
        self.logger = create_execution_logger("registry", execution_id)
        self._lock = threading.RLock()
        self._sources: list[Source] = []
        self.settings: dict[str, Any] = dict(DEFAULT_SETTINGS)

    def load(self) -> SourceRegistry:
        """Load sources and settings, creating a default file when missing.

        Raises:
            ConfigurationError: If the file exists but is not valid JSON
        """
        with self._lock:
            if not self.path.exists():
                self.logger.info(
                    "Config file not found, creating default", path=str(self.path)
                )
                self._sources = []
                self.settings = dict(DEFAULT_SETTINGS)
                self.save()
                return self

            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"Invalid JSON in config file {self.path}: {e}")

            if not isinstance(data, dict):
                raise ConfigurationError(f"Config file {self.path} must hold an object")

            raw_settings = data.get("settings") or {}
            if not isinstance(raw_settings, dict):
                raise ConfigurationError(f'"settings" in {self.path} must be an object')
            raw_sources = data.get("subreddits") or []
            if not isinstance(raw_sources, list):
                raise ConfigurationError(f'"subreddits" in {self.path} must be a list')

            self.settings = {**DEFAULT_SETTINGS, **raw_settings}

            sources = []
            seen = set()
            for raw in raw_sources:
                try:
                    source = self._source_from_dict(raw)
                except (ConfigurationError, ValueError, TypeError, KeyError) as e:
                    self.logger.warning(
                        f"Skipping invalid source entry: {e}", error=str(e)
                    )
                    continue
                if source.name in seen:
                    self.logger.warning(
                        f"Skipping duplicate source r/{source.name}",
                        source_name=source.name,
                    )
                    continue
                seen.add(source.name)
                sources.append(source)

            self._sources = sources
            self.logger.info(
                "Registry loaded", path=str(self.path), source_count=len(sources)
            )
            return self

    def save(self) -> None:
        """Write the registry atomically (temp file + replace)."""
        with self._lock:
            data = {
                "subreddits": [self._source_to_dict(s) for s in self._sources],
                "settings": self.settings,
            }
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", dir=str(self.path.parent), delete=False, encoding="utf-8"
            ) as tmp:
                json.dump(data, tmp, indent=2)
                tmp.write("\n")
                tmp_path = Path(tmp.name)
            tmp_path.replace(self.path)

    def list(self) -> list[Source]:
        """Return a snapshot of all sources in file order."""
        with self._lock:
            return [replace(s) for s in self._sources]

    def schedulable(self) -> list[Source]:
        """Return enabled sources that have a delivery target."""
        return [s for s in self.list() if s.is_schedulable]

    def get(self, name: str) -> Source | None:
        with self._lock:
            source = self._find(name)
            return replace(source) if source else None

    def add(self, name: str, interval_minutes: float, webhook_url: str) -> Source:
        """Add a new enabled source with ``last_checked`` set to now.

        Raises:
            ConfigurationError: On an empty or duplicate name or a bad interval
        """
        name = (name or "").strip()
        if not name:
            raise ConfigurationError("Source name cannot be empty")
        interval = self._validate_interval(interval_minutes)

        with self._lock:
            if self._find(name):
                raise ConfigurationError(f"Source r/{name} already exists")
            source = Source(
                name=name,
                interval_minutes=interval,
                webhook_url=webhook_url or "",
                enabled=True,
                last_checked=datetime.now(UTC),
            )
            self._sources.append(source)
            self.save()
            self.logger.info(
                f"Added source r/{name}", source_name=name, interval_minutes=interval
            )
            return replace(source)

    def remove(self, name: str) -> bool:
        """Remove a source. Returns True if it existed."""
        with self._lock:
            before = len(self._sources)
            self._sources = [s for s in self._sources if s.name != name]
            removed = len(self._sources) != before
            if removed:
                self.save()
                self.logger.info(f"Removed source r/{name}", source_name=name)
            return removed

    def update_interval(self, name: str, interval_minutes: float) -> Source:
        interval = self._validate_interval(interval_minutes)
        return self._update(name, interval_minutes=interval)

    def update_webhook(self, name: str, webhook_url: str) -> Source:
        return self._update(name, webhook_url=webhook_url or "")

    def set_enabled(self, name: str, enabled: bool) -> Source:
        return self._update(name, enabled=bool(enabled))

    def set_last_checked(self, name: str, timestamp: datetime) -> None:
        """Record when a source was last checked.

        ``last_checked`` never moves backwards: an older timestamp than the
        stored one is ignored.

        Raises:
            ConfigurationError: If the source is unknown
        """
        timestamp = parse_timestamp(timestamp)
        with self._lock:
            source = self._find(name)
            if source is None:
                raise ConfigurationError(f"Unknown source r/{name}")
            if source.last_checked is not None and timestamp <= source.last_checked:
                self.logger.debug(
                    "Ignoring non-advancing last_checked",
                    source_name=name,
                    current=format_timestamp(source.last_checked),
                    requested=format_timestamp(timestamp),
                )
                return
            source.last_checked = timestamp
            self.save()

    def _update(self, name: str, **changes) -> Source:
        with self._lock:
            source = self._find(name)
            if source is None:
                raise ConfigurationError(f"Unknown source r/{name}")
            for key, value in changes.items():
                setattr(source, key, value)
            self.save()
            return replace(source)

    def _find(self, name: str) -> Source | None:
        for source in self._sources:
            if source.name == name:
                return source
        return None

    @staticmethod
    def _validate_interval(interval_minutes: Any) -> float:
        try:
            interval = float(interval_minutes)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid interval: {interval_minutes!r}")
        if not interval > 0:
            raise ConfigurationError(f"Interval must be positive, got {interval}")
        return interval

    def _source_from_dict(self, raw: dict[str, Any]) -> Source:
        name = str(raw["name"]).strip()
        if not name:
            raise ConfigurationError("Source entry has an empty name")
        return Source(
            name=name,
            interval_minutes=self._validate_interval(raw.get("interval")),
            webhook_url=raw.get("webhookUrl") or "",
            enabled=bool(raw.get("enabled", True)),
            last_checked=parse_timestamp(raw.get("lastChecked")),
        )

    @staticmethod
    def _source_to_dict(source: Source) -> dict[str, Any]:
        return {
            "name": source.name,
            "interval": source.interval_minutes,
            "lastChecked": format_timestamp(source.last_checked),
            "enabled": source.enabled,
            "webhookUrl": source.webhook_url,
        }
