"""Configuration management for Reddit Relay."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .exceptions import ConfigurationError


@dataclass
class RedditConfig:
    """Configuration for the Reddit API."""

    client_id: str
    client_secret: str
    user_agent: str
    username: str = ""
    password: str = ""
    timeout: int = 30

    @property
    def uses_password_grant(self) -> bool:
        return bool(self.username and self.password)

    def validate(self) -> None:
        """Raise ConfigurationError when a required credential is missing."""
        missing = [
            name
            for name, value in (
                ("client_id", self.client_id),
                ("client_secret", self.client_secret),
                ("user_agent", self.user_agent),
            )
            if not value or not value.strip()
        ]
        if missing:
            raise ConfigurationError(
                f"Reddit API credentials not configured: {', '.join(missing)}"
            )


@dataclass
class DiscordConfig:
    """Configuration for Discord webhook delivery."""

    retry_attempts: int = 3
    backoff_factor: float = 2.0
    timeout: int = 30


@dataclass
class ScannerConfig:
    """Configuration for the polling scheduler."""

    notification_delay_ms: int = 2000
    initial_scan_limit: int = 2
    scan_limit: int = 25

    @property
    def notification_delay_seconds(self) -> float:
        return self.notification_delay_ms / 1000


@dataclass
class MetricsConfig:
    """Configuration for CloudWatch metrics publishing."""

    namespace: str = ""
    region: str = "us-east-1"

    @property
    def enabled(self) -> bool:
        return bool(self.namespace)


class Config:
    """Main configuration manager."""

    # Default locations, relative to the working directory
    CONFIG_FILE = "config/config.json"
    USAGE_FILE = "config/data-usage.json"

    def __init__(self):
        """Initialize configuration from environment variables."""
        self.config_path = Path(os.getenv("RELAY_CONFIG_PATH", self.CONFIG_FILE))
        self.usage_path = Path(os.getenv("RELAY_USAGE_PATH", self.USAGE_FILE))
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.reddit_client_id = os.getenv("REDDIT_CLIENT_ID", "")
        self.reddit_client_secret = os.getenv("REDDIT_CLIENT_SECRET", "")
        self.reddit_user_agent = os.getenv("REDDIT_USER_AGENT", "")
        self.reddit_username = os.getenv("REDDIT_USERNAME", "")
        self.reddit_password = os.getenv("REDDIT_PASSWORD", "")
        self.notification_delay_ms = os.getenv("NOTIFICATION_DELAY_MS", "")
        self.cloudwatch_namespace = os.getenv("CLOUDWATCH_NAMESPACE", "")
        self.aws_region = os.getenv(
            "CURRENT_AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")
        )

    def get_reddit_config(self, settings: dict[str, Any] | None = None) -> RedditConfig:
        """Get Reddit configuration.

        Environment variables win over the settings block of the config file.

        Args:
            settings: The ``settings`` section of the source registry file

        Returns:
            RedditConfig with credentials resolved
        """
        settings = settings or {}
        return RedditConfig(
            client_id=self.reddit_client_id or settings.get("redditClientId", ""),
            client_secret=self.reddit_client_secret
            or settings.get("redditClientSecret", ""),
            user_agent=self.reddit_user_agent or settings.get("redditUserAgent", ""),
            username=self.reddit_username or settings.get("redditUsername", ""),
            password=self.reddit_password or settings.get("redditPassword", ""),
        )

    def get_scanner_config(
        self, settings: dict[str, Any] | None = None
    ) -> ScannerConfig:
        """Get scheduler configuration."""
        settings = settings or {}
        raw_delay = self.notification_delay_ms or settings.get(
            "notificationDelay", ScannerConfig.notification_delay_ms
        )
        try:
            delay = int(raw_delay)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid notification delay: {raw_delay!r}")
        if delay < 0:
            raise ConfigurationError(
                f"Notification delay cannot be negative: {delay}"
            )
        return ScannerConfig(notification_delay_ms=delay)

    def get_discord_config(self) -> DiscordConfig:
        """Get Discord configuration."""
        return DiscordConfig()

    def get_metrics_config(self) -> MetricsConfig:
        """Get CloudWatch metrics configuration."""
        return MetricsConfig(namespace=self.cloudwatch_namespace, region=self.aws_region)
