"""Discord webhook delivery for Reddit Relay."""

import json
import time

import requests

from .config import DiscordConfig
from .exceptions import DeliveryError
from .logging_config import create_execution_logger
from .models import Item, MediaHint
from .usage import UsageMeter

EMBED_COLOR = 0x00FF00
MAX_DESCRIPTION = 4096
MAX_FIELD_VALUE = 1024
TRUNCATION_MARKER = "\n\n...(truncated)"

# Webhook responses are small and not read back; count a fixed estimate
RESPONSE_SIZE_ESTIMATE = 1024


def truncate(text: str, limit: int, marker: str = TRUNCATION_MARKER) -> str:
    """Cut text to at most ``limit`` characters, ending with ``marker`` if cut."""
    if len(text) <= limit:
        return text
    return text[: max(limit - len(marker), 0)] + marker[:limit]


def redact_webhook(webhook_url: str) -> str:
    """Hide the token part of a webhook URL for logging."""
    parts = webhook_url.rstrip("/").split("/")
    if len(parts) >= 2 and "webhooks" in parts:
        return "/".join(parts[:-1] + ["***"])
    return "***"


class DiscordNotifier:
    """Sends new posts to a Discord channel through a webhook."""

    def __init__(
        self,
        webhook_url: str,
        config: DiscordConfig | None = None,
        usage_meter: UsageMeter | None = None,
        execution_id: str | None = None,
    ):
        """Initialize the notifier for one webhook."""
        self.webhook_url = webhook_url
        self.config = config or DiscordConfig()
        self.usage_meter = usage_meter
        self.logger = create_execution_logger("discord_notifier", execution_id)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "Reddit-Relay/1.0"})

        self.logger.debug(
            "DiscordNotifier initialized",
            webhook=redact_webhook(webhook_url),
            retry_attempts=self.config.retry_attempts,
        )

    def send(self, item: Item) -> None:
        """
        Deliver one item as an embed.

        Args:
            item: The post to deliver

        Raises:
            DeliveryError: If Discord rejects the message or cannot be reached
        """
        payload = {"embeds": [self.format_embed(item)]}
        self._record_usage(
            len(json.dumps(payload).encode("utf-8")) + RESPONSE_SIZE_ESTIMATE
        )

        self.logger.info(
            f'Sending notification for post "{item.title}"',
            item_id=item.id,
            item_title=item.title,
            webhook=redact_webhook(self.webhook_url),
        )
        self._post_with_retry(payload)

    def format_embed(self, item: Item) -> dict:
        """
        Build the Discord embed for an item.

        Args:
            item: The post to format

        Returns:
            Embed object as accepted by the webhook API
        """
        subreddit = item.subreddit or "unknown"
        posted = int(item.created_at.timestamp())

        embed = {
            "title": f"New Post in r/{subreddit}",
            "color": EMBED_COLOR,
            "fields": [
                {
                    "name": "Title",
                    "value": truncate(f"[{item.title}]({item.url})", MAX_FIELD_VALUE, "..."),
                    "inline": False,
                },
                {"name": "Author", "value": f"u/{item.author}", "inline": True},
                {"name": "Posted", "value": f"<t:{posted}:R>", "inline": True},
            ],
            "footer": {"text": f"r/{subreddit}"},
            "timestamp": item.created_at.isoformat(),
        }

        if item.media_hint == MediaHint.NONE:
            embed["description"] = self._description(item.body)
        elif item.media_hint == MediaHint.IMAGE:
            embed["image"] = {"url": item.url}
            embed["description"] = "Image Post"
        elif item.media_hint == MediaHint.VIDEO:
            embed["description"] = self._description(f"Video Post: {item.url}")
            if item.thumbnail:
                embed["thumbnail"] = {"url": item.thumbnail}
        else:
            embed["description"] = self._description(f"Link Post: {item.url}")

        return embed

    def handle_rate_limit(self, retry_count: int, retry_after: float | None = None) -> None:
        """
        Wait before retrying a rate-limited request.

        Args:
            retry_count: Current retry attempt number
            retry_after: Seconds Discord asked us to wait, if it said
        """
        wait = retry_after if retry_after is not None else self.config.backoff_factor**retry_count
        self.logger.warning(
            f"Rate limited, waiting {wait} seconds before retry {retry_count + 1}",
            retry_count=retry_count,
            backoff_time=wait,
        )
        time.sleep(wait)

    def _post_with_retry(self, payload: dict) -> None:
        for attempt in range(self.config.retry_attempts):
            try:
                response = self.session.post(
                    self.webhook_url, json=payload, timeout=self.config.timeout
                )
            except requests.RequestException as e:
                raise DeliveryError(f"Webhook request failed: {e}") from e

            if response.status_code == 429:
                if attempt < self.config.retry_attempts - 1:
                    self.handle_rate_limit(attempt, self._retry_after(response))
                    continue
                raise DeliveryError(
                    "Max retry attempts reached for rate limiting", status_code=429
                )

            if 200 <= response.status_code < 300:
                self.logger.debug(
                    "Webhook accepted message", status_code=response.status_code
                )
                return

            raise DeliveryError(
                f"Webhook returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        raise DeliveryError("No delivery attempts were made")

    @staticmethod
    def _retry_after(response: requests.Response) -> float | None:
        try:
            return float(response.json()["retry_after"])
        except (ValueError, KeyError, TypeError):
            pass
        header = response.headers.get("Retry-After")
        try:
            return float(header) if header is not None else None
        except (ValueError, TypeError):
            return None

    @staticmethod
    def _description(text: str) -> str:
        if not text:
            return "No content"
        return truncate(text, MAX_DESCRIPTION)

    def _record_usage(self, byte_count: int) -> None:
        if self.usage_meter is None:
            return
        try:
            self.usage_meter.add_usage(byte_count)
        except OSError as e:
            self.logger.warning(f"Failed to record usage: {e}", error=str(e))
