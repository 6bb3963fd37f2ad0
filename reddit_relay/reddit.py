"""Reddit fetching module for Reddit Relay."""

import threading
import time
from datetime import UTC, datetime
from typing import Any

import requests

from .config import RedditConfig
from .exceptions import FetchError
from .logging_config import create_execution_logger
from .models import Item, MediaHint
from .usage import UsageMeter

REDDIT_API_BASE = "https://oauth.reddit.com"
REDDIT_TOKEN_URL = "https://www.reddit.com/api/v1/access_token"

VIDEO_HINTS = {"video", "hosted:video", "rich:video"}

# Refresh the token this many seconds before Reddit says it expires
TOKEN_EXPIRY_MARGIN = 60


class RedditFetcher:
    """Fetches the newest posts of a subreddit and normalizes them into Items."""

    def __init__(
        self,
        config: RedditConfig,
        usage_meter: UsageMeter | None = None,
        execution_id: str | None = None,
    ):
        """Initialize RedditFetcher with configuration.

        Args:
            config: Reddit API credentials and timeout
            usage_meter: Optional meter that records response sizes
            execution_id: Execution ID for logging context
        """
        self.config = config
        self.usage_meter = usage_meter
        self.logger = create_execution_logger("reddit_fetcher", execution_id)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": config.user_agent})

        self._access_token: str | None = None
        self._token_expires_at = 0.0
        # Sources are fetched from worker threads concurrently
        self._token_lock = threading.Lock()

        self.logger.info(
            "RedditFetcher initialized",
            timeout=config.timeout,
            grant_type="password" if config.uses_password_grant else "client_credentials",
        )

    def fetch_recent(self, source_name: str, limit: int) -> list[Item]:
        """Fetch the newest posts of a subreddit.

        Args:
            source_name: Subreddit name without the ``r/`` prefix
            limit: Maximum number of posts to return

        Returns:
            Items in the order Reddit lists them (newest first)

        Raises:
            FetchError: If authentication, the request or decoding fails
        """
        token = self._get_access_token(source_name)
        url = f"{REDDIT_API_BASE}/r/{source_name}/new"

        try:
            self.logger.debug(
                "Requesting newest posts", source_name=source_name, limit=limit
            )
            response = self.session.get(
                url,
                headers={"Authorization": f"Bearer {token}"},
                params={"limit": limit, "raw_json": 1},
                timeout=self.config.timeout,
            )
        except requests.RequestException as e:
            raise FetchError(source_name, f"request failed: {e}") from e

        self._record_usage(len(response.content))

        if response.status_code == 401:
            # Token revoked or expired early; the next tick re-authenticates
            with self._token_lock:
                if self._access_token == token:
                    self._access_token = None
            raise FetchError(source_name, "unauthorized (401)")
        if response.status_code == 429:
            raise FetchError(source_name, "rate limited (429)")

        try:
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError as e:
            raise FetchError(source_name, f"HTTP {response.status_code}") from e
        except ValueError as e:
            raise FetchError(source_name, f"invalid JSON response: {e}") from e

        children = (data.get("data") or {}).get("children") or []

        items = []
        for child in children[:limit]:
            try:
                items.append(self.normalize_item(child.get("data") or {}))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(
                    f"Failed to normalize post from r/{source_name}: {e}",
                    source_name=source_name,
                    error=str(e),
                )
                continue

        self.logger.info(
            "Fetched posts",
            source_name=source_name,
            items_count=len(items),
            content_length=len(response.content),
        )
        return items

    def normalize_item(self, post: dict[str, Any]) -> Item:
        """Normalize a Reddit listing entry into an Item.

        Args:
            post: The ``data`` object of a listing child

        Returns:
            Normalized Item

        Raises:
            KeyError: If the post lacks an id or creation time
        """
        created_at = datetime.fromtimestamp(float(post["created_utc"]), tz=UTC)
        permalink = post.get("permalink") or ""

        return Item(
            id=str(post["id"]),
            title=post.get("title") or "",
            author=post.get("author") or "[deleted]",
            created_at=created_at,
            body=post.get("selftext") or "",
            url=post.get("url") or (f"https://www.reddit.com{permalink}" if permalink else ""),
            media_hint=self.detect_media_hint(post),
            thumbnail=self._thumbnail(post.get("thumbnail")),
            subreddit=post.get("subreddit") or "",
            permalink=permalink,
        )

    @staticmethod
    def detect_media_hint(post: dict[str, Any]) -> MediaHint:
        if post.get("is_self"):
            return MediaHint.NONE
        hint = post.get("post_hint") or ""
        if hint == "image":
            return MediaHint.IMAGE
        if post.get("is_video") or hint in VIDEO_HINTS:
            return MediaHint.VIDEO
        return MediaHint.LINK

    @staticmethod
    def _thumbnail(value: Any) -> str | None:
        # Reddit uses placeholders like "default", "self" and "nsfw"
        if isinstance(value, str) and value.startswith(("http://", "https://")):
            return value
        return None

    def _get_access_token(self, source_name: str) -> str:
        """Return a cached OAuth token, requesting a new one when needed.

        Raises:
            FetchError: If the token request fails
        """
        with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token
            return self._request_token(source_name)

    def _request_token(self, source_name: str) -> str:
        if self.config.uses_password_grant:
            payload = {
                "grant_type": "password",
                "username": self.config.username,
                "password": self.config.password,
            }
        else:
            payload = {"grant_type": "client_credentials"}

        try:
            self.logger.info("Requesting Reddit access token")
            response = self.session.post(
                REDDIT_TOKEN_URL,
                auth=(self.config.client_id, self.config.client_secret),
                data=payload,
                timeout=self.config.timeout,
            )
            self._record_usage(len(response.content))
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise FetchError(source_name, f"authentication failed: {e}") from e
        except ValueError as e:
            raise FetchError(source_name, f"invalid token response: {e}") from e

        token = data.get("access_token")
        if not token:
            # Reddit reports bad credentials with a 200 and an "error" field
            raise FetchError(
                source_name, f"authentication failed: {data.get('error', 'no token')}"
            )

        expires_in = float(data.get("expires_in", 3600))
        self._access_token = token
        self._token_expires_at = time.monotonic() + max(
            expires_in - TOKEN_EXPIRY_MARGIN, 0
        )
        self.logger.info("Obtained Reddit access token", expires_in=expires_in)
        return token

    def _record_usage(self, byte_count: int) -> None:
        if self.usage_meter is None:
            return
        try:
            self.usage_meter.add_usage(byte_count)
        except OSError as e:
            self.logger.warning(f"Failed to record usage: {e}", error=str(e))
