"""Unit tests for the process entry point."""

import asyncio
import json
import os
import signal
import threading
from functools import partial
from unittest.mock import AsyncMock, patch

import pytest

from reddit_relay.config import Config
from reddit_relay.discord import DiscordNotifier
from reddit_relay.exceptions import ConfigurationError
from reddit_relay.main import build_scheduler, main, run
from reddit_relay.models import Source
from reddit_relay.reddit import RedditFetcher
from reddit_relay.scheduler import PollingScheduler

CREDENTIALS = {
    "REDDIT_CLIENT_ID": "id",
    "REDDIT_CLIENT_SECRET": "secret",
    "REDDIT_USER_AGENT": "relay-test/1.0",
}


@pytest.fixture
def relay_env(tmp_path):
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "subreddits": [
                    {"name": "python", "interval": 5, "webhookUrl": "https://discord.com/api/webhooks/1/a"}
                ],
                "settings": {"notificationDelay": 250},
            }
        )
    )
    env = {
        "RELAY_CONFIG_PATH": str(config_path),
        "RELAY_USAGE_PATH": str(tmp_path / "usage.json"),
        **CREDENTIALS,
    }
    with patch.dict(os.environ, env, clear=True):
        yield tmp_path


class TestBuildSchedulerUnit:
    """Unit tests for build_scheduler."""

    def test_wires_registry_fetcher_and_settings(self, relay_env):
        scheduler, usage_meter = build_scheduler(Config(), "exec-main")

        assert [s.name for s in scheduler.registry.schedulable()] == ["python"]
        assert isinstance(scheduler.fetcher, RedditFetcher)
        assert scheduler.fetcher.usage_meter is usage_meter
        assert scheduler.config.notification_delay_ms == 250
        assert scheduler.metrics_publisher is None

        notifier = scheduler.notifier_factory(
            Source(name="python", interval_minutes=5, webhook_url="https://discord.com/api/webhooks/1/a")
        )
        assert isinstance(notifier, DiscordNotifier)
        assert notifier.usage_meter is usage_meter

    def test_metrics_publisher_when_namespace_set(self, relay_env):
        with patch.dict(os.environ, {"CLOUDWATCH_NAMESPACE": "RedditRelay"}):
            scheduler, _ = build_scheduler(Config(), "exec-main")

        assert isinstance(scheduler.metrics_publisher, partial)
        assert scheduler.metrics_publisher.keywords["config"].namespace == "RedditRelay"

    def test_missing_credentials_raise(self, relay_env):
        with patch.dict(os.environ, {"REDDIT_CLIENT_ID": ""}):
            with pytest.raises(ConfigurationError):
                build_scheduler(Config(), "exec-main")


class TestMainUnit:
    """Unit tests for main."""

    def test_configuration_error_exits_with_one(self, relay_env):
        with (
            patch("reddit_relay.main.load_dotenv"),
            patch("reddit_relay.main.setup_structured_logging"),
            patch.dict(os.environ, {"REDDIT_CLIENT_SECRET": ""}),
        ):
            assert main() == 1

    def test_clean_run_exits_with_zero(self, relay_env):
        with (
            patch("reddit_relay.main.load_dotenv"),
            patch("reddit_relay.main.setup_structured_logging") as mock_logging,
            patch("reddit_relay.main.run", new=AsyncMock(return_value=0)) as mock_run,
        ):
            assert main() == 0

        mock_logging.assert_called_once_with("INFO")
        config, execution_id = mock_run.call_args.args
        assert execution_id.startswith("relay_")
        assert config.config_path == relay_env / "config.json"


def write_sources(config_path, names, interval):
    config_path.write_text(
        json.dumps(
            {
                "subreddits": [
                    {
                        "name": name,
                        "interval": interval,
                        "lastChecked": "2024-01-01T00:00:00Z",
                        "webhookUrl": "https://discord.com/api/webhooks/1/a",
                    }
                    for name in names
                ],
                "settings": {"notificationDelay": 0},
            }
        )
    )


class TestRunUnit:
    """Unit tests for run and its signal handling."""

    def setup_method(self):
        self.schedulers = []

    def capture_scheduler(self, *args, **kwargs):
        scheduler = PollingScheduler(*args, **kwargs)
        self.schedulers.append(scheduler)
        return scheduler

    @pytest.mark.asyncio
    async def test_sigterm_stops_timers_and_returns_zero(self, relay_env):
        # 30 ms interval so timers fire several times before the signal
        write_sources(relay_env / "config.json", ["python"], 0.0005)
        loop = asyncio.get_running_loop()

        with (
            patch("reddit_relay.main.RedditFetcher") as fetcher_class,
            patch("reddit_relay.main.DiscordNotifier"),
            patch("reddit_relay.main.PollingScheduler", side_effect=self.capture_scheduler),
        ):
            fetcher = fetcher_class.return_value
            fetcher.fetch_recent.return_value = []
            loop.call_later(0.2, os.kill, os.getpid(), signal.SIGTERM)

            exit_code = await run(Config(), "exec-signal")
            calls_at_exit = fetcher.fetch_recent.call_count
            await asyncio.sleep(0.15)

        assert exit_code == 0
        assert calls_at_exit >= 2
        assert fetcher.fetch_recent.call_count == calls_at_exit
        assert self.schedulers[0].timers.armed == []
        assert not loop.remove_signal_handler(signal.SIGTERM)
        assert not loop.remove_signal_handler(signal.SIGINT)

    @pytest.mark.asyncio
    async def test_sigterm_during_startup_skips_remaining_scans(self, relay_env):
        write_sources(relay_env / "config.json", ["python", "rust"], 0.0005)
        loop = asyncio.get_running_loop()
        release = threading.Event()

        def blocking_fetch(source_name, limit):
            release.wait(timeout=5)
            return []

        with (
            patch("reddit_relay.main.RedditFetcher") as fetcher_class,
            patch("reddit_relay.main.DiscordNotifier"),
            patch("reddit_relay.main.PollingScheduler", side_effect=self.capture_scheduler),
        ):
            fetcher = fetcher_class.return_value
            fetcher.fetch_recent.side_effect = blocking_fetch
            loop.call_later(0.1, os.kill, os.getpid(), signal.SIGTERM)
            loop.call_later(0.2, release.set)

            exit_code = await run(Config(), "exec-startup-signal")
            await asyncio.sleep(0.15)

        assert exit_code == 0
        assert [call.args[0] for call in fetcher.fetch_recent.call_args_list] == ["python"]
        assert self.schedulers[0].timers.armed == []
