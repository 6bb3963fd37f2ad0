"""Process entry point for Reddit Relay."""

import asyncio
import signal
import sys
from datetime import UTC, datetime
from functools import partial

from dotenv import load_dotenv

from .config import Config
from .discord import DiscordNotifier
from .exceptions import ConfigurationError
from .logging_config import create_execution_logger, setup_structured_logging
from .metrics import send_cloudwatch_metrics
from .models import Source
from .reddit import RedditFetcher
from .registry import SourceRegistry
from .scheduler import PollingScheduler
from .usage import UsageMeter, format_bytes


def build_scheduler(
    config: Config, execution_id: str
) -> tuple[PollingScheduler, UsageMeter]:
    """
    Wire the registry, fetcher, notifiers and metrics into a scheduler.

    Args:
        config: Environment-backed configuration
        execution_id: Execution ID shared by every component's logs

    Returns:
        The scheduler and the usage meter its collaborators report to

    Raises:
        ConfigurationError: If the config file or Reddit credentials are invalid
    """
    registry = SourceRegistry(config.config_path, execution_id=execution_id).load()

    reddit_config = config.get_reddit_config(registry.settings)
    reddit_config.validate()
    scanner_config = config.get_scanner_config(registry.settings)
    discord_config = config.get_discord_config()
    metrics_config = config.get_metrics_config()

    usage_meter = UsageMeter(config.usage_path, execution_id=execution_id)
    fetcher = RedditFetcher(reddit_config, usage_meter, execution_id=execution_id)

    def notifier_factory(source: Source) -> DiscordNotifier:
        return DiscordNotifier(
            source.webhook_url,
            discord_config,
            usage_meter,
            execution_id=execution_id,
        )

    metrics_publisher = None
    if metrics_config.enabled:
        metrics_publisher = partial(
            send_cloudwatch_metrics, config=metrics_config, execution_id=execution_id
        )

    scheduler = PollingScheduler(
        registry,
        fetcher,
        notifier_factory,
        scanner_config,
        metrics_publisher=metrics_publisher,
        execution_id=execution_id,
    )
    return scheduler, usage_meter


async def run(config: Config, execution_id: str) -> int:
    """Run until SIGINT or SIGTERM, then stop timers and let ticks finish."""
    main_logger = create_execution_logger("main", execution_id)
    scheduler, usage_meter = build_scheduler(config, execution_id)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    # Startup scans run as a task so a signal can interrupt them
    start_task = asyncio.create_task(scheduler.start())
    stop_task = asyncio.create_task(stop_requested.wait())
    try:
        await asyncio.wait({start_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if start_task.done():
            start_task.result()
            await stop_task
    finally:
        main_logger.info("Stopping scanner...")
        scheduler.stop()
        stop_task.cancel()
        await asyncio.wait({start_task, stop_task})
        startup_error = None if start_task.cancelled() else start_task.exception()
        if stop_requested.is_set() and startup_error is not None:
            main_logger.error(f"Startup failed: {startup_error}", error=str(startup_error))
        await scheduler.wait_idle()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    stats = usage_meter.get_stats()
    main_logger.info(
        "Data usage",
        today=format_bytes(stats.today),
        this_week=format_bytes(stats.this_week),
        this_month=format_bytes(stats.this_month),
    )
    return 0


def main() -> int:
    """Console entry point."""
    load_dotenv()
    config = Config()
    setup_structured_logging(config.log_level)

    execution_id = f"relay_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S_%f')}"
    main_logger = create_execution_logger("main", execution_id)
    main_logger.log_execution_start(config_path=str(config.config_path))

    try:
        exit_code = asyncio.run(run(config, execution_id))
    except ConfigurationError as e:
        main_logger.error(f"Error starting application: {e}", error=str(e))
        main_logger.log_execution_end(success=False)
        return 1

    main_logger.log_execution_end(success=True)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
