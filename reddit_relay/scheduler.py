"""Polling scheduler and new-item detection for Reddit Relay."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from functools import partial
from typing import Any, Protocol

from .config import ScannerConfig
from .logging_config import create_execution_logger
from .metrics import new_tick_metrics
from .models import Item, Source
from .registry import SourceRegistry


class Fetcher(Protocol):
    def fetch_recent(self, source_name: str, limit: int) -> list[Item]:
        """Return up to ``limit`` items, newest first. Raises on failure."""


class DeliveryClient(Protocol):
    def send(self, item: Item) -> None:
        """Deliver one item. Raises on failure."""


NotifierFactory = Callable[[Source], DeliveryClient]
MetricsPublisher = Callable[[dict[str, Any], str], None]


def select_new_items(items: Iterable[Item], last_checked: datetime | None) -> list[Item]:
    """Items created strictly after ``last_checked``, in their original order.

    Without a baseline every item counts as new.
    """
    if last_checked is None:
        return list(items)
    return [item for item in items if item.created_at > last_checked]


def utcnow() -> datetime:
    return datetime.now(UTC)


class TaskScheduler:
    """Owns one cancellable periodic task per name.

    Each timer sleeps for its interval and then launches the callback as a
    separate task, so cancelling a timer never interrupts a tick that is
    already running. A tick is skipped when the previous tick for the same
    name has not finished yet.
    """

    def __init__(self, execution_id: str | None = None):
        self.logger = create_execution_logger("scheduler", execution_id)
        self._timers: dict[str, asyncio.Task] = {}
        self._ticks: dict[str, asyncio.Task] = {}

    @property
    def armed(self) -> list[str]:
        return list(self._timers)

    def is_armed(self, name: str) -> bool:
        task = self._timers.get(name)
        return task is not None and not task.done()

    def arm(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[Any]],
    ) -> None:
        """Start calling ``callback`` every ``interval_seconds``.

        Re-arming a name replaces its previous timer. Must be called from
        within a running event loop.

        Raises:
            ValueError: If the interval is not positive
        """
        if not interval_seconds > 0:
            raise ValueError(f"Interval must be positive, got {interval_seconds}")

        self.cancel(name)
        self._timers[name] = asyncio.create_task(
            self._run_timer(name, interval_seconds, callback), name=f"timer:{name}"
        )
        self.logger.debug(
            f"Armed timer for {name}", source_name=name, interval_seconds=interval_seconds
        )

    def cancel(self, name: str) -> bool:
        task = self._timers.pop(name, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for name in list(self._timers):
            self.cancel(name)
        self._timers.clear()

    async def wait_idle(self) -> None:
        """Wait for ticks that are still running."""
        pending = [task for task in self._ticks.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run_timer(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[Any]],
    ) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            previous = self._ticks.get(name)
            if previous is not None and not previous.done():
                self.logger.warning(
                    f"Previous tick for {name} still running, skipping this one",
                    source_name=name,
                )
                continue
            self._ticks[name] = asyncio.create_task(
                self._run_tick(name, callback), name=f"tick:{name}"
            )

    async def _run_tick(self, name: str, callback: Callable[[], Awaitable[Any]]) -> None:
        try:
            await callback()
        except Exception as e:
            self.logger.error(
                f"Unhandled error in tick for {name}: {e}",
                source_name=name,
                error=str(e),
            )


class PollingScheduler:
    """Polls each schedulable source on its own interval and forwards new items.

    A source is schedulable when it is enabled and has a webhook. On
    :meth:`start` every such source gets an initial scan, which forwards the
    few newest items unconditionally, and then a recurring timer. Each later
    tick fetches a larger window and forwards only items created after the
    source's ``last_checked``, pacing deliveries by the configured delay.

    Fetch and delivery failures are logged and absorbed: they never stop a
    timer, roll back ``last_checked`` or affect other sources.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        fetcher: Fetcher,
        notifier_factory: NotifierFactory,
        config: ScannerConfig,
        metrics_publisher: MetricsPublisher | None = None,
        clock: Callable[[], datetime] = utcnow,
        execution_id: str | None = None,
        timers: TaskScheduler | None = None,
    ):
        """Initialize the scheduler.

        Args:
            registry: Where sources and their last_checked live
            fetcher: Fetches recent items for a source name
            notifier_factory: Builds the delivery client for a source
            config: Scan limits and pacing delay
            metrics_publisher: Optional sink called with each tick's metrics
            clock: Returns the current time, used to advance last_checked
            execution_id: Execution ID for logging context
            timers: Timer owner, a new TaskScheduler by default
        """
        self.registry = registry
        self.fetcher = fetcher
        self.notifier_factory = notifier_factory
        self.config = config
        self.metrics_publisher = metrics_publisher
        self.clock = clock
        self.execution_id = execution_id
        self.logger = create_execution_logger("scheduler", execution_id)
        self.timers = timers or TaskScheduler(execution_id)
        self.notifiers: dict[str, DeliveryClient] = {}
        self._started = False
        self._stopped = False

    @property
    def is_running(self) -> bool:
        return bool(self.timers.armed)

    def initialize_notifiers(self) -> list[Source]:
        """Build one delivery client per schedulable source.

        Returns:
            The sources that got a delivery client
        """
        self.notifiers.clear()
        ready = []
        for source in self.registry.schedulable():
            try:
                self.notifiers[source.name] = self.notifier_factory(source)
            except Exception as e:
                self.logger.error(
                    f"Excluding r/{source.name}: cannot create notifier: {e}",
                    source_name=source.name,
                    error=str(e),
                )
                continue
            ready.append(source)

        skipped = [s.name for s in self.registry.list() if not s.is_schedulable]
        if skipped:
            self.logger.info(
                f"Not scheduling {len(skipped)} disabled or unconfigured sources",
                skipped_sources=skipped,
            )
        return ready

    async def start(self) -> None:
        """Run the initial scan for every schedulable source, then arm timers.

        A :meth:`stop` issued while this is still running takes effect after
        the initial scan in progress: no further scans run and no timer is
        armed.
        """
        self._stopped = False
        self._started = True
        sources = self.initialize_notifiers()
        self.logger.log_execution_start(source_count=len(sources))

        for source in sources:
            if self._stopped:
                break
            try:
                await self.initial_scan(source.name)
            except Exception as e:
                self.logger.error(
                    f"Error in initial scan for r/{source.name}: {e}",
                    source_name=source.name,
                    error=str(e),
                )

        if self._stopped:
            self.logger.info("Stopped during startup, no timers armed")
            return

        for source in sources:
            self.timers.arm(
                source.name,
                source.interval_seconds,
                partial(self.scan_source, source.name),
            )
            self.logger.info(
                f"Scheduled r/{source.name} every {source.interval_minutes} minutes",
                source_name=source.name,
            )

    def stop(self) -> None:
        """Cancel every timer. Ticks already running are left to finish."""
        self._stopped = True
        was_running = self._started
        self._started = False
        self.timers.cancel_all()
        if was_running:
            self.logger.log_execution_end(success=True)

    async def wait_idle(self) -> None:
        await self.timers.wait_idle()

    async def initial_scan(self, source_name: str) -> dict[str, Any]:
        """Forward the newest few items of a source regardless of their age."""
        return await self._tick(source_name, initial=True)

    async def scan_source(self, source_name: str) -> dict[str, Any]:
        """One steady-state tick: forward items newer than ``last_checked``."""
        return await self._tick(source_name, initial=False)

    async def _tick(self, source_name: str, initial: bool) -> dict[str, Any]:
        metrics = new_tick_metrics()

        source = self.registry.get(source_name)
        notifier = self.notifiers.get(source_name)
        if source is None or not source.is_schedulable or notifier is None:
            self.logger.warning(
                f"r/{source_name} is no longer schedulable, removing its timer",
                source_name=source_name,
            )
            self.timers.cancel(source_name)
            return metrics

        # A source whose initial scan never succeeded has no baseline yet
        unconditional = initial or source.last_checked is None
        limit = self.config.initial_scan_limit if unconditional else self.config.scan_limit

        self.logger.info(
            f"Scanning r/{source_name}" + (" (initial scan)" if initial else ""),
            source_name=source_name,
            limit=limit,
        )

        try:
            items = await asyncio.to_thread(self.fetcher.fetch_recent, source_name, limit)
        except Exception as e:
            message = f"Error scanning r/{source_name}: {e}"
            self.logger.error(message, source_name=source_name, error=str(e))
            metrics["errors"].append(message)
            await self._publish(metrics, source_name)
            return metrics

        if unconditional:
            new_items = list(items[:limit])
        else:
            new_items = select_new_items(items, source.last_checked)

        metrics["items_found"] = len(items)
        metrics["items_new"] = len(new_items)
        self.logger.log_source_scan(source_name, len(items), len(new_items))

        if not new_items:
            self.logger.info(
                f"No new posts found in r/{source_name}", source_name=source_name
            )
            await self._publish(metrics, source_name)
            return metrics

        await self._deliver_all(source_name, notifier, new_items, metrics)

        try:
            await asyncio.to_thread(
                self.registry.set_last_checked, source_name, self.clock()
            )
        except Exception as e:
            message = f"Failed to update last checked for r/{source_name}: {e}"
            self.logger.error(message, source_name=source_name, error=str(e))
            metrics["errors"].append(message)

        self.logger.log_metrics(metrics)
        await self._publish(metrics, source_name)
        return metrics

    async def _deliver_all(
        self,
        source_name: str,
        notifier: DeliveryClient,
        items: list[Item],
        metrics: dict[str, Any],
    ) -> None:
        delay = self.config.notification_delay_seconds
        for index, item in enumerate(items):
            if index > 0 and delay > 0:
                await asyncio.sleep(delay)
            try:
                await asyncio.to_thread(notifier.send, item)
            except Exception as e:
                message = f'Failed to send post "{item.title}": {e}'
                self.logger.error(
                    message,
                    source_name=source_name,
                    item_id=item.id,
                    item_title=item.title,
                    error=str(e),
                )
                metrics["errors"].append(message)
                continue
            metrics["messages_sent"] += 1
            self.logger.log_item_processing(source_name, item.title, "sent")

    async def _publish(self, metrics: dict[str, Any], source_name: str) -> None:
        if self.metrics_publisher is None:
            return
        try:
            await asyncio.to_thread(self.metrics_publisher, metrics, source_name)
        except Exception as e:
            self.logger.error(
                f"Failed to publish metrics for r/{source_name}: {e}",
                source_name=source_name,
                error=str(e),
            )
