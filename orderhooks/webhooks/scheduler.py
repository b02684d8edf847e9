"""Retry scheduler for webhook deliveries.

Periodically scans the ledger for deliveries whose ``next_retry_at`` has
passed and attempts them again through the dispatcher. All state lives in
the store, so a restarted process simply resumes on the next poll.
"""

import asyncio
import contextlib
from datetime import datetime

import structlog

from orderhooks.config import settings
from orderhooks.webhooks.dispatcher import Clock, WebhookDispatcher
from orderhooks.webhooks.models import utc_now
from orderhooks.webhooks.store import DeliveryStore

logger = structlog.get_logger(__name__)


class RetryScheduler:
    """Background worker that re-dispatches due deliveries.

    Picks up retrying deliveries and pending ones whose claim lease or
    dispatch grace period has elapsed. Overlapping runs, in one process or
    several, are safe: the dispatcher's claim lets only one of them attempt
    a given delivery.
    """

    def __init__(
        self,
        deliveries: DeliveryStore,
        dispatcher: WebhookDispatcher,
        *,
        poll_interval_seconds: float | None = None,
        batch_size: int | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the scheduler.

        Args:
            deliveries: Delivery ledger store.
            dispatcher: Dispatcher performing the attempts.
            poll_interval_seconds: Pause between scans.
            batch_size: Maximum deliveries attempted per scan.
            clock: Source of the current time.
        """
        self._deliveries = deliveries
        self._dispatcher = dispatcher
        self.poll_interval = poll_interval_seconds or settings.POLL_INTERVAL_SECONDS
        self.batch_size = batch_size or settings.SCHEDULER_BATCH_SIZE
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._logger = logger.bind(component="retry_scheduler")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: datetime | None = None) -> int:
        """Attempt every delivery that is due.

        Args:
            now: Reference time (defaults to the clock).

        Returns:
            Number of deliveries actually attempted by this run.
        """
        now = now or self._clock()
        due = await self._deliveries.list_due(now, self.batch_size)
        if not due:
            return 0

        self._logger.info("retrying_due_deliveries", count=len(due))

        results = await asyncio.gather(
            *(self._dispatcher.attempt(delivery) for delivery in due),
            return_exceptions=True,
        )

        attempted = 0
        for delivery, result in zip(due, results, strict=True):
            if isinstance(result, BaseException):
                self._logger.error(
                    "retry_attempt_error",
                    delivery_id=delivery.id,
                    error=str(result),
                )
            elif result is not None:
                attempted += 1

        self._logger.info("retry_cycle_completed", due=len(due), attempted=attempted)
        return attempted

    async def _run_loop(self) -> None:
        """Poll until stopped; a failing cycle never ends the loop."""
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                self._logger.error("retry_cycle_failed", error=str(e), exc_info=True)

            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)

    def start(self) -> None:
        """Start the background polling task."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self._logger.info("scheduler_started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        """Signal the loop to stop and wait for the current cycle."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=self.poll_interval)
        except asyncio.TimeoutError:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self._logger.info("scheduler_stopped")
