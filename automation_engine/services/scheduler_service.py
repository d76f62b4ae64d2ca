"""Background loop that delivers queued notifications when they fall due."""

import asyncio
from typing import Optional

import structlog

from automation_engine.clock import Clock, SystemClock
from automation_engine.config import Settings, get_settings
from automation_engine.errors import PersistenceError
from automation_engine.models.notification import ScheduledNotification
from automation_engine.services.delivery import DeliveryChannel
from automation_engine.services.redis_service import RedisService
from automation_engine.stores.base import EngineStore

logger = structlog.get_logger(__name__)


class SchedulerService:
    """Polls the notification queue and hands due items to the delivery channel."""

    def __init__(
        self,
        store: EngineStore,
        delivery: DeliveryChannel,
        redis_service: Optional[RedisService] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.delivery = delivery
        self.redis_service = redis_service
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the scheduler loop as an asyncio background task."""
        if self.running:
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(
            "scheduler_started",
            interval_seconds=self.settings.scheduler_poll_interval_seconds,
            batch_size=self.settings.scheduler_batch_size,
        )

    async def stop(self) -> None:
        """Stop the loop, letting the batch in flight finish first."""
        if self._task is None:
            return
        self._running = False
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("scheduler_stopped")

    async def _poll_loop(self) -> None:
        interval = self.settings.scheduler_poll_interval_seconds
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("scheduler_poll_error", error=str(e), error_type=type(e).__name__)

            if not self._running:
                break
            await self._wait(interval)

    async def _wait(self, interval: float) -> None:
        """Sleep on the clock for ``interval``, waking early when stop is requested."""
        sleeper = asyncio.ensure_future(self.clock.sleep(interval))
        stopper = asyncio.ensure_future(self._stop_event.wait())
        _, pending = await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    async def run_once(self) -> int:
        """Drain every due notification in batches. Returns the number delivered.

        Failed items keep their claim until the drain ends, so one tick never
        retries them, and are then released for the next tick.
        """
        settings = self.settings
        now = self.clock.now()
        delivered = 0
        failed: list[tuple[ScheduledNotification, str]] = []

        while True:
            try:
                batch = await self.store.claim_due_notifications(
                    now, settings.scheduler_batch_size, settings.scheduler_claim_lease_seconds
                )
            except PersistenceError as e:
                logger.error("scheduler_claim_failed", error=str(e))
                break

            if not batch:
                break

            errors = await asyncio.gather(*(self._deliver(n) for n in batch))
            for notification, error in zip(batch, errors):
                if error is None:
                    delivered += 1
                else:
                    failed.append((notification, error))

            if len(batch) < settings.scheduler_batch_size or self._stop_event.is_set():
                break

        for notification, error in failed:
            try:
                await self.store.release_notification(notification.id, error)
            except PersistenceError as e:
                logger.error(
                    "scheduler_release_failed",
                    notification_id=str(notification.id),
                    error=str(e),
                )

        if delivered or failed:
            logger.info("scheduler_tick_completed", delivered=delivered, failed=len(failed))
        return delivered

    async def _deliver(self, notification: ScheduledNotification) -> Optional[str]:
        """Deliver one notification. Returns an error message, or None on success."""
        try:
            ok = await asyncio.wait_for(
                self.delivery.deliver(notification),
                timeout=self.settings.delivery_timeout_seconds,
            )
        except asyncio.TimeoutError:
            ok, error = False, "delivery timed out"
        except Exception as e:
            ok, error = False, str(e) or type(e).__name__
        else:
            error = None if ok else "delivery channel reported failure"

        if not ok:
            logger.warning(
                "notification_delivery_failed",
                notification_id=str(notification.id),
                user_id=notification.user_id,
                attempts=notification.attempts + 1,
                error=error,
            )
            return error

        try:
            await self.store.mark_notification_sent(notification.id, self.clock.now())
        except PersistenceError as e:
            # Delivered but not recorded; the lease expiry makes it due again
            logger.error(
                "notification_mark_sent_failed",
                notification_id=str(notification.id),
                error=str(e),
            )

        if self.redis_service is not None:
            await self.redis_service.increment_recent_notifications(notification.user_id)
        return None
