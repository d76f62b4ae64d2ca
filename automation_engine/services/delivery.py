"""Delivery channel contract and a log-only implementation."""

from typing import Protocol

import structlog

from automation_engine.models.notification import ScheduledNotification

logger = structlog.get_logger(__name__)


class DeliveryChannel(Protocol):
    """Hands a due notification to the outside world.

    Returns True on success. Raising is treated the same as returning False.
    """

    async def deliver(self, notification: ScheduledNotification) -> bool: ...


class LoggingDeliveryChannel:
    """Records deliveries in the log instead of sending them."""

    async def deliver(self, notification: ScheduledNotification) -> bool:
        logger.info(
            "notification_delivered",
            notification_id=str(notification.id),
            user_id=notification.user_id,
            channels=[c.value for c in notification.channels],
            type=notification.type.value,
        )
        return True
