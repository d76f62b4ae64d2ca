"""Notification preferences, rules, queueing and analytics."""

from collections import Counter
from datetime import timedelta
from typing import Optional
from uuid import UUID

import structlog

from automation_engine.clock import Clock, SystemClock
from automation_engine.errors import PersistenceError
from automation_engine.models.notification import (
    NotificationAnalytics,
    NotificationRule,
    ProcessedNotification,
    ScheduledNotification,
    UserPreferences,
)
from automation_engine.stores.base import EngineStore

logger = structlog.get_logger(__name__)

TOP_DELIVERY_HOURS = 3


class NotificationService:
    """User-facing notification operations around the gate and the queue."""

    def __init__(self, store: EngineStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or SystemClock()

    async def get_preferences(self, user_id: str) -> UserPreferences:
        """Stored preferences, or the defaults for a user who never set any."""
        preferences = await self.store.get_preferences(user_id)
        return preferences or UserPreferences(user_id=user_id)

    async def update_preferences(self, preferences: UserPreferences) -> UserPreferences:
        stored = await self.store.upsert_preferences(preferences)
        logger.info(
            "notification_preferences_updated",
            user_id=preferences.user_id,
            frequency=preferences.frequency.value,
            priority_threshold=preferences.priority_threshold.value,
        )
        return stored

    async def create_notification_rule(self, rule: NotificationRule) -> NotificationRule:
        stored = await self.store.insert_notification_rule(rule)
        logger.info(
            "notification_rule_created",
            user_id=rule.user_id,
            rule_id=str(rule.id),
            rule_name=rule.name,
        )
        return stored

    async def list_notification_rules(
        self, user_id: str, enabled_only: bool = False
    ) -> list[NotificationRule]:
        return await self.store.list_notification_rules(user_id, enabled_only=enabled_only)

    async def schedule_notification(
        self, processed: ProcessedNotification
    ) -> Optional[ScheduledNotification]:
        """Queue a processed notification for delivery.

        Returns None without queueing when the gate decided not to send.
        """
        if not processed.should_send:
            return None

        context = processed.original_context
        metadata = dict(context.metadata)
        metadata["processed_id"] = str(processed.id)
        metadata["ai_enhanced"] = processed.ai_enhanced
        if context.project_id:
            metadata["project_id"] = context.project_id
        if context.task_id:
            metadata["task_id"] = context.task_id
        if processed.fallback_reason:
            metadata["fallback_reason"] = processed.fallback_reason

        notification = ScheduledNotification(
            user_id=context.user_id,
            type=context.type,
            priority=context.priority,
            content=processed.processed_content,
            channels=list(processed.channels),
            scheduled_for=processed.scheduled_for,
            metadata=metadata,
            created_at=self.clock.now(),
        )
        await self.store.enqueue_notification(notification)
        logger.info(
            "notification_queued",
            notification_id=str(notification.id),
            user_id=notification.user_id,
            scheduled_for=notification.scheduled_for.isoformat(),
        )
        return notification

    async def get_notification_analytics(
        self, user_id: str, days: int = 30
    ) -> NotificationAnalytics:
        """Delivery totals and engagement over the last ``days`` days."""
        since = self.clock.now() - timedelta(days=days)
        try:
            sent = await self.store.list_sent_notifications(user_id, since)
        except PersistenceError as e:
            logger.error("notification_analytics_failed", user_id=user_id, error=str(e))
            return NotificationAnalytics()

        if not sent:
            return NotificationAnalytics()

        by_channel: Counter[str] = Counter()
        by_type: Counter[str] = Counter()
        by_priority: Counter[str] = Counter()
        by_hour: Counter[int] = Counter()
        for notification in sent:
            by_channel.update(channel.value for channel in notification.channels)
            by_type[notification.type.value] += 1
            by_priority[notification.priority.value] += 1
            if notification.sent_at is not None:
                by_hour[notification.sent_at.hour] += 1

        engaged = sum(1 for notification in sent if notification.engaged)
        return NotificationAnalytics(
            total_sent=len(sent),
            by_channel=dict(by_channel),
            by_type=dict(by_type),
            by_priority=dict(by_priority),
            engagement_rate=engaged / len(sent),
            optimal_times=[f"{hour}:00" for hour, _ in by_hour.most_common(TOP_DELIVERY_HOURS)],
        )

    async def record_engagement(self, notification_id: UUID) -> bool:
        """Mark a delivered notification as engaged with. False if it was not sent."""
        engaged = await self.store.mark_notification_engaged(notification_id)
        if engaged:
            logger.info("notification_engaged", notification_id=str(notification_id))
        return engaged
