"""Persistent store contract consumed by the engine."""

from datetime import datetime
from typing import Optional, Protocol
from uuid import UUID

from automation_engine.models.event import BehaviorEvent
from automation_engine.models.notification import (
    NotificationRule,
    ScheduledNotification,
    UserPreferences,
)
from automation_engine.models.pattern import PatternStatus, WorkflowPattern
from automation_engine.models.rule import (
    AutomationRule,
    RuleStatus,
    TaskRecord,
    TaskRoutingRule,
)


class EngineStore(Protocol):
    """Storage operations the engine needs.

    Implementations raise ``PersistenceError`` on read/write failure.
    """

    # Behavior events
    async def append_event(self, event: BehaviorEvent) -> None: ...

    async def list_events(
        self, user_id: str, since: datetime, limit: int = 1000
    ) -> list[BehaviorEvent]: ...

    async def count_events(self, user_id: str, since: datetime) -> int: ...

    # Patterns
    async def save_pattern(self, pattern: WorkflowPattern) -> None:
        """Insert a pattern, deactivating older active patterns with its signature."""
        ...

    async def list_patterns(
        self, user_id: str, status: Optional[PatternStatus] = None
    ) -> list[WorkflowPattern]: ...

    async def set_pattern_status(self, pattern_id: UUID, status: PatternStatus) -> None: ...

    # Automation rules
    async def upsert_automation_rule(
        self, rule: AutomationRule
    ) -> tuple[AutomationRule, bool]:
        """Insert unless a rule with the same (user_id, signature) exists.

        Returns the stored rule and whether it was created.
        """
        ...

    async def list_automation_rules(
        self, user_id: str, status: Optional[RuleStatus] = None
    ) -> list[AutomationRule]: ...

    async def update_rule_statistics(
        self,
        rule_id: UUID,
        trigger_count: int,
        success_rate: float,
        last_triggered: datetime,
    ) -> None: ...

    async def set_automation_rule_status(
        self, user_id: str, rule_id: UUID, status: RuleStatus
    ) -> Optional[AutomationRule]: ...

    # Task routing
    async def list_recent_tasks(
        self, user_id: str, since: datetime, limit: int = 100
    ) -> list[TaskRecord]: ...

    async def upsert_task_routing_rule(
        self, rule: TaskRoutingRule
    ) -> tuple[TaskRoutingRule, bool]:
        """Insert, or refresh confidence of the rule with the same signature."""
        ...

    async def list_task_routing_rules(
        self, user_id: str, status: Optional[RuleStatus] = None
    ) -> list[TaskRoutingRule]: ...

    # Notification preferences and rules
    async def get_preferences(self, user_id: str) -> Optional[UserPreferences]: ...

    async def upsert_preferences(self, preferences: UserPreferences) -> UserPreferences: ...

    async def insert_notification_rule(self, rule: NotificationRule) -> NotificationRule: ...

    async def list_notification_rules(
        self, user_id: str, enabled_only: bool = True
    ) -> list[NotificationRule]: ...

    # Scheduled notification queue
    async def enqueue_notification(self, notification: ScheduledNotification) -> None: ...

    async def claim_due_notifications(
        self, now: datetime, limit: int, lease_seconds: int
    ) -> list[ScheduledNotification]:
        """Claim up to ``limit`` unsent rows due at ``now`` that nobody holds a lease on."""
        ...

    async def mark_notification_sent(self, notification_id: UUID, sent_at: datetime) -> None: ...

    async def release_notification(self, notification_id: UUID, error: str) -> None:
        """Give up a claim after a failed delivery; the row stays pending."""
        ...

    async def list_sent_notifications(
        self, user_id: str, since: datetime
    ) -> list[ScheduledNotification]: ...

    async def mark_notification_engaged(self, notification_id: UUID) -> bool: ...
