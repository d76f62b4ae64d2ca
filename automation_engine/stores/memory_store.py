"""In-process store for tests and single-process local use."""

from datetime import datetime, timedelta
from typing import Optional
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


class InMemoryStore:
    """Dict-backed implementation of ``EngineStore``."""

    def __init__(self):
        self.events: list[BehaviorEvent] = []
        self.patterns: dict[UUID, WorkflowPattern] = {}
        self.automation_rules: dict[UUID, AutomationRule] = {}
        self.routing_rules: dict[UUID, TaskRoutingRule] = {}
        self.tasks: dict[str, list[TaskRecord]] = {}
        self.preferences: dict[str, UserPreferences] = {}
        self.notification_rules: dict[UUID, NotificationRule] = {}
        self.scheduled: dict[UUID, ScheduledNotification] = {}
        self._claims: dict[UUID, datetime] = {}

    async def append_event(self, event: BehaviorEvent) -> None:
        self.events.append(event)

    async def list_events(
        self, user_id: str, since: datetime, limit: int = 1000
    ) -> list[BehaviorEvent]:
        matching = [e for e in self.events if e.user_id == user_id and e.timestamp >= since]
        matching.sort(key=lambda e: e.timestamp)
        return matching[-limit:] if limit else matching

    async def count_events(self, user_id: str, since: datetime) -> int:
        return sum(1 for e in self.events if e.user_id == user_id and e.timestamp >= since)

    async def save_pattern(self, pattern: WorkflowPattern) -> None:
        signature = pattern.signature
        for existing in list(self.patterns.values()):
            if (
                existing.user_id == pattern.user_id
                and existing.status in (PatternStatus.ACTIVE, PatternStatus.APPLIED)
                and existing.signature == signature
            ):
                self.patterns[existing.id] = existing.model_copy(
                    update={"status": PatternStatus.INACTIVE}
                )
        self.patterns[pattern.id] = pattern

    async def list_patterns(
        self, user_id: str, status: Optional[PatternStatus] = None
    ) -> list[WorkflowPattern]:
        return [
            p
            for p in self.patterns.values()
            if p.user_id == user_id and (status is None or p.status == status)
        ]

    async def set_pattern_status(self, pattern_id: UUID, status: PatternStatus) -> None:
        if pattern_id in self.patterns:
            self.patterns[pattern_id] = self.patterns[pattern_id].model_copy(
                update={"status": status}
            )

    async def upsert_automation_rule(
        self, rule: AutomationRule
    ) -> tuple[AutomationRule, bool]:
        for existing in self.automation_rules.values():
            if existing.user_id == rule.user_id and existing.signature == rule.signature:
                return existing, False
        self.automation_rules[rule.id] = rule
        return rule, True

    async def list_automation_rules(
        self, user_id: str, status: Optional[RuleStatus] = None
    ) -> list[AutomationRule]:
        return [
            r
            for r in self.automation_rules.values()
            if r.user_id == user_id and (status is None or r.status == status)
        ]

    async def update_rule_statistics(
        self,
        rule_id: UUID,
        trigger_count: int,
        success_rate: float,
        last_triggered: datetime,
    ) -> None:
        if rule_id in self.automation_rules:
            self.automation_rules[rule_id] = self.automation_rules[rule_id].model_copy(
                update={
                    "trigger_count": trigger_count,
                    "success_rate": success_rate,
                    "last_triggered": last_triggered,
                }
            )

    async def set_automation_rule_status(
        self, user_id: str, rule_id: UUID, status: RuleStatus
    ) -> Optional[AutomationRule]:
        rule = self.automation_rules.get(rule_id)
        if rule is None or rule.user_id != user_id:
            return None
        updated = rule.model_copy(update={"status": status})
        self.automation_rules[rule_id] = updated
        return updated

    def add_task(self, user_id: str, task: TaskRecord) -> None:
        self.tasks.setdefault(user_id, []).append(task)

    async def list_recent_tasks(
        self, user_id: str, since: datetime, limit: int = 100
    ) -> list[TaskRecord]:
        tasks = [t for t in self.tasks.get(user_id, []) if t.created_at >= since]
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks[:limit]

    async def upsert_task_routing_rule(
        self, rule: TaskRoutingRule
    ) -> tuple[TaskRoutingRule, bool]:
        for existing in self.routing_rules.values():
            if existing.user_id == rule.user_id and existing.signature == rule.signature:
                refreshed = existing.model_copy(update={"confidence": rule.confidence})
                self.routing_rules[existing.id] = refreshed
                return refreshed, False
        self.routing_rules[rule.id] = rule
        return rule, True

    async def list_task_routing_rules(
        self, user_id: str, status: Optional[RuleStatus] = None
    ) -> list[TaskRoutingRule]:
        return [
            r
            for r in self.routing_rules.values()
            if r.user_id == user_id and (status is None or r.status == status)
        ]

    async def get_preferences(self, user_id: str) -> Optional[UserPreferences]:
        return self.preferences.get(user_id)

    async def upsert_preferences(self, preferences: UserPreferences) -> UserPreferences:
        self.preferences[preferences.user_id] = preferences
        return preferences

    async def insert_notification_rule(self, rule: NotificationRule) -> NotificationRule:
        self.notification_rules[rule.id] = rule
        return rule

    async def list_notification_rules(
        self, user_id: str, enabled_only: bool = True
    ) -> list[NotificationRule]:
        return [
            r
            for r in self.notification_rules.values()
            if r.user_id == user_id and (r.enabled or not enabled_only)
        ]

    async def enqueue_notification(self, notification: ScheduledNotification) -> None:
        self.scheduled[notification.id] = notification

    async def claim_due_notifications(
        self, now: datetime, limit: int, lease_seconds: int
    ) -> list[ScheduledNotification]:
        due = sorted(
            (
                n
                for n in self.scheduled.values()
                if not n.sent
                and n.scheduled_for <= now
                and (n.id not in self._claims or self._claims[n.id] < now)
            ),
            key=lambda n: n.scheduled_for,
        )[:limit]
        for notification in due:
            self._claims[notification.id] = now + timedelta(seconds=lease_seconds)
        return due

    async def mark_notification_sent(self, notification_id: UUID, sent_at: datetime) -> None:
        notification = self.scheduled[notification_id]
        self.scheduled[notification_id] = notification.model_copy(
            update={"sent": True, "sent_at": sent_at}
        )
        self._claims.pop(notification_id, None)

    async def release_notification(self, notification_id: UUID, error: str) -> None:
        notification = self.scheduled[notification_id]
        self.scheduled[notification_id] = notification.model_copy(
            update={"attempts": notification.attempts + 1, "last_error": error}
        )
        self._claims.pop(notification_id, None)

    async def list_sent_notifications(
        self, user_id: str, since: datetime
    ) -> list[ScheduledNotification]:
        return [
            n
            for n in self.scheduled.values()
            if n.user_id == user_id and n.sent and n.sent_at is not None and n.sent_at >= since
        ]

    async def mark_notification_engaged(self, notification_id: UUID) -> bool:
        notification = self.scheduled.get(notification_id)
        if notification is None or not notification.sent:
            return False
        self.scheduled[notification_id] = notification.model_copy(update={"engaged": True})
        return True
