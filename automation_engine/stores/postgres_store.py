"""PostgreSQL implementation of the engine store."""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Optional
from uuid import UUID

import asyncpg
import structlog

from automation_engine.errors import PersistenceError
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

logger = structlog.get_logger(__name__)

_PATTERN_COLUMNS = """
    id, user_id, pattern_type, source, description, frequency, confidence,
    automation_potential, suggested_rule, conditions, actions, status,
    created_at, last_seen_at
"""

_RULE_COLUMNS = """
    id, user_id, name, description, signature, pattern_id, trigger_conditions,
    actions, confidence, status, trigger_count, success_rate, last_triggered, created_at
"""

_ROUTING_COLUMNS = "id, user_id, name, signature, conditions, routing, confidence, status, created_at"

_SCHEDULED_COLUMNS = """
    id, user_id, type, priority, content, channels, scheduled_for, metadata,
    sent, sent_at, attempts, last_error, engaged, created_at
"""


def _load_json(value: Any) -> Any:
    """asyncpg returns jsonb as text unless a codec is registered."""
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_event(row) -> BehaviorEvent:
    return BehaviorEvent(
        id=row["id"],
        user_id=row["user_id"],
        event_type=row["event_type"],
        entity_id=row["entity_id"],
        entity_type=row["entity_type"],
        metadata=_load_json(row["metadata"]) or {},
        device_info=_load_json(row["device_info"]) or {},
        session_id=row["session_id"],
        timestamp=row["timestamp"],
    )


def _row_to_pattern(row) -> WorkflowPattern:
    data = dict(row)
    data["conditions"] = _load_json(data["conditions"]) or {}
    data["actions"] = _load_json(data["actions"]) or {}
    return WorkflowPattern(**data)


def _row_to_rule(row) -> AutomationRule:
    data = dict(row)
    data["trigger_conditions"] = _load_json(data["trigger_conditions"]) or {}
    data["actions"] = _load_json(data["actions"]) or {}
    return AutomationRule(**data)


def _row_to_routing_rule(row) -> TaskRoutingRule:
    data = dict(row)
    data["conditions"] = _load_json(data["conditions"]) or {}
    data["routing"] = _load_json(data["routing"]) or {}
    return TaskRoutingRule(**data)


def _row_to_scheduled(row) -> ScheduledNotification:
    data = dict(row)
    data["channels"] = _load_json(data["channels"]) or []
    data["metadata"] = _load_json(data["metadata"]) or {}
    return ScheduledNotification(**data)


class PostgresStore:
    """``EngineStore`` backed by an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[asyncpg.Connection]:
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            logger.error("store_operation_failed", operation=operation, error=str(e))
            raise PersistenceError(f"{operation} failed: {e}") from e

    # Behavior events

    async def append_event(self, event: BehaviorEvent) -> None:
        async with self._connection("append_event") as conn:
            await conn.execute(
                """
                INSERT INTO behavior_events
                    (id, user_id, event_type, entity_id, entity_type, metadata,
                     device_info, session_id, timestamp)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                event.id,
                event.user_id,
                event.event_type.value,
                event.entity_id,
                event.entity_type.value if event.entity_type else None,
                json.dumps(event.metadata),
                json.dumps(event.device_info),
                event.session_id,
                event.timestamp,
            )

    async def list_events(
        self, user_id: str, since: datetime, limit: int = 1000
    ) -> list[BehaviorEvent]:
        # Newest `limit` events, returned oldest first.
        async with self._connection("list_events") as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM (
                    SELECT id, user_id, event_type, entity_id, entity_type, metadata,
                           device_info, session_id, timestamp
                    FROM behavior_events
                    WHERE user_id = $1 AND timestamp >= $2
                    ORDER BY timestamp DESC
                    LIMIT $3
                ) recent
                ORDER BY timestamp ASC
                """,
                user_id,
                since,
                limit,
            )
        return [_row_to_event(row) for row in rows]

    async def count_events(self, user_id: str, since: datetime) -> int:
        async with self._connection("count_events") as conn:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM behavior_events WHERE user_id = $1 AND timestamp >= $2",
                user_id,
                since,
            )
        return count or 0

    # Patterns

    async def save_pattern(self, pattern: WorkflowPattern) -> None:
        async with self._connection("save_pattern") as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE workflow_patterns
                    SET status = 'inactive'
                    WHERE user_id = $1 AND signature = $2 AND status IN ('active', 'applied')
                    """,
                    pattern.user_id,
                    pattern.signature,
                )
                await conn.execute(
                    """
                    INSERT INTO workflow_patterns
                        (id, user_id, pattern_type, source, description, frequency,
                         confidence, automation_potential, suggested_rule, conditions,
                         actions, status, signature, created_at, last_seen_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                    """,
                    pattern.id,
                    pattern.user_id,
                    pattern.pattern_type.value,
                    pattern.source.value,
                    pattern.description,
                    pattern.frequency,
                    pattern.confidence,
                    pattern.automation_potential,
                    pattern.suggested_rule,
                    json.dumps(pattern.conditions),
                    json.dumps(pattern.actions),
                    pattern.status.value,
                    pattern.signature,
                    pattern.created_at,
                    pattern.last_seen_at,
                )

    async def list_patterns(
        self, user_id: str, status: Optional[PatternStatus] = None
    ) -> list[WorkflowPattern]:
        async with self._connection("list_patterns") as conn:
            if status is None:
                rows = await conn.fetch(
                    f"SELECT {_PATTERN_COLUMNS} FROM workflow_patterns WHERE user_id = $1 "
                    "ORDER BY created_at DESC",
                    user_id,
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_PATTERN_COLUMNS} FROM workflow_patterns "
                    "WHERE user_id = $1 AND status = $2 ORDER BY created_at DESC",
                    user_id,
                    status.value,
                )
        return [_row_to_pattern(row) for row in rows]

    async def set_pattern_status(self, pattern_id: UUID, status: PatternStatus) -> None:
        async with self._connection("set_pattern_status") as conn:
            await conn.execute(
                "UPDATE workflow_patterns SET status = $1 WHERE id = $2",
                status.value,
                pattern_id,
            )

    # Automation rules

    async def upsert_automation_rule(
        self, rule: AutomationRule
    ) -> tuple[AutomationRule, bool]:
        async with self._connection("upsert_automation_rule") as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO automation_rules
                    (id, user_id, name, description, signature, pattern_id,
                     trigger_conditions, actions, confidence, status, trigger_count,
                     success_rate, last_triggered, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                ON CONFLICT (user_id, signature) DO NOTHING
                RETURNING {_RULE_COLUMNS}
                """,
                rule.id,
                rule.user_id,
                rule.name,
                rule.description,
                rule.signature,
                rule.pattern_id,
                json.dumps(rule.trigger_conditions),
                json.dumps(rule.actions),
                rule.confidence,
                rule.status.value,
                rule.trigger_count,
                rule.success_rate,
                rule.last_triggered,
                rule.created_at,
            )
            if row is not None:
                return _row_to_rule(row), True

            existing = await conn.fetchrow(
                f"SELECT {_RULE_COLUMNS} FROM automation_rules WHERE user_id = $1 AND signature = $2",
                rule.user_id,
                rule.signature,
            )
        return _row_to_rule(existing), False

    async def list_automation_rules(
        self, user_id: str, status: Optional[RuleStatus] = None
    ) -> list[AutomationRule]:
        async with self._connection("list_automation_rules") as conn:
            if status is None:
                rows = await conn.fetch(
                    f"SELECT {_RULE_COLUMNS} FROM automation_rules WHERE user_id = $1 "
                    "ORDER BY created_at ASC",
                    user_id,
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_RULE_COLUMNS} FROM automation_rules "
                    "WHERE user_id = $1 AND status = $2 ORDER BY created_at ASC",
                    user_id,
                    status.value,
                )
        return [_row_to_rule(row) for row in rows]

    async def update_rule_statistics(
        self,
        rule_id: UUID,
        trigger_count: int,
        success_rate: float,
        last_triggered: datetime,
    ) -> None:
        async with self._connection("update_rule_statistics") as conn:
            await conn.execute(
                """
                UPDATE automation_rules
                SET trigger_count = $1, success_rate = $2, last_triggered = $3
                WHERE id = $4
                """,
                trigger_count,
                success_rate,
                last_triggered,
                rule_id,
            )

    async def set_automation_rule_status(
        self, user_id: str, rule_id: UUID, status: RuleStatus
    ) -> Optional[AutomationRule]:
        async with self._connection("set_automation_rule_status") as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE automation_rules
                SET status = $1
                WHERE id = $2 AND user_id = $3
                RETURNING {_RULE_COLUMNS}
                """,
                status.value,
                rule_id,
                user_id,
            )
        return _row_to_rule(row) if row is not None else None

    # Task routing

    async def list_recent_tasks(
        self, user_id: str, since: datetime, limit: int = 100
    ) -> list[TaskRecord]:
        async with self._connection("list_recent_tasks") as conn:
            rows = await conn.fetch(
                """
                SELECT id::text AS id, title, COALESCE(description, '') AS description,
                       priority, assigned_to::text AS assigned_to, status,
                       project_id::text AS project_id, task_type, created_at
                FROM tasks
                WHERE created_by::text = $1 AND created_at >= $2
                ORDER BY created_at DESC
                LIMIT $3
                """,
                user_id,
                since,
                limit,
            )
        return [TaskRecord(**dict(row)) for row in rows]

    async def upsert_task_routing_rule(
        self, rule: TaskRoutingRule
    ) -> tuple[TaskRoutingRule, bool]:
        async with self._connection("upsert_task_routing_rule") as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO task_routing_rules
                    (id, user_id, name, signature, conditions, routing, confidence,
                     status, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (user_id, signature) DO UPDATE SET
                    confidence = EXCLUDED.confidence
                RETURNING {_ROUTING_COLUMNS}, (xmax = 0) AS inserted
                """,
                rule.id,
                rule.user_id,
                rule.name,
                rule.signature,
                rule.conditions.model_dump_json(),
                rule.routing.model_dump_json(),
                rule.confidence,
                rule.status.value,
                rule.created_at,
            )
        data = dict(row)
        inserted = bool(data.pop("inserted"))
        return _row_to_routing_rule(data), inserted

    async def list_task_routing_rules(
        self, user_id: str, status: Optional[RuleStatus] = None
    ) -> list[TaskRoutingRule]:
        async with self._connection("list_task_routing_rules") as conn:
            if status is None:
                rows = await conn.fetch(
                    f"SELECT {_ROUTING_COLUMNS} FROM task_routing_rules WHERE user_id = $1",
                    user_id,
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_ROUTING_COLUMNS} FROM task_routing_rules "
                    "WHERE user_id = $1 AND status = $2",
                    user_id,
                    status.value,
                )
        return [_row_to_routing_rule(row) for row in rows]

    # Notification preferences and rules

    async def get_preferences(self, user_id: str) -> Optional[UserPreferences]:
        async with self._connection("get_preferences") as conn:
            row = await conn.fetchrow(
                """
                SELECT user_id, enabled_channels, quiet_hours, priority_threshold,
                       category_filters, frequency, working_days, working_hours
                FROM user_notification_preferences
                WHERE user_id = $1
                """,
                user_id,
            )

        if row is None:
            return None

        return UserPreferences(
            user_id=row["user_id"],
            enabled_channels=_load_json(row["enabled_channels"]),
            quiet_hours=_load_json(row["quiet_hours"]),
            priority_threshold=row["priority_threshold"],
            category_filters=_load_json(row["category_filters"]),
            frequency=row["frequency"],
            working_days=set(_load_json(row["working_days"])),
            working_hours=_load_json(row["working_hours"]),
        )

    async def upsert_preferences(self, preferences: UserPreferences) -> UserPreferences:
        data = preferences.model_dump(mode="json")
        async with self._connection("upsert_preferences") as conn:
            await conn.execute(
                """
                INSERT INTO user_notification_preferences
                    (user_id, enabled_channels, quiet_hours, priority_threshold,
                     category_filters, frequency, working_days, working_hours, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, NOW())
                ON CONFLICT (user_id) DO UPDATE SET
                    enabled_channels = EXCLUDED.enabled_channels,
                    quiet_hours = EXCLUDED.quiet_hours,
                    priority_threshold = EXCLUDED.priority_threshold,
                    category_filters = EXCLUDED.category_filters,
                    frequency = EXCLUDED.frequency,
                    working_days = EXCLUDED.working_days,
                    working_hours = EXCLUDED.working_hours,
                    updated_at = EXCLUDED.updated_at
                """,
                preferences.user_id,
                json.dumps(data["enabled_channels"]),
                json.dumps(data["quiet_hours"]),
                data["priority_threshold"],
                json.dumps(data["category_filters"]),
                data["frequency"],
                json.dumps(sorted(data["working_days"])),
                json.dumps(data["working_hours"]),
            )
        return preferences

    async def insert_notification_rule(self, rule: NotificationRule) -> NotificationRule:
        async with self._connection("insert_notification_rule") as conn:
            created_at = await conn.fetchval(
                """
                INSERT INTO notification_rules (id, user_id, name, conditions, actions, enabled)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING created_at
                """,
                rule.id,
                rule.user_id,
                rule.name,
                rule.conditions.model_dump_json(),
                rule.actions.model_dump_json(),
                rule.enabled,
            )
        return rule.model_copy(update={"created_at": created_at})

    async def list_notification_rules(
        self, user_id: str, enabled_only: bool = True
    ) -> list[NotificationRule]:
        query = """
            SELECT id, user_id, name, conditions, actions, enabled, created_at
            FROM notification_rules
            WHERE user_id = $1
        """
        if enabled_only:
            query += " AND enabled = TRUE"

        async with self._connection("list_notification_rules") as conn:
            rows = await conn.fetch(query, user_id)

        return [
            NotificationRule(
                id=row["id"],
                user_id=row["user_id"],
                name=row["name"],
                conditions=_load_json(row["conditions"]) or {},
                actions=_load_json(row["actions"]) or {},
                enabled=row["enabled"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # Scheduled notification queue

    async def enqueue_notification(self, notification: ScheduledNotification) -> None:
        async with self._connection("enqueue_notification") as conn:
            await conn.execute(
                """
                INSERT INTO scheduled_notifications
                    (id, user_id, type, priority, content, channels, scheduled_for,
                     metadata, sent, attempts, engaged, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, FALSE, 0, FALSE, $9)
                """,
                notification.id,
                notification.user_id,
                notification.type.value,
                notification.priority.value,
                notification.content,
                json.dumps([c.value for c in notification.channels]),
                notification.scheduled_for,
                json.dumps(notification.metadata, default=str),
                notification.created_at,
            )

    async def claim_due_notifications(
        self, now: datetime, limit: int, lease_seconds: int
    ) -> list[ScheduledNotification]:
        async with self._connection("claim_due_notifications") as conn:
            rows = await conn.fetch(
                f"""
                UPDATE scheduled_notifications
                SET claimed_until = $2
                WHERE id IN (
                    SELECT id FROM scheduled_notifications
                    WHERE sent = FALSE
                      AND scheduled_for <= $1
                      AND (claimed_until IS NULL OR claimed_until < $1)
                    ORDER BY scheduled_for ASC
                    LIMIT $3
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING {_SCHEDULED_COLUMNS}
                """,
                now,
                now + timedelta(seconds=lease_seconds),
                limit,
            )
        claimed = [_row_to_scheduled(row) for row in rows]
        claimed.sort(key=lambda n: n.scheduled_for)
        return claimed

    async def mark_notification_sent(self, notification_id: UUID, sent_at: datetime) -> None:
        async with self._connection("mark_notification_sent") as conn:
            await conn.execute(
                """
                UPDATE scheduled_notifications
                SET sent = TRUE, sent_at = $1, claimed_until = NULL
                WHERE id = $2
                """,
                sent_at,
                notification_id,
            )

    async def release_notification(self, notification_id: UUID, error: str) -> None:
        async with self._connection("release_notification") as conn:
            await conn.execute(
                """
                UPDATE scheduled_notifications
                SET attempts = attempts + 1, last_error = $1, claimed_until = NULL
                WHERE id = $2
                """,
                error,
                notification_id,
            )

    async def list_sent_notifications(
        self, user_id: str, since: datetime
    ) -> list[ScheduledNotification]:
        async with self._connection("list_sent_notifications") as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_SCHEDULED_COLUMNS}
                FROM scheduled_notifications
                WHERE user_id = $1 AND sent = TRUE AND sent_at >= $2
                ORDER BY sent_at DESC
                """,
                user_id,
                since,
            )
        return [_row_to_scheduled(row) for row in rows]

    async def mark_notification_engaged(self, notification_id: UUID) -> bool:
        async with self._connection("mark_notification_engaged") as conn:
            result = await conn.execute(
                "UPDATE scheduled_notifications SET engaged = TRUE WHERE id = $1 AND sent = TRUE",
                notification_id,
            )
        return result == "UPDATE 1"
