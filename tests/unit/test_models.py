"""Unit tests for engine models."""

from datetime import datetime, time, timezone

import pytest
from pydantic import ValidationError

from automation_engine.models.event import BehaviorEvent, EventType
from automation_engine.models.notification import (
    CATEGORY_FOR_TYPE,
    Channel,
    Frequency,
    NotificationContext,
    NotificationType,
    Priority,
    UserPreferences,
)
from automation_engine.models.pattern import PatternType, WorkflowPattern, condition_signature

NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


class TestBehaviorEvent:
    def test_accepts_scalar_and_nested_metadata(self):
        event = BehaviorEvent(
            user_id="user-1",
            event_type=EventType.TASK_CREATED,
            timestamp=NOW,
            metadata={"priority": "high", "estimate": 3, "billable": True, "extra": {"a": 1.5}},
        )
        assert event.metadata["extra"] == {"a": 1.5}

    def test_drops_none_metadata_values(self):
        event = BehaviorEvent(
            user_id="user-1",
            event_type="task_created",
            timestamp=NOW,
            metadata={"priority": None, "project": "alpha"},
        )
        assert event.metadata == {"project": "alpha"}

    def test_rejects_list_metadata(self):
        with pytest.raises(ValidationError):
            BehaviorEvent(
                user_id="user-1",
                event_type=EventType.TASK_CREATED,
                timestamp=NOW,
                metadata={"tags": ["a", "b"]},
            )

    def test_rejects_unknown_event_type(self):
        with pytest.raises(ValidationError):
            BehaviorEvent(user_id="user-1", event_type="made_coffee", timestamp=NOW)

    def test_is_immutable(self):
        event = BehaviorEvent(user_id="user-1", event_type=EventType.TASK_CREATED, timestamp=NOW)
        with pytest.raises(ValidationError):
            event.user_id = "user-2"


class TestConditionSignature:
    def test_key_order_does_not_matter(self):
        a = condition_signature(PatternType.TEMPORAL, {"day_of_week": 1, "hour_block": 8})
        b = condition_signature(PatternType.TEMPORAL, {"hour_block": 8, "day_of_week": 1})
        assert a == b

    def test_type_is_part_of_signature(self):
        conditions = {"event_type": "task_created"}
        assert condition_signature(PatternType.SEQUENCE, conditions) != condition_signature(
            PatternType.CONTEXT, conditions
        )

    def test_description_only_used_without_conditions(self):
        with_conditions = condition_signature(PatternType.CONTEXT, {"project": "alpha"}, "one")
        assert with_conditions == condition_signature(PatternType.CONTEXT, {"project": "alpha"}, "two")

        assert condition_signature(PatternType.CONTEXT, {}, "Assigns  Bugs to Bob") == (
            condition_signature(PatternType.CONTEXT, {}, "assigns bugs to bob")
        )
        assert condition_signature(PatternType.CONTEXT, {}, "one") != condition_signature(
            PatternType.CONTEXT, {}, "two"
        )

    def test_pattern_signature_property(self):
        pattern = WorkflowPattern(
            user_id="user-1",
            pattern_type=PatternType.SEQUENCE,
            description="x",
            frequency=0.5,
            confidence=0.9,
            automation_potential=0.8,
            conditions={"event_type": "task_created"},
            created_at=NOW,
            last_seen_at=NOW,
        )
        assert pattern.signature == condition_signature(
            PatternType.SEQUENCE, {"event_type": "task_created"}
        )

    def test_frequency_bounds_enforced(self):
        with pytest.raises(ValidationError):
            WorkflowPattern(
                user_id="user-1",
                pattern_type=PatternType.CONTEXT,
                description="x",
                frequency=1.2,
                confidence=0.5,
                automation_potential=0.5,
                created_at=NOW,
                last_seen_at=NOW,
            )


class TestUserPreferences:
    def test_defaults(self):
        prefs = UserPreferences(user_id="user-1")
        assert prefs.enabled_channels == [Channel.IN_APP]
        assert prefs.quiet_hours.start == time(22, 0)
        assert prefs.quiet_hours.end == time(8, 0)
        assert prefs.quiet_hours.timezone == "UTC"
        assert prefs.priority_threshold == Priority.MEDIUM
        assert prefs.frequency == Frequency.IMMEDIATE
        assert prefs.working_days == {1, 2, 3, 4, 5}
        assert prefs.working_hours.start == time(9, 0)
        assert prefs.working_hours.end == time(17, 0)

    def test_parses_time_strings(self):
        prefs = UserPreferences.model_validate(
            {"user_id": "user-1", "quiet_hours": {"start": "23:15", "end": "06:45"}}
        )
        assert prefs.quiet_hours.start == time(23, 15)

    def test_rejects_invalid_working_day(self):
        with pytest.raises(ValidationError):
            UserPreferences(user_id="user-1", working_days={1, 7})

    def test_every_notification_type_has_a_category(self):
        prefs = UserPreferences(user_id="user-1")
        for notification_type in NotificationType:
            assert hasattr(prefs.category_filters, CATEGORY_FOR_TYPE[notification_type])


class TestNotificationContext:
    def test_rejects_list_metadata(self):
        with pytest.raises(ValidationError):
            NotificationContext(
                user_id="user-1",
                type=NotificationType.TASK_DUE,
                priority=Priority.HIGH,
                content="Due soon",
                metadata={"ids": [1, 2]},
                timestamp=NOW,
            )
