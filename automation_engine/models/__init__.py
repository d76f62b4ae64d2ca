"""Models package exports."""

from automation_engine.models.event import BehaviorEvent, EntityType, EventType
from automation_engine.models.notification import (
    Channel,
    Frequency,
    GateStage,
    NotificationContext,
    NotificationRule,
    NotificationType,
    Priority,
    ProcessedNotification,
    ScheduledNotification,
    UserPreferences,
)
from automation_engine.models.pattern import (
    AnalysisResult,
    PatternStatus,
    PatternType,
    WorkflowPattern,
)
from automation_engine.models.rule import (
    AutomationRule,
    RoutingResult,
    RuleStatus,
    TaskRoutingRule,
)

__all__ = [
    "AnalysisResult",
    "AutomationRule",
    "BehaviorEvent",
    "Channel",
    "EntityType",
    "EventType",
    "Frequency",
    "GateStage",
    "NotificationContext",
    "NotificationRule",
    "NotificationType",
    "PatternStatus",
    "PatternType",
    "Priority",
    "ProcessedNotification",
    "RoutingResult",
    "RuleStatus",
    "ScheduledNotification",
    "TaskRoutingRule",
    "UserPreferences",
    "WorkflowPattern",
]
