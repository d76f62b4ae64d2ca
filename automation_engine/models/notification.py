"""Notification gating and scheduling models."""

from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from automation_engine.models.event import validate_metadata


class NotificationType(str, Enum):
    """Notification kinds raised by the surrounding application."""

    TASK_DUE = "task_due"
    PROJECT_MILESTONE = "project_milestone"
    TEAM_UPDATE = "team_update"
    AI_INSIGHT = "ai_insight"
    SYSTEM_ALERT = "system_alert"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_RANK = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.URGENT: 4,
}


class Channel(str, Enum):
    """Delivery channels."""

    EMAIL = "email"
    PUSH = "push"
    IN_APP = "in_app"


class Frequency(str, Enum):
    """How often a user wants non-urgent notifications delivered."""

    IMMEDIATE = "immediate"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class QuietHours(BaseModel):
    start: time = time(22, 0)
    end: time = time(8, 0)
    timezone: str = "UTC"


class WorkingHours(BaseModel):
    start: time = time(9, 0)
    end: time = time(17, 0)


class CategoryFilters(BaseModel):
    """Per-category on/off switches."""

    task_reminders: bool = True
    project_updates: bool = True
    team_notifications: bool = True
    ai_insights: bool = True
    system_alerts: bool = True


CATEGORY_FOR_TYPE = {
    NotificationType.TASK_DUE: "task_reminders",
    NotificationType.PROJECT_MILESTONE: "project_updates",
    NotificationType.TEAM_UPDATE: "team_notifications",
    NotificationType.AI_INSIGHT: "ai_insights",
    NotificationType.SYSTEM_ALERT: "system_alerts",
}


class UserPreferences(BaseModel):
    """Per-user notification settings. Weekdays use 0 = Sunday."""

    user_id: str
    enabled_channels: list[Channel] = Field(default_factory=lambda: [Channel.IN_APP])
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    priority_threshold: Priority = Priority.MEDIUM
    category_filters: CategoryFilters = Field(default_factory=CategoryFilters)
    frequency: Frequency = Frequency.IMMEDIATE
    working_days: set[int] = Field(default_factory=lambda: {1, 2, 3, 4, 5})
    working_hours: WorkingHours = Field(default_factory=WorkingHours)

    @field_validator("working_days")
    @classmethod
    def check_working_days(cls, v: set[int]) -> set[int]:
        for day in v:
            if not 0 <= day <= 6:
                raise ValueError("working_days must be between 0 (Sunday) and 6 (Saturday)")
        return v


class NotificationContext(BaseModel):
    """A notification event to be gated. Transient."""

    user_id: str
    type: NotificationType
    priority: Priority
    content: str
    project_id: Optional[str] = None
    task_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    @field_validator("metadata")
    @classmethod
    def check_metadata(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_metadata(v)


class NotificationRuleConditions(BaseModel):
    """All set conditions must hold for the rule to apply."""

    project_ids: Optional[list[str]] = None
    task_types: Optional[list[str]] = None
    priorities: Optional[list[Priority]] = None
    keywords: Optional[list[str]] = None


class NotificationRuleActions(BaseModel):
    channels: list[Channel] = Field(default_factory=list)
    custom_message: Optional[str] = None


class NotificationRule(BaseModel):
    """User-defined routing for notifications."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    name: str
    conditions: NotificationRuleConditions = Field(default_factory=NotificationRuleConditions)
    actions: NotificationRuleActions = Field(default_factory=NotificationRuleActions)
    enabled: bool = True
    created_at: Optional[datetime] = None


class UserRuntimeContext(BaseModel):
    """Snapshot of the user's situation handed to the AI oracle."""

    current_activity: Optional[str] = None
    within_working_hours: bool
    recent_notifications: int = 0
    preferences: UserPreferences


class AINotificationAnalysis(BaseModel):
    """The AI oracle's delivery recommendation."""

    should_deliver: bool
    recommended_channels: Optional[list[Channel]] = None
    enhanced_content: Optional[str] = None
    priority: Optional[Priority] = None
    reasoning: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class GateStage(str, Enum):
    """States a notification passes through in the gate."""

    RECEIVED = "received"
    BASIC_FILTERED = "basic_filtered"
    RULE_EVALUATED = "rule_evaluated"
    AI_EVALUATED = "ai_evaluated"
    SCHEDULED = "scheduled"
    SUPPRESSED = "suppressed"


class ProcessedNotification(BaseModel):
    """Gate output, handed to delivery. Never persisted as-is."""

    id: UUID = Field(default_factory=uuid4)
    original_context: NotificationContext
    should_send: bool
    channels: list[Channel] = Field(default_factory=lambda: [Channel.IN_APP])
    processed_content: str
    scheduled_for: datetime
    reasoning: str
    ai_enhanced: bool = False
    stage: GateStage
    fallback_reason: Optional[str] = None
    applied_rule_ids: list[UUID] = Field(default_factory=list)


class ScheduledNotification(BaseModel):
    """A queued delivery."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    type: NotificationType
    priority: Priority
    content: str
    channels: list[Channel]
    scheduled_for: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)
    sent: bool = False
    sent_at: Optional[datetime] = None
    attempts: int = 0
    last_error: Optional[str] = None
    engaged: bool = False
    created_at: datetime


class NotificationAnalytics(BaseModel):
    total_sent: int = 0
    by_channel: Dict[str, int] = Field(default_factory=dict)
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_priority: Dict[str, int] = Field(default_factory=dict)
    engagement_rate: float = 0.0
    optimal_times: list[str] = Field(default_factory=list)
