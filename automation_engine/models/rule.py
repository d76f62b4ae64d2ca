"""Automation and task routing rule models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class RuleStatus(str, Enum):
    """Automation rule status. Only active rules are matched."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"


class AutomationRule(BaseModel):
    """A persisted condition -> action mapping with trigger statistics."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    name: str
    description: str = ""
    signature: str
    pattern_id: Optional[UUID] = None
    trigger_conditions: Dict[str, Any] = Field(default_factory=dict)
    actions: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(ge=0.0, le=1.0)
    status: RuleStatus = RuleStatus.ACTIVE
    trigger_count: int = 0
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    last_triggered: Optional[datetime] = None
    created_at: datetime


class AppliedAction(BaseModel):
    """Outcome of executing one matched rule."""

    rule_id: UUID
    rule_name: str
    success: bool
    results: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class RoutingConditions(BaseModel):
    """When a routing rule applies. Unset fields are not checked."""

    keywords: Optional[list[str]] = None
    priority: Optional[str] = None
    project_id: Optional[str] = None
    task_type: Optional[str] = None


class RoutingTarget(BaseModel):
    """What a routing rule suggests."""

    assign_to: Optional[str] = None
    priority: Optional[str] = None
    labels: list[str] = Field(default_factory=list)
    estimated_hours: Optional[float] = None
    suggested_due_date: Optional[str] = None


class TaskRoutingRule(BaseModel):
    """Assignment rule learned from task history."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    name: str
    signature: str
    conditions: RoutingConditions = Field(default_factory=RoutingConditions)
    routing: RoutingTarget = Field(default_factory=RoutingTarget)
    confidence: float = Field(ge=0.0, le=1.0)
    status: RuleStatus = RuleStatus.ACTIVE
    created_at: datetime


class TaskRecord(BaseModel):
    """A task row as read from the surrounding application's store."""

    id: str
    title: str
    description: str = ""
    priority: Optional[str] = None
    assigned_to: Optional[str] = None
    status: Optional[str] = None
    project_id: Optional[str] = None
    task_type: Optional[str] = None
    created_at: datetime


class TaskRouteRequest(BaseModel):
    """A new task to be routed."""

    title: str
    description: str = ""
    project_id: Optional[str] = None
    priority: Optional[str] = None
    task_type: Optional[str] = None


class RoutingSuggestion(BaseModel):
    assign_to: Optional[str] = None
    priority: Optional[str] = None
    labels: list[str] = Field(default_factory=list)
    estimated_hours: Optional[float] = None
    suggested_due_date: Optional[str] = None
    confidence: float
    rule_name: str


class RoutingResult(BaseModel):
    """Answer to a routing request; ``routed`` is False when no rule matched."""

    routed: bool
    suggestion: Optional[RoutingSuggestion] = None
    applied_rule_id: Optional[UUID] = None


class RoutingAnalysisResult(BaseModel):
    """Routing rules synthesized from task history."""

    user_id: str
    rules: list[TaskRoutingRule] = Field(default_factory=list)
    reason: Optional[str] = None
    task_count: int = 0
