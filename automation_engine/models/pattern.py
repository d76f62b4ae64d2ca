"""Workflow pattern models."""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class PatternType(str, Enum):
    """Kinds of statistically recurring behavior."""

    TEMPORAL = "temporal"
    SEQUENCE = "sequence"
    CONTEXT = "context"


class PatternStatus(str, Enum):
    """Lifecycle of a stored pattern."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    APPLIED = "applied"


class PatternSource(str, Enum):
    """Who proposed the pattern."""

    LOCAL = "local"
    AI = "ai"


def condition_signature(
    pattern_type: PatternType | str,
    conditions: Dict[str, Any],
    description: str = "",
) -> str:
    """Stable key for a pattern or rule: hash of its type and conditions.

    Patterns without conditions (typically oracle suggestions) are keyed by
    their normalized description instead, so distinct suggestions do not
    collapse into one.
    """
    kind = pattern_type.value if isinstance(pattern_type, PatternType) else str(pattern_type)
    payload: Dict[str, Any] = {"type": kind, "conditions": conditions}
    if not conditions:
        payload["description"] = " ".join(description.lower().split())
    encoded = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()


class PatternCandidate(BaseModel):
    """Output of a single sub-detector before scoring."""

    pattern_type: PatternType
    description: str
    frequency: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    suggested_rule: str = ""
    conditions: Dict[str, Any] = Field(default_factory=dict)
    actions: Dict[str, Any] = Field(default_factory=dict)


class WorkflowPattern(BaseModel):
    """A scored pattern. Superseded, never edited, on re-analysis."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    pattern_type: PatternType
    source: PatternSource = PatternSource.LOCAL
    description: str
    frequency: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    automation_potential: float = Field(ge=0.0, le=1.0)
    suggested_rule: str = ""
    conditions: Dict[str, Any] = Field(default_factory=dict)
    actions: Dict[str, Any] = Field(default_factory=dict)
    status: PatternStatus = PatternStatus.ACTIVE
    created_at: datetime
    last_seen_at: datetime

    @property
    def signature(self) -> str:
        return condition_signature(self.pattern_type, self.conditions, self.description)


class AIPatternSuggestion(BaseModel):
    """A pattern proposed by the AI oracle."""

    pattern: str
    frequency: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    automation_potential: float = Field(ge=0.0, le=1.0)
    suggested_rule: str = ""
    pattern_type: Optional[PatternType] = None
    conditions: Dict[str, Any] = Field(default_factory=dict)
    actions: Dict[str, Any] = Field(default_factory=dict)


class AnalysisResult(BaseModel):
    """Result of analyzing one user's behavior window."""

    user_id: str
    patterns: list[WorkflowPattern] = Field(default_factory=list)
    reason: Optional[str] = None
    event_count: int = 0
    automation_opportunities: int = 0
    ai_augmented: bool = False


class WorkflowOptimization(BaseModel):
    """A suggestion derived from a user's active patterns."""

    type: str
    title: str
    description: str
    impact: float
    patterns: list[str] = Field(default_factory=list)
