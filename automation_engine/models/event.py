"""Behavior event models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

Scalar = Union[str, int, float, bool]

# A metadata value is a scalar or a nested map of metadata values.
MetadataValue = Union[Scalar, Dict[str, Any]]


def is_scalar(value: Any) -> bool:
    """True for the scalar variants of a metadata value."""
    return isinstance(value, (str, int, float, bool))


def validate_metadata(value: Dict[str, Any], path: str = "metadata") -> Dict[str, Any]:
    """Check that a map only holds scalars or nested maps of scalars.

    ``None`` entries are dropped; lists and other objects are rejected.
    """
    cleaned: Dict[str, Any] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ValueError(f"{path} keys must be strings, got {type(key).__name__}")
        if item is None:
            continue
        if is_scalar(item):
            cleaned[key] = item
        elif isinstance(item, dict):
            cleaned[key] = validate_metadata(item, f"{path}.{key}")
        else:
            raise ValueError(
                f"{path}.{key} must be a string, number, bool or map, got {type(item).__name__}"
            )
    return cleaned


class EventType(str, Enum):
    """Kinds of recorded user actions."""

    TASK_CREATED = "task_created"
    TASK_COMPLETED = "task_completed"
    TASK_UPDATED = "task_updated"
    TASK_ASSIGNED = "task_assigned"
    PRIORITY_SET = "priority_set"
    PROJECT_CREATED = "project_created"
    PROJECT_VIEWED = "project_viewed"
    SEARCH_PERFORMED = "search_performed"
    FILTER_APPLIED = "filter_applied"
    NOTIFICATION_CLICKED = "notification_clicked"
    TIME_LOGGED = "time_logged"
    FEATURE_USED = "feature_used"


class EntityType(str, Enum):
    """Kinds of entity an event can reference."""

    TASK = "task"
    PROJECT = "project"
    USER = "user"
    NOTIFICATION = "notification"


class BehaviorEvent(BaseModel):
    """One recorded user action. Immutable once stored."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    event_type: EventType
    entity_id: Optional[str] = None
    entity_type: Optional[EntityType] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    session_id: Optional[str] = None
    device_info: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", "device_info")
    @classmethod
    def check_metadata(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_metadata(v)
