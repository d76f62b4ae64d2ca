"""AI augmentation gateway: optional oracle for patterns and notification triage."""

import asyncio
import json
from typing import Any, Awaitable, Optional, Protocol, TypeVar

import structlog
from openai import AsyncOpenAI
from pydantic import ValidationError

from automation_engine.config import Settings, get_settings
from automation_engine.errors import CollaboratorError, CollaboratorTimeout
from automation_engine.models.event import BehaviorEvent
from automation_engine.models.notification import (
    AINotificationAnalysis,
    NotificationContext,
    UserRuntimeContext,
)
from automation_engine.models.pattern import AIPatternSuggestion

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Cap on events sent to the model in one request
MAX_PROMPT_EVENTS = 200

WORKFLOW_PATTERN_PROMPT = """\
You analyze user actions in a task-management application to find workflow \
patterns that could be automated, such as repetitive task assignments, \
consistent priority settings, regular status updates, predictable due dates \
and common project structures.

Respond with a JSON object {"patterns": [...]} where each item has:
- pattern: description of the identified pattern
- frequency: how often this pattern occurs (0-1)
- automation_potential: how suitable it is for automation (0-1)
- suggested_rule: proposed automation rule
- confidence: confidence in the pattern (0-1)
- pattern_type (optional): "temporal", "sequence" or "context"
- conditions (optional): map of event fields that must match
- actions (optional): map describing what the rule does

Only include patterns with frequency > 0.3 and automation_potential > 0.5."""

NOTIFICATION_PROMPT = """\
You decide whether a notification should be delivered to a user right now.
Consider the notification priority, what the user is doing, whether they are \
within working hours, how many notifications they received recently and \
their preferences. Urgent items should almost always be delivered.

Respond with a JSON object with:
- should_deliver: boolean
- recommended_channels (optional): subset of ["email", "push", "in_app"]
- enhanced_content (optional): a clearer rewrite of the message
- priority (optional): "low", "medium", "high" or "urgent"
- reasoning: short explanation
- confidence: confidence in the decision (0-1)"""


async def call_with_timeout(coro: Awaitable[T], timeout: float, operation: str) -> T:
    """Await a gateway call with a hard deadline.

    Expiry raises ``CollaboratorTimeout``; any other failure is wrapped in
    ``CollaboratorError``.
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning("ai_gateway_timeout", operation=operation, timeout_seconds=timeout)
        raise CollaboratorTimeout(f"{operation} timed out after {timeout}s") from e
    except CollaboratorError:
        raise
    except Exception as e:
        logger.warning(
            "ai_gateway_failed",
            operation=operation,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise CollaboratorError(f"{operation} failed: {e}") from e


class AIGateway(Protocol):
    """Best-effort oracle. Implementations may raise ``CollaboratorError``."""

    async def analyze_workflow_patterns(
        self, events: list[BehaviorEvent]
    ) -> list[AIPatternSuggestion]: ...

    async def analyze_notification_context(
        self, context: NotificationContext, runtime: UserRuntimeContext
    ) -> AINotificationAnalysis: ...


class NullAIGateway:
    """Gateway that never suggests anything and always defers to delivery."""

    async def analyze_workflow_patterns(
        self, events: list[BehaviorEvent]
    ) -> list[AIPatternSuggestion]:
        return []

    async def analyze_notification_context(
        self, context: NotificationContext, runtime: UserRuntimeContext
    ) -> AINotificationAnalysis:
        return AINotificationAnalysis(
            should_deliver=True,
            reasoning="No AI analysis configured",
            confidence=0.0,
        )


class OpenAIGateway:
    """Gateway backed by OpenAI chat completions in JSON mode."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        """Lazy-load OpenAI client."""
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.settings.openai_api_key)
        return self._client

    async def _complete_json(self, system_prompt: str, user_content: str) -> dict[str, Any]:
        response = await self.client.chat.completions.create(
            model=self.settings.openai_model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            response_format={"type": "json_object"},
            temperature=0.2,
        )
        content = response.choices[0].message.content
        if not content:
            raise CollaboratorError("empty response from model")
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise CollaboratorError(f"response is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise CollaboratorError("response is not a JSON object")
        return data

    async def analyze_workflow_patterns(
        self, events: list[BehaviorEvent]
    ) -> list[AIPatternSuggestion]:
        recent = events[-MAX_PROMPT_EVENTS:]
        actions = [
            {
                "action": event.event_type.value,
                "timestamp": event.timestamp.isoformat(),
                "context": event.metadata,
            }
            for event in recent
        ]
        data = await call_with_timeout(
            self._complete_json(WORKFLOW_PATTERN_PROMPT, json.dumps(actions, default=str)),
            self.settings.ai_timeout_seconds,
            "analyze_workflow_patterns",
        )

        items = data.get("patterns", [])
        if not isinstance(items, list):
            raise CollaboratorError("'patterns' is not a list")

        suggestions = []
        for item in items:
            try:
                suggestions.append(AIPatternSuggestion.model_validate(item))
            except ValidationError as e:
                logger.warning("ai_pattern_suggestion_invalid", error=str(e))

        logger.info(
            "ai_workflow_patterns_received",
            event_count=len(recent),
            suggestion_count=len(suggestions),
        )
        return suggestions

    async def analyze_notification_context(
        self, context: NotificationContext, runtime: UserRuntimeContext
    ) -> AINotificationAnalysis:
        payload = {
            "type": context.type.value,
            "priority": context.priority.value,
            "message": context.content,
            "user_context": {
                "current_activity": runtime.current_activity,
                "within_working_hours": runtime.within_working_hours,
                "recent_notifications": runtime.recent_notifications,
                "enabled_channels": [c.value for c in runtime.preferences.enabled_channels],
                "frequency": runtime.preferences.frequency.value,
            },
        }
        data = await call_with_timeout(
            self._complete_json(NOTIFICATION_PROMPT, json.dumps(payload)),
            self.settings.ai_timeout_seconds,
            "analyze_notification_context",
        )
        try:
            return AINotificationAnalysis.model_validate(data)
        except ValidationError as e:
            raise CollaboratorError(f"malformed notification analysis: {e}") from e
