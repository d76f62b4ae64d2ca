"""Unit tests for the AI gateway."""

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from automation_engine.config import Settings
from automation_engine.errors import CollaboratorError, CollaboratorTimeout
from automation_engine.models.notification import (
    NotificationContext,
    NotificationType,
    Priority,
    UserPreferences,
    UserRuntimeContext,
)
from automation_engine.models.pattern import PatternType
from automation_engine.services.ai_gateway import (
    MAX_PROMPT_EVENTS,
    NullAIGateway,
    OpenAIGateway,
    call_with_timeout,
)

NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def completion(content):
    """Shape of an OpenAI chat completion response."""
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


@pytest.fixture
def gateway():
    settings = Settings(_env_file=None, openai_api_key="sk-test", ai_timeout_seconds=1.0)
    gateway = OpenAIGateway(settings)
    gateway._client = MagicMock()
    gateway._client.chat.completions.create = AsyncMock()
    return gateway


@pytest.fixture
def notification_inputs():
    context = NotificationContext(
        user_id="user-1",
        type=NotificationType.TASK_DUE,
        priority=Priority.HIGH,
        content="Task due",
        timestamp=NOW,
    )
    runtime = UserRuntimeContext(
        within_working_hours=True, preferences=UserPreferences(user_id="user-1")
    )
    return context, runtime


class TestCallWithTimeout:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def answer():
            return 42

        assert await call_with_timeout(answer(), 1.0, "answer") == 42

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(CollaboratorTimeout):
            await call_with_timeout(slow(), 0.01, "slow")

    @pytest.mark.asyncio
    async def test_other_errors_are_wrapped(self):
        async def broken():
            raise ValueError("bad payload")

        with pytest.raises(CollaboratorError, match="bad payload") as exc_info:
            await call_with_timeout(broken(), 1.0, "broken")
        assert not isinstance(exc_info.value, CollaboratorTimeout)


class TestWorkflowPatterns:
    @pytest.mark.asyncio
    async def test_parses_suggestions_and_skips_invalid(self, gateway, make_event):
        gateway.client.chat.completions.create.return_value = completion(
            json.dumps(
                {
                    "patterns": [
                        {
                            "pattern": "Assigns bugs to Bob",
                            "frequency": 0.6,
                            "confidence": 0.8,
                            "automation_potential": 0.9,
                            "suggested_rule": "Auto-assign bugs to Bob",
                            "pattern_type": "context",
                        },
                        {"pattern": "Missing scores"},
                    ]
                }
            )
        )

        suggestions = await gateway.analyze_workflow_patterns([make_event()])

        assert len(suggestions) == 1
        assert suggestions[0].pattern_type == PatternType.CONTEXT
        kwargs = gateway.client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert json.loads(kwargs["messages"][1]["content"])[0]["action"] == "task_created"

    @pytest.mark.asyncio
    async def test_caps_events_in_prompt(self, gateway, make_event):
        gateway.client.chat.completions.create.return_value = completion('{"patterns": []}')

        await gateway.analyze_workflow_patterns([make_event() for _ in range(MAX_PROMPT_EVENTS + 50)])

        kwargs = gateway.client.chat.completions.create.call_args.kwargs
        assert len(json.loads(kwargs["messages"][1]["content"])) == MAX_PROMPT_EVENTS

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "not json", "[1, 2]", '{"patterns": "many"}'])
    async def test_malformed_responses(self, gateway, make_event, content):
        gateway.client.chat.completions.create.return_value = completion(content)

        with pytest.raises(CollaboratorError):
            await gateway.analyze_workflow_patterns([make_event()])

    @pytest.mark.asyncio
    async def test_api_errors_are_wrapped(self, gateway, make_event):
        gateway.client.chat.completions.create.side_effect = RuntimeError("rate limited")

        with pytest.raises(CollaboratorError):
            await gateway.analyze_workflow_patterns([make_event()])


class TestNotificationContext:
    @pytest.mark.asyncio
    async def test_parses_analysis(self, gateway, notification_inputs):
        gateway.client.chat.completions.create.return_value = completion(
            json.dumps(
                {
                    "should_deliver": True,
                    "recommended_channels": ["push"],
                    "reasoning": "Deadline close",
                    "confidence": 0.9,
                }
            )
        )

        analysis = await gateway.analyze_notification_context(*notification_inputs)

        assert analysis.should_deliver is True
        assert [c.value for c in analysis.recommended_channels] == ["push"]
        payload = json.loads(
            gateway.client.chat.completions.create.call_args.kwargs["messages"][1]["content"]
        )
        assert payload["priority"] == "high"
        assert payload["user_context"]["within_working_hours"] is True

    @pytest.mark.asyncio
    async def test_invalid_analysis(self, gateway, notification_inputs):
        gateway.client.chat.completions.create.return_value = completion('{"confidence": 3}')

        with pytest.raises(CollaboratorError):
            await gateway.analyze_notification_context(*notification_inputs)


class TestNullGateway:
    @pytest.mark.asyncio
    async def test_defers_to_delivery(self, make_event, notification_inputs):
        gateway = NullAIGateway()

        assert await gateway.analyze_workflow_patterns([make_event()]) == []
        analysis = await gateway.analyze_notification_context(*notification_inputs)
        assert analysis.should_deliver is True
        assert analysis.confidence == 0.0


class TestClient:
    def test_client_is_lazy(self):
        gateway = OpenAIGateway(Settings(_env_file=None, openai_api_key="sk-test"))
        assert gateway._client is None
        assert gateway.client is gateway.client
