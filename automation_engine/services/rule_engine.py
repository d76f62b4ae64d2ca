"""Matching live events and new tasks against a user's rules."""

from typing import Any, Callable, Optional
from uuid import UUID

import structlog

from automation_engine.clock import Clock, SystemClock
from automation_engine.errors import PersistenceError, RuleExecutionError
from automation_engine.models.rule import (
    AppliedAction,
    AutomationRule,
    RoutingConditions,
    RoutingResult,
    RoutingSuggestion,
    RuleStatus,
    TaskRouteRequest,
)
from automation_engine.services.pattern_detector import day_of_week, hour_block
from automation_engine.services.rule_cache import RuleCache
from automation_engine.stores.base import EngineStore

logger = structlog.get_logger(__name__)

# (value, event_data) -> partial results
ActionHandler = Callable[[Any, dict[str, Any]], dict[str, Any]]

ACTION_ALIASES = {
    "suggestNext": "suggest_next",
    "autoSet": "auto_set",
}


def values_equal(expected: Any, actual: Any) -> bool:
    """Exact equality that does not treat booleans as numbers."""
    if isinstance(expected, bool) or isinstance(actual, bool):
        return type(expected) is type(actual) and expected == actual
    if isinstance(expected, dict) and isinstance(actual, dict):
        return expected.keys() == actual.keys() and all(
            values_equal(value, actual[key]) for key, value in expected.items()
        )
    return expected == actual


def conditions_match(conditions: dict[str, Any], view: dict[str, Any]) -> bool:
    """Every condition key must be present in ``view`` with an equal value."""
    for key, expected in conditions.items():
        if key not in view or not values_equal(expected, view[key]):
            return False
    return True


def routing_conditions_match(conditions: RoutingConditions, task: TaskRouteRequest) -> bool:
    if conditions.priority is not None and task.priority != conditions.priority:
        return False
    if conditions.project_id is not None and task.project_id != conditions.project_id:
        return False
    if conditions.task_type is not None and task.task_type != conditions.task_type:
        return False
    if conditions.keywords:
        text = f"{task.title} {task.description}".lower()
        if not any(keyword.lower() in text for keyword in conditions.keywords):
            return False
    return True


def _suggest_next(value: Any, event_data: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(value, str):
        raise ValueError(f"expected an event type, got {type(value).__name__}")
    return {"suggestion": value}


def _auto_set(value: Any, event_data: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"expected a field map, got {type(value).__name__}")
    return {"auto_set": dict(value)}


BUILTIN_ACTIONS: dict[str, ActionHandler] = {
    "suggest_next": _suggest_next,
    "auto_set": _auto_set,
}


class RuleEngine:
    """Applies automation rules to events and routing rules to new tasks."""

    def __init__(
        self,
        store: EngineStore,
        cache: RuleCache,
        clock: Optional[Clock] = None,
        action_handlers: Optional[dict[str, ActionHandler]] = None,
    ):
        self.store = store
        self.cache = cache
        self.clock = clock or SystemClock()
        self.action_handlers = {**BUILTIN_ACTIONS, **(action_handlers or {})}

    def build_match_view(self, event_type: str, event_data: dict[str, Any]) -> dict[str, Any]:
        """Fields a rule can match on. Explicit event data wins over derived fields."""
        now = self.clock.now()
        view: dict[str, Any] = {
            "event_type": event_type,
            "day_of_week": day_of_week(now),
            "hour_block": hour_block(now),
        }
        view.update(event_data)
        return view

    def execute_actions(self, rule: AutomationRule, event_data: dict[str, Any]) -> dict[str, Any]:
        """Run every action of a rule.

        Raises:
            RuleExecutionError: an action handler rejected its value or failed
        """
        results: dict[str, Any] = {}
        for action, value in rule.actions.items():
            name = ACTION_ALIASES.get(action, action)
            handler = self.action_handlers.get(name)
            if handler is None:
                results[action] = value
                continue
            try:
                results.update(handler(value, event_data))
            except RuleExecutionError:
                raise
            except Exception as e:
                raise RuleExecutionError(str(rule.id), action, str(e)) from e
        return results

    async def apply_automation_rules(
        self, user_id: str, event_type: str, event_data: Optional[dict[str, Any]] = None
    ) -> list[AppliedAction]:
        """Execute every active rule whose trigger conditions match the event.

        A failing rule is recorded as an unsuccessful trigger and does not stop
        the remaining rules.
        """
        event_data = event_data or {}
        view = self.build_match_view(event_type, event_data)
        rules = await self.cache.get_automation_rules(user_id)
        matched = [
            rule
            for rule in rules
            if rule.status == RuleStatus.ACTIVE and conditions_match(rule.trigger_conditions, view)
        ]

        applied = []
        for rule in matched:
            try:
                results = self.execute_actions(rule, event_data)
                outcome = AppliedAction(
                    rule_id=rule.id, rule_name=rule.name, success=True, results=results
                )
            except RuleExecutionError as e:
                logger.warning(
                    "rule_execution_failed",
                    user_id=user_id,
                    rule_id=str(rule.id),
                    action=e.action,
                    error=str(e),
                )
                outcome = AppliedAction(
                    rule_id=rule.id, rule_name=rule.name, success=False, error=str(e)
                )

            await self._record_trigger(user_id, rule, outcome.success)
            applied.append(outcome)
            logger.info(
                "rule_triggered",
                user_id=user_id,
                rule_id=str(rule.id),
                event_type=event_type,
                success=outcome.success,
            )
        return applied

    async def _record_trigger(self, user_id: str, rule: AutomationRule, success: bool) -> None:
        async with self.cache.lock(user_id):
            current = await self.cache.get_automation_rule(user_id, rule.id) or rule
            trigger_count = current.trigger_count + 1
            success_rate = (
                current.success_rate * (trigger_count - 1) + (1 if success else 0)
            ) / trigger_count
            updated = current.model_copy(
                update={
                    "trigger_count": trigger_count,
                    "success_rate": success_rate,
                    "last_triggered": self.clock.now(),
                }
            )
            self.cache.put_automation_rule(updated)
            try:
                await self.store.update_rule_statistics(
                    updated.id, trigger_count, success_rate, updated.last_triggered
                )
            except PersistenceError as e:
                logger.error(
                    "rule_statistics_update_failed",
                    user_id=user_id,
                    rule_id=str(rule.id),
                    error=str(e),
                )

    async def set_rule_status(
        self, user_id: str, rule_id: UUID, status: RuleStatus
    ) -> Optional[AutomationRule]:
        """Enable or disable a rule. Returns None when the user has no such rule."""
        async with self.cache.lock(user_id):
            updated = await self.store.set_automation_rule_status(user_id, rule_id, status)
            self.cache.invalidate(user_id)
        if updated is not None:
            logger.info(
                "automation_rule_status_changed",
                user_id=user_id,
                rule_id=str(rule_id),
                status=status.value,
            )
        return updated

    async def list_rules(
        self, user_id: str, status: Optional[RuleStatus] = None
    ) -> list[AutomationRule]:
        rules = await self.cache.get_automation_rules(user_id)
        if status is not None:
            rules = [rule for rule in rules if rule.status == status]
        return sorted(rules, key=lambda rule: rule.created_at)

    async def route_new_task(self, user_id: str, task: TaskRouteRequest) -> RoutingResult:
        """Suggest routing from the highest-confidence matching rule."""
        rules = await self.cache.get_routing_rules(user_id)
        applicable = [
            rule
            for rule in rules
            if rule.status == RuleStatus.ACTIVE and routing_conditions_match(rule.conditions, task)
        ]
        if not applicable:
            logger.debug("task_not_routed", user_id=user_id, title=task.title)
            return RoutingResult(routed=False)

        best = max(applicable, key=lambda rule: rule.confidence)
        suggestion = RoutingSuggestion(
            assign_to=best.routing.assign_to,
            priority=best.routing.priority or task.priority,
            labels=list(best.routing.labels),
            estimated_hours=best.routing.estimated_hours,
            suggested_due_date=best.routing.suggested_due_date,
            confidence=best.confidence,
            rule_name=best.name,
        )
        logger.info(
            "task_routed",
            user_id=user_id,
            rule_id=str(best.id),
            assign_to=best.routing.assign_to,
            confidence=best.confidence,
        )
        return RoutingResult(routed=True, suggestion=suggestion, applied_rule_id=best.id)
