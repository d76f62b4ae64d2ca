"""Turns qualifying patterns and task history into persisted rules."""

from collections import Counter
from datetime import datetime
from typing import Iterable, Optional

import structlog

from automation_engine.clock import Clock, SystemClock
from automation_engine.config import Settings, get_settings
from automation_engine.errors import PersistenceError
from automation_engine.models.pattern import PatternStatus, WorkflowPattern, condition_signature
from automation_engine.models.rule import (
    AutomationRule,
    RoutingConditions,
    RoutingTarget,
    TaskRecord,
    TaskRoutingRule,
)
from automation_engine.services.rule_cache import RuleCache
from automation_engine.stores.base import EngineStore

logger = structlog.get_logger(__name__)

DEFAULT_TASK_PRIORITY = "medium"
ROUTING_SIGNATURE_TYPE = "routing"


def routing_signature(conditions: RoutingConditions, routing: RoutingTarget) -> str:
    """Key routing rules by what they match and whom they assign to."""
    return condition_signature(
        ROUTING_SIGNATURE_TYPE,
        {
            "conditions": conditions.model_dump(exclude_none=True),
            "assign_to": routing.assign_to,
        },
    )


def build_routing_rules(
    user_id: str,
    tasks: list[TaskRecord],
    now: datetime,
    min_occurrences: int = 3,
) -> list[TaskRoutingRule]:
    """Group assigned tasks by (priority, assignee) and emit a rule per frequent group.

    Confidence is ``min(count / len(tasks) * 5, 1)``; tasks without a priority
    count as medium.
    """
    if not tasks:
        return []

    groups: Counter[tuple[str, str]] = Counter()
    for task in tasks:
        if task.assigned_to:
            groups[(task.priority or DEFAULT_TASK_PRIORITY, task.assigned_to)] += 1

    rules = []
    for (priority, assignee), count in groups.items():
        if count < min_occurrences:
            continue
        conditions = RoutingConditions(priority=priority)
        routing = RoutingTarget(assign_to=assignee, priority=priority)
        rules.append(
            TaskRoutingRule(
                user_id=user_id,
                name=f"Auto-assign {priority} priority tasks",
                signature=routing_signature(conditions, routing),
                conditions=conditions,
                routing=routing,
                confidence=min(count / len(tasks) * 5, 1.0),
                created_at=now,
            )
        )
    return rules


class RuleSynthesizer:
    """Promotes patterns to automation rules, at most once per signature."""

    def __init__(
        self,
        store: EngineStore,
        cache: RuleCache,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.cache = cache
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()

    def qualifies(self, pattern: WorkflowPattern) -> bool:
        return (
            pattern.automation_potential > self.settings.rule_min_automation_potential
            and pattern.confidence > self.settings.rule_min_confidence
        )

    def build_rule(self, pattern: WorkflowPattern) -> AutomationRule:
        return AutomationRule(
            user_id=pattern.user_id,
            name=f"Auto: {pattern.description}",
            description=pattern.suggested_rule,
            signature=pattern.signature,
            pattern_id=pattern.id,
            trigger_conditions=dict(pattern.conditions),
            actions=dict(pattern.actions),
            confidence=pattern.confidence,
            created_at=self.clock.now(),
        )

    async def synthesize_automation_rules(
        self, patterns: Iterable[WorkflowPattern]
    ) -> list[AutomationRule]:
        """Create rules for qualifying patterns and return the newly created ones.

        A pattern whose signature already has a rule is marked applied without
        creating anything, so re-running over overlapping windows is a no-op.
        """
        created_rules = []
        for pattern in patterns:
            if not self.qualifies(pattern):
                continue
            if not pattern.conditions:
                # A rule without conditions would fire on every event
                logger.info(
                    "rule_synthesis_skipped",
                    user_id=pattern.user_id,
                    pattern_id=str(pattern.id),
                    reason="no_conditions",
                )
                continue

            try:
                rule, created = await self.store.upsert_automation_rule(self.build_rule(pattern))
                await self.store.set_pattern_status(pattern.id, PatternStatus.APPLIED)
            except PersistenceError as e:
                logger.error(
                    "rule_synthesis_failed",
                    user_id=pattern.user_id,
                    pattern_id=str(pattern.id),
                    error=str(e),
                )
                continue

            if created:
                self.cache.put_automation_rule(rule)
                created_rules.append(rule)
                logger.info(
                    "automation_rule_created",
                    user_id=rule.user_id,
                    rule_id=str(rule.id),
                    rule_name=rule.name,
                    confidence=rule.confidence,
                )
            else:
                logger.debug(
                    "automation_rule_exists",
                    user_id=rule.user_id,
                    rule_id=str(rule.id),
                    pattern_id=str(pattern.id),
                )
        return created_rules

    async def synthesize_routing_rules(
        self, user_id: str, tasks: list[TaskRecord]
    ) -> list[TaskRoutingRule]:
        """Persist routing rules built from task history; returns the stored rules."""
        stored_rules = []
        candidates = build_routing_rules(
            user_id, tasks, self.clock.now(), self.settings.routing_min_occurrences
        )
        for candidate in candidates:
            try:
                rule, created = await self.store.upsert_task_routing_rule(candidate)
            except PersistenceError as e:
                logger.error(
                    "routing_rule_store_failed",
                    user_id=user_id,
                    rule_name=candidate.name,
                    error=str(e),
                )
                continue
            self.cache.put_routing_rule(rule)
            stored_rules.append(rule)
            logger.info(
                "routing_rule_stored",
                user_id=user_id,
                rule_id=str(rule.id),
                created=created,
                confidence=rule.confidence,
            )
        return stored_rules
