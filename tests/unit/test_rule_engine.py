"""Unit tests for RuleEngine matching, execution and routing."""

import asyncio
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from automation_engine.errors import PersistenceError
from automation_engine.models.rule import (
    AutomationRule,
    RoutingConditions,
    RoutingTarget,
    RuleStatus,
    TaskRouteRequest,
    TaskRoutingRule,
)
from automation_engine.services.rule_engine import (
    RuleEngine,
    conditions_match,
    routing_conditions_match,
    values_equal,
)

NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def make_rule(conditions, actions=None, user_id="user-1", **kwargs):
    return AutomationRule(
        user_id=user_id,
        name="Auto: test",
        signature=uuid4().hex,
        trigger_conditions=conditions,
        actions=actions if actions is not None else {"suggest_next": "task_assigned"},
        confidence=0.8,
        created_at=NOW,
        **kwargs,
    )


def make_routing_rule(conditions, routing, confidence, status=RuleStatus.ACTIVE):
    return TaskRoutingRule(
        user_id="user-1",
        name="Auto-assign",
        signature=uuid4().hex,
        conditions=conditions,
        routing=routing,
        confidence=confidence,
        status=status,
        created_at=NOW,
    )


@pytest.fixture
def engine(store, rule_cache, clock):
    return RuleEngine(store, rule_cache, clock)


class TestConditionMatching:
    def test_subset_match(self):
        assert conditions_match({"priority": "high"}, {"priority": "high", "project": "alpha"})

    def test_missing_key_does_not_match(self):
        assert not conditions_match({"priority": "high"}, {"project": "alpha"})

    def test_empty_conditions_match_anything(self):
        assert conditions_match({}, {"event_type": "task_created"})

    def test_bool_is_not_int(self):
        assert not values_equal(True, 1)
        assert not values_equal(0, False)
        assert values_equal(True, True)
        assert values_equal(1, 1.0)

    def test_nested_maps_compared_strictly(self):
        assert values_equal({"a": True}, {"a": True})
        assert not values_equal({"a": True}, {"a": 1})


class TestApplyAutomationRules:
    @pytest.mark.asyncio
    async def test_matching_rule_updates_statistics(self, engine, store, clock):
        rule = make_rule({"event_type": "task_created"})
        store.automation_rules[rule.id] = rule

        applied = await engine.apply_automation_rules("user-1", "task_created", {})

        assert len(applied) == 1
        assert applied[0].success is True
        assert applied[0].results == {"suggestion": "task_assigned"}
        stored = store.automation_rules[rule.id]
        assert stored.trigger_count == 1
        assert stored.success_rate == pytest.approx(1.0)
        assert stored.last_triggered == clock.now()

    @pytest.mark.asyncio
    async def test_incremental_success_rate(self, engine, store):
        rule = make_rule({"project": "alpha"}, trigger_count=3, success_rate=2 / 3)
        store.automation_rules[rule.id] = rule

        await engine.apply_automation_rules("user-1", "task_created", {"project": "alpha"})

        stored = store.automation_rules[rule.id]
        assert stored.trigger_count == 4
        assert stored.success_rate == pytest.approx((2 / 3 * 3 + 1) / 4)

    @pytest.mark.asyncio
    async def test_non_matching_rule_untouched(self, engine, store):
        rule = make_rule({"project": "alpha"})
        store.automation_rules[rule.id] = rule

        applied = await engine.apply_automation_rules("user-1", "task_created", {"project": "beta"})

        assert applied == []
        assert store.automation_rules[rule.id].trigger_count == 0

    @pytest.mark.asyncio
    async def test_inactive_and_foreign_rules_ignored(self, engine, store):
        inactive = make_rule({"event_type": "task_created"}, status=RuleStatus.INACTIVE)
        foreign = make_rule({"event_type": "task_created"}, user_id="user-2")
        store.automation_rules[inactive.id] = inactive
        store.automation_rules[foreign.id] = foreign

        assert await engine.apply_automation_rules("user-1", "task_created", {}) == []

    @pytest.mark.asyncio
    async def test_temporal_rule_matches_current_time_block(self, engine, store):
        # Clock is Monday 10:00 UTC
        rule = make_rule({"day_of_week": 1, "hour_block": 8}, actions={"suggest_time": "1-8"})
        store.automation_rules[rule.id] = rule

        applied = await engine.apply_automation_rules("user-1", "task_created", {})

        assert applied[0].results == {"suggest_time": "1-8"}

    @pytest.mark.asyncio
    async def test_event_data_overrides_derived_fields(self, engine, store):
        rule = make_rule({"day_of_week": 3})
        store.automation_rules[rule.id] = rule

        applied = await engine.apply_automation_rules("user-1", "task_created", {"day_of_week": 3})

        assert len(applied) == 1

    @pytest.mark.asyncio
    async def test_failed_action_recorded_without_blocking_others(self, engine, store):
        broken = make_rule({"event_type": "task_created"}, actions={"suggest_next": 42})
        healthy = make_rule({"event_type": "task_created"}, actions={"auto_set": {"priority": "high"}})
        store.automation_rules[broken.id] = broken
        store.automation_rules[healthy.id] = healthy

        applied = {a.rule_id: a for a in await engine.apply_automation_rules("user-1", "task_created")}

        assert applied[broken.id].success is False
        assert "suggest_next" in applied[broken.id].error
        assert applied[healthy.id].success is True
        assert applied[healthy.id].results == {"auto_set": {"priority": "high"}}
        assert store.automation_rules[broken.id].trigger_count == 1
        assert store.automation_rules[broken.id].success_rate == 0.0
        assert store.automation_rules[broken.id].status == RuleStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_camel_case_actions_accepted(self, engine, store):
        rule = make_rule({"event_type": "task_created"}, actions={"suggestNext": "task_assigned"})
        store.automation_rules[rule.id] = rule

        [applied] = await engine.apply_automation_rules("user-1", "task_created")

        assert applied.results == {"suggestion": "task_assigned"}

    @pytest.mark.asyncio
    async def test_custom_action_handler(self, store, rule_cache, clock):
        engine = RuleEngine(
            store, rule_cache, clock, action_handlers={"notify": lambda value, data: {"notified": value}}
        )
        rule = make_rule({"event_type": "task_created"}, actions={"notify": "team"})
        store.automation_rules[rule.id] = rule

        [applied] = await engine.apply_automation_rules("user-1", "task_created")

        assert applied.results == {"notified": "team"}

    @pytest.mark.asyncio
    async def test_concurrent_triggers_do_not_lose_updates(self, engine, store):
        rule = make_rule({"event_type": "task_created"})
        store.automation_rules[rule.id] = rule

        await asyncio.gather(
            *(engine.apply_automation_rules("user-1", "task_created") for _ in range(10))
        )

        assert store.automation_rules[rule.id].trigger_count == 10
        assert store.automation_rules[rule.id].success_rate == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_statistics_persistence_failure_is_logged(self, engine, store, rule_cache):
        rule = make_rule({"event_type": "task_created"})
        store.automation_rules[rule.id] = rule

        async def failing_update(*args, **kwargs):
            raise PersistenceError("down")

        store.update_rule_statistics = failing_update

        applied = await engine.apply_automation_rules("user-1", "task_created")

        assert applied[0].success is True
        cached = await rule_cache.get_automation_rule("user-1", rule.id)
        assert cached.trigger_count == 1


class TestRuleStatus:
    @pytest.mark.asyncio
    async def test_toggle_refreshes_cache(self, engine, store):
        rule = make_rule({"event_type": "task_created"})
        store.automation_rules[rule.id] = rule
        assert len(await engine.apply_automation_rules("user-1", "task_created")) == 1

        updated = await engine.set_rule_status("user-1", rule.id, RuleStatus.INACTIVE)

        assert updated.status == RuleStatus.INACTIVE
        assert await engine.apply_automation_rules("user-1", "task_created") == []

    @pytest.mark.asyncio
    async def test_toggle_unknown_rule(self, engine):
        assert await engine.set_rule_status("user-1", uuid4(), RuleStatus.INACTIVE) is None

    @pytest.mark.asyncio
    async def test_list_rules_filters_status(self, engine, store):
        active = make_rule({"a": 1})
        draft = make_rule({"b": 2}, status=RuleStatus.DRAFT)
        store.automation_rules[active.id] = active
        store.automation_rules[draft.id] = draft

        assert {r.id for r in await engine.list_rules("user-1")} == {active.id, draft.id}
        assert [r.id for r in await engine.list_rules("user-1", RuleStatus.DRAFT)] == [draft.id]


class TestRouteNewTask:
    def test_keyword_match_is_case_insensitive(self):
        conditions = RoutingConditions(keywords=["Bug"])
        assert routing_conditions_match(conditions, TaskRouteRequest(title="Fix login bug"))
        assert routing_conditions_match(
            conditions, TaskRouteRequest(title="Fix login", description="a BUG in auth")
        )
        assert not routing_conditions_match(conditions, TaskRouteRequest(title="Write docs"))

    def test_project_and_type_conditions(self):
        conditions = RoutingConditions(project_id="p1", task_type="bug")
        assert routing_conditions_match(
            conditions, TaskRouteRequest(title="x", project_id="p1", task_type="bug")
        )
        assert not routing_conditions_match(
            conditions, TaskRouteRequest(title="x", project_id="p2", task_type="bug")
        )

    @pytest.mark.asyncio
    async def test_highest_confidence_rule_wins(self, engine, store):
        low = make_routing_rule(
            RoutingConditions(priority="high"), RoutingTarget(assign_to="bob"), 0.4
        )
        high = make_routing_rule(
            RoutingConditions(priority="high"),
            RoutingTarget(assign_to="alice", labels=["backend"], estimated_hours=3),
            0.9,
        )
        store.routing_rules[low.id] = low
        store.routing_rules[high.id] = high

        result = await engine.route_new_task(
            "user-1", TaskRouteRequest(title="Fix bug", priority="high")
        )

        assert result.routed is True
        assert result.applied_rule_id == high.id
        assert result.suggestion.assign_to == "alice"
        assert result.suggestion.priority == "high"
        assert result.suggestion.labels == ["backend"]
        assert result.suggestion.estimated_hours == 3
        assert result.suggestion.confidence == 0.9

    @pytest.mark.asyncio
    async def test_rule_priority_falls_back_to_task_priority(self, engine, store):
        rule = make_routing_rule(
            RoutingConditions(keywords=["deploy"]), RoutingTarget(assign_to="ops"), 0.7
        )
        store.routing_rules[rule.id] = rule

        result = await engine.route_new_task(
            "user-1", TaskRouteRequest(title="Deploy API", priority="low")
        )

        assert result.suggestion.priority == "low"

    @pytest.mark.asyncio
    async def test_not_routed(self, engine, store):
        inactive = make_routing_rule(
            RoutingConditions(priority="urgent"),
            RoutingTarget(assign_to="alice"),
            1.0,
            status=RuleStatus.INACTIVE,
        )
        store.routing_rules[inactive.id] = inactive

        result = await engine.route_new_task(
            "user-1", TaskRouteRequest(title="Fix", priority="urgent")
        )

        assert result.routed is False
        assert result.suggestion is None
