"""Bounded per-user cache of automation and routing rules."""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from uuid import UUID

import structlog

from automation_engine.models.rule import AutomationRule, TaskRoutingRule
from automation_engine.stores.base import EngineStore

logger = structlog.get_logger(__name__)


@dataclass
class _UserRules:
    automation: dict[UUID, AutomationRule] = field(default_factory=dict)
    routing: dict[UUID, TaskRoutingRule] = field(default_factory=dict)


class RuleCache:
    """LRU cache of each user's rules, loaded from the store on first use.

    Entries are refreshed when a rule is created (``put_*``) and dropped when
    a rule is toggled (``invalidate``). Writers that read-modify-write a
    cached rule hold ``lock(user_id)`` for the duration.
    """

    def __init__(self, store: EngineStore, max_users: int = 1000):
        self.store = store
        self.max_users = max_users
        self._entries: OrderedDict[str, _UserRules] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._entries

    def lock(self, user_id: str) -> asyncio.Lock:
        """The single writer lock for a user's rules."""
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def _entry(self, user_id: str) -> _UserRules:
        entry = self._entries.get(user_id)
        if entry is not None:
            self._entries.move_to_end(user_id)
            return entry

        automation = await self.store.list_automation_rules(user_id)
        routing = await self.store.list_task_routing_rules(user_id)

        # Another caller may have loaded (and updated) the entry meanwhile
        entry = self._entries.get(user_id)
        if entry is not None:
            return entry

        entry = _UserRules(
            automation={r.id: r for r in automation},
            routing={r.id: r for r in routing},
        )
        self._entries[user_id] = entry
        logger.debug(
            "rule_cache_loaded",
            user_id=user_id,
            automation_rules=len(automation),
            routing_rules=len(routing),
        )
        self._evict()
        return entry

    def _evict(self) -> None:
        while len(self._entries) > self.max_users:
            user_id, _ = self._entries.popitem(last=False)
            lock = self._locks.get(user_id)
            if lock is not None and not lock.locked():
                del self._locks[user_id]
            logger.debug("rule_cache_evicted", user_id=user_id)

    async def get_automation_rules(self, user_id: str) -> list[AutomationRule]:
        entry = await self._entry(user_id)
        return list(entry.automation.values())

    async def get_automation_rule(self, user_id: str, rule_id: UUID) -> AutomationRule | None:
        entry = await self._entry(user_id)
        return entry.automation.get(rule_id)

    async def get_routing_rules(self, user_id: str) -> list[TaskRoutingRule]:
        entry = await self._entry(user_id)
        return list(entry.routing.values())

    def put_automation_rule(self, rule: AutomationRule) -> None:
        """Refresh a cached rule. Users not in the cache load it on next use."""
        entry = self._entries.get(rule.user_id)
        if entry is not None:
            entry.automation[rule.id] = rule

    def put_routing_rule(self, rule: TaskRoutingRule) -> None:
        entry = self._entries.get(rule.user_id)
        if entry is not None:
            entry.routing[rule.id] = rule

    def invalidate(self, user_id: str) -> None:
        if self._entries.pop(user_id, None) is not None:
            logger.debug("rule_cache_invalidated", user_id=user_id)
