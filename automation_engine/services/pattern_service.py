"""Behavior tracking, pattern analysis and rule creation for a user."""

import asyncio
from datetime import timedelta
from typing import Iterable, Optional

import structlog

from automation_engine.clock import Clock, SystemClock
from automation_engine.config import Settings, get_settings
from automation_engine.errors import CollaboratorError, InsufficientDataError, PersistenceError
from automation_engine.models.event import BehaviorEvent
from automation_engine.models.pattern import (
    AnalysisResult,
    PatternStatus,
    PatternType,
    WorkflowOptimization,
    WorkflowPattern,
)
from automation_engine.models.rule import AutomationRule, RoutingAnalysisResult
from automation_engine.services.ai_gateway import AIGateway, call_with_timeout
from automation_engine.services.confidence_scorer import (
    merge_patterns,
    patterns_from_suggestions,
    score_candidates,
)
from automation_engine.services.pattern_detector import detect_patterns
from automation_engine.services.rule_synthesizer import RuleSynthesizer
from automation_engine.stores.base import EngineStore

logger = structlog.get_logger(__name__)


class PatternService:
    """Runs pattern detection over stored events and promotes the results."""

    def __init__(
        self,
        store: EngineStore,
        synthesizer: RuleSynthesizer,
        ai_gateway: Optional[AIGateway] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.synthesizer = synthesizer
        self.ai_gateway = ai_gateway
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        # One deferred analysis per user while it is pending
        self._pending: dict[str, asyncio.Task] = {}

    @property
    def pending_users(self) -> set[str]:
        return set(self._pending)

    async def track_behavior_event(self, event: BehaviorEvent) -> bool:
        """Store an event and schedule analysis once enough recent events pile up.

        Returns:
            True if the event was stored, False on a persistence failure
        """
        try:
            await self.store.append_event(event)
            window_start = self.clock.now() - timedelta(
                hours=self.settings.analysis_trigger_window_hours
            )
            recent = await self.store.count_events(event.user_id, window_start)
        except PersistenceError as e:
            logger.error(
                "behavior_event_track_failed",
                user_id=event.user_id,
                event_type=event.event_type.value,
                error=str(e),
            )
            return False

        logger.debug(
            "behavior_event_tracked",
            user_id=event.user_id,
            event_type=event.event_type.value,
            recent_events=recent,
        )
        if recent >= self.settings.analysis_trigger_event_count:
            self.schedule_pattern_analysis(event.user_id)
        return True

    def schedule_pattern_analysis(self, user_id: str) -> asyncio.Task:
        """Start a delayed analysis for the user unless one is already pending."""
        existing = self._pending.get(user_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self._deferred_analysis(user_id))
        self._pending[user_id] = task

        def _discard(done: asyncio.Task) -> None:
            if self._pending.get(user_id) is done:
                del self._pending[user_id]

        task.add_done_callback(_discard)
        logger.info(
            "pattern_analysis_scheduled",
            user_id=user_id,
            delay_seconds=self.settings.analysis_delay_seconds,
        )
        return task

    async def _deferred_analysis(self, user_id: str) -> None:
        await self.clock.sleep(self.settings.analysis_delay_seconds)
        try:
            result = await self.analyze_behavior_patterns(user_id)
            if result.patterns:
                await self.create_automation_rules(user_id, result.patterns)
        except Exception as e:
            logger.error(
                "deferred_pattern_analysis_failed",
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def await_pending_analyses(self, timeout: float = 5.0) -> None:
        """Wait for scheduled analyses to finish. Called on shutdown."""
        if not self._pending:
            return

        tasks = list(self._pending.values())
        logger.info("draining_pending_analyses", count=len(tasks))
        try:
            await asyncio.wait_for(
                asyncio.gather(*tasks, return_exceptions=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "pending_analyses_timeout",
                remaining=len(self._pending),
                timeout=timeout,
            )

    async def _suggested_patterns(
        self, user_id: str, events: list[BehaviorEvent]
    ) -> Optional[list[WorkflowPattern]]:
        """Oracle patterns, or None when the oracle is disabled or failed."""
        if self.ai_gateway is None:
            return None
        try:
            suggestions = await call_with_timeout(
                self.ai_gateway.analyze_workflow_patterns(events),
                self.settings.ai_timeout_seconds,
                "analyze_workflow_patterns",
            )
        except CollaboratorError as e:
            logger.warning("ai_pattern_augmentation_failed", user_id=user_id, error=str(e))
            return None
        return patterns_from_suggestions(
            user_id,
            suggestions,
            self.clock.now(),
            min_automation_potential=self.settings.ai_min_automation_potential,
        )

    async def analyze_behavior_patterns(self, user_id: str) -> AnalysisResult:
        """Detect, score and persist patterns from the user's lookback window.

        Too few events yields an empty result with a reason rather than an error.
        """
        settings = self.settings
        now = self.clock.now()
        events = await self.store.list_events(
            user_id,
            now - timedelta(days=settings.pattern_lookback_days),
            settings.pattern_event_limit,
        )

        try:
            candidates = detect_patterns(
                events,
                min_events=settings.pattern_min_events,
                temporal_threshold=settings.temporal_frequency_threshold,
                sequence_threshold=settings.sequence_frequency_threshold,
                sequence_window=timedelta(minutes=settings.sequence_window_minutes),
                context_threshold=settings.context_frequency_threshold,
            )
        except InsufficientDataError as e:
            logger.info(
                "pattern_analysis_skipped",
                user_id=user_id,
                reason=e.reason,
                available=e.available,
                required=e.required,
            )
            return AnalysisResult(user_id=user_id, reason=e.reason, event_count=len(events))

        local = score_candidates(
            user_id,
            candidates,
            now,
            min_frequency=settings.pattern_min_frequency,
            min_confidence=settings.pattern_min_confidence,
            complexity_weight=settings.automation_complexity_weight,
        )
        suggested = await self._suggested_patterns(user_id, events)
        patterns = merge_patterns(local, suggested or [])

        saved = []
        for pattern in patterns:
            try:
                await self.store.save_pattern(pattern)
            except PersistenceError as e:
                logger.error(
                    "pattern_store_failed",
                    user_id=user_id,
                    pattern_type=pattern.pattern_type.value,
                    error=str(e),
                )
                continue
            saved.append(pattern)

        opportunities = sum(
            1
            for p in saved
            if p.automation_potential > settings.rule_min_automation_potential
        )
        logger.info(
            "pattern_analysis_completed",
            user_id=user_id,
            event_count=len(events),
            candidate_count=len(candidates),
            pattern_count=len(saved),
            automation_opportunities=opportunities,
            ai_augmented=suggested is not None,
        )
        return AnalysisResult(
            user_id=user_id,
            patterns=saved,
            event_count=len(events),
            automation_opportunities=opportunities,
            ai_augmented=suggested is not None,
        )

    async def create_automation_rules(
        self, user_id: str, patterns: Optional[Iterable[WorkflowPattern]] = None
    ) -> list[AutomationRule]:
        """Promote qualifying patterns (default: the user's active ones) to rules."""
        if patterns is None:
            patterns = await self.store.list_patterns(user_id, PatternStatus.ACTIVE)
        own = [p for p in patterns if p.user_id == user_id]
        rules = await self.synthesizer.synthesize_automation_rules(own)
        logger.info(
            "automation_rules_synthesized",
            user_id=user_id,
            pattern_count=len(own),
            created=len(rules),
        )
        return rules

    async def create_task_routing_rules(self, user_id: str) -> RoutingAnalysisResult:
        """Learn routing rules from the user's recent task assignments."""
        settings = self.settings
        tasks = await self.store.list_recent_tasks(
            user_id,
            self.clock.now() - timedelta(days=settings.routing_lookback_days),
            settings.routing_task_limit,
        )
        if len(tasks) < settings.routing_min_tasks:
            logger.info(
                "routing_analysis_skipped",
                user_id=user_id,
                task_count=len(tasks),
                required=settings.routing_min_tasks,
            )
            return RoutingAnalysisResult(
                user_id=user_id,
                reason="Insufficient task data for routing analysis",
                task_count=len(tasks),
            )

        rules = await self.synthesizer.synthesize_routing_rules(user_id, tasks)
        return RoutingAnalysisResult(user_id=user_id, rules=rules, task_count=len(tasks))

    async def get_workflow_optimizations(self, user_id: str) -> list[WorkflowOptimization]:
        """Suggest workflow improvements from the user's current patterns.

        Patterns already promoted to rules still count; superseded ones do not.
        """
        patterns = [
            p
            for p in await self.store.list_patterns(user_id)
            if p.status in (PatternStatus.ACTIVE, PatternStatus.APPLIED)
        ]
        optimizations = []

        sequences = [
            p for p in patterns if p.pattern_type == PatternType.SEQUENCE and p.frequency > 0.3
        ]
        if sequences:
            optimizations.append(
                WorkflowOptimization(
                    type="workflow_efficiency",
                    title="Streamline Repeated Action Sequences",
                    description=(
                        "You often perform the same actions back to back. "
                        "Automation rules could do the follow-up step for you."
                    ),
                    impact=0.7,
                    patterns=[p.description for p in sequences],
                )
            )

        contexts = [
            p for p in patterns if p.pattern_type == PatternType.CONTEXT and p.frequency > 0.5
        ]
        if contexts:
            optimizations.append(
                WorkflowOptimization(
                    type="task_templates",
                    title="Create Task Templates",
                    description="You reuse the same task settings frequently. Templates could save time.",
                    impact=0.6,
                    patterns=[p.description for p in contexts],
                )
            )

        schedules = [
            p for p in patterns if p.pattern_type == PatternType.TEMPORAL and p.confidence > 0.8
        ]
        if schedules:
            optimizations.append(
                WorkflowOptimization(
                    type="schedule_automation",
                    title="Automate Recurring Work Blocks",
                    description="Your activity follows a predictable weekly schedule. Consider scheduling it.",
                    impact=0.8,
                    patterns=[p.description for p in schedules],
                )
            )

        return optimizations
