"""Decides whether, when and how a notification is delivered.

A notification moves through received -> basic filtered -> rule evaluated ->
AI evaluated and ends up either scheduled or suppressed. Whenever the outcome
is uncertain (AI failure, unexpected error) the notification is delivered now
rather than dropped.
"""

import asyncio
from datetime import datetime, time, timedelta, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from automation_engine.clock import Clock, SystemClock
from automation_engine.config import Settings, get_settings
from automation_engine.errors import CollaboratorError, CollaboratorTimeout, PersistenceError
from automation_engine.models.notification import (
    CATEGORY_FOR_TYPE,
    PRIORITY_RANK,
    Channel,
    Frequency,
    GateStage,
    NotificationContext,
    NotificationRule,
    Priority,
    ProcessedNotification,
    QuietHours,
    UserPreferences,
    UserRuntimeContext,
)
from automation_engine.services.ai_gateway import AIGateway, call_with_timeout
from automation_engine.services.pattern_detector import day_of_week
from automation_engine.services.redis_service import RedisService
from automation_engine.stores.base import EngineStore

logger = structlog.get_logger(__name__)


def priority_rank(priority: Priority) -> int:
    return PRIORITY_RANK[Priority(priority)]


def minute_of_day(moment: datetime | time) -> int:
    return moment.hour * 60 + moment.minute


def to_user_time(moment: datetime, tz_name: str) -> datetime:
    """Convert to the user's timezone. Naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    try:
        tz = ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_timezone", timezone=tz_name)
        tz = ZoneInfo("UTC")
    return moment.astimezone(tz)


def is_in_quiet_hours(timestamp: datetime, quiet_hours: QuietHours) -> bool:
    """Minute-of-day check; handles windows that wrap past midnight (e.g. 22:00 to 08:00)."""
    current = minute_of_day(to_user_time(timestamp, quiet_hours.timezone))
    start = minute_of_day(quiet_hours.start)
    end = minute_of_day(quiet_hours.end)

    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def is_working_time(moment: datetime, preferences: UserPreferences) -> bool:
    """True on a working day between working_hours.start (inclusive) and end (exclusive)."""
    local = to_user_time(moment, preferences.quiet_hours.timezone)
    if day_of_week(local) not in preferences.working_days:
        return False
    current = minute_of_day(local)
    return (
        minute_of_day(preferences.working_hours.start)
        <= current
        < minute_of_day(preferences.working_hours.end)
    )


def apply_basic_filters(
    context: NotificationContext, preferences: UserPreferences
) -> tuple[bool, str]:
    """Priority threshold, category switch and quiet hours, in that order."""
    if priority_rank(context.priority) < priority_rank(preferences.priority_threshold):
        return False, "Below priority threshold"

    category = CATEGORY_FOR_TYPE.get(context.type)
    if category and not getattr(preferences.category_filters, category):
        return False, "Category filtered out"

    if is_in_quiet_hours(context.timestamp, preferences.quiet_hours):
        return False, "In quiet hours"

    return True, "Passed basic filters"


def rule_applies(rule: NotificationRule, context: NotificationContext) -> bool:
    conditions = rule.conditions
    if (
        conditions.project_ids
        and context.project_id
        and context.project_id not in conditions.project_ids
    ):
        return False
    if conditions.task_types and context.type.value not in conditions.task_types:
        return False
    if conditions.priorities and context.priority not in conditions.priorities:
        return False
    if conditions.keywords:
        content = context.content.lower()
        if not any(keyword.lower() in content for keyword in conditions.keywords):
            return False
    return True


def find_applicable_rules(
    context: NotificationContext, rules: Iterable[NotificationRule]
) -> list[NotificationRule]:
    return [rule for rule in rules if rule.enabled and rule_applies(rule, context)]


def calculate_optimal_delivery_time(
    context: NotificationContext,
    preferences: UserPreferences,
    now: datetime,
) -> datetime:
    """When a permitted notification should be handed to a channel.

    Urgent notifications always go now. Otherwise the frequency policy
    applies; daily and weekly deliveries land at the start of working hours
    in the user's timezone.
    """
    if context.priority == Priority.URGENT:
        return now

    if preferences.frequency == Frequency.IMMEDIATE and is_working_time(now, preferences):
        return now

    if preferences.frequency == Frequency.HOURLY:
        return now + timedelta(hours=1)

    if preferences.frequency in (Frequency.DAILY, Frequency.WEEKLY):
        days = 1 if preferences.frequency == Frequency.DAILY else 7
        local = to_user_time(now, preferences.quiet_hours.timezone)
        start = preferences.working_hours.start
        target = (local + timedelta(days=days)).replace(
            hour=start.hour, minute=start.minute, second=0, microsecond=0
        )
        return target.astimezone(now.tzinfo or timezone.utc)

    return now


def _unique_channels(*groups: Iterable[Channel]) -> list[Channel]:
    channels: list[Channel] = []
    for group in groups:
        for channel in group:
            if channel not in channels:
                channels.append(channel)
    return channels


def default_channels(preferences: UserPreferences) -> list[Channel]:
    return [preferences.enabled_channels[0]] if preferences.enabled_channels else [Channel.IN_APP]


class NotificationGate:
    """Runs notification contexts through filters, rules and the AI oracle."""

    def __init__(
        self,
        store: EngineStore,
        ai_gateway: Optional[AIGateway] = None,
        redis_service: Optional[RedisService] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.ai_gateway = ai_gateway
        self.redis_service = redis_service
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()

    async def _preferences(self, user_id: str) -> UserPreferences:
        try:
            preferences = await self.store.get_preferences(user_id)
        except PersistenceError as e:
            logger.warning("notification_preferences_unavailable", user_id=user_id, error=str(e))
            preferences = None
        return preferences or UserPreferences(user_id=user_id)

    async def _rules(self, user_id: str) -> list[NotificationRule]:
        try:
            return await self.store.list_notification_rules(user_id, enabled_only=True)
        except PersistenceError as e:
            logger.warning("notification_rules_unavailable", user_id=user_id, error=str(e))
            return []

    async def _runtime_context(
        self, context: NotificationContext, preferences: UserPreferences, now: datetime
    ) -> UserRuntimeContext:
        recent = 0
        if self.redis_service is not None:
            recent = await self.redis_service.get_recent_notification_count(context.user_id)
        activity = context.metadata.get("current_activity")
        return UserRuntimeContext(
            current_activity=activity if isinstance(activity, str) else None,
            within_working_hours=is_working_time(now, preferences),
            recent_notifications=recent,
            preferences=preferences,
        )

    def fallback(
        self,
        context: NotificationContext,
        preferences: Optional[UserPreferences],
        reason: str,
        now: datetime,
        channels: Optional[list[Channel]] = None,
        content: Optional[str] = None,
    ) -> ProcessedNotification:
        """Deliver now through the default channel without AI enhancement."""
        if not channels:
            channels = default_channels(preferences) if preferences else [Channel.IN_APP]
        return ProcessedNotification(
            original_context=context,
            should_send=True,
            channels=channels,
            processed_content=content or context.content,
            scheduled_for=now,
            reasoning=f"Fallback to default processing: {reason}",
            ai_enhanced=False,
            stage=GateStage.SCHEDULED,
            fallback_reason=reason,
        )

    async def process_notification(self, context: NotificationContext) -> ProcessedNotification:
        now = self.clock.now()
        logger.debug(
            "notification_received",
            user_id=context.user_id,
            type=context.type.value,
            stage=GateStage.RECEIVED.value,
        )
        preferences = await self._preferences(context.user_id)

        passed, reason = apply_basic_filters(context, preferences)
        if not passed:
            logger.info(
                "notification_suppressed",
                user_id=context.user_id,
                type=context.type.value,
                stage=GateStage.BASIC_FILTERED.value,
                reason=reason,
            )
            return ProcessedNotification(
                original_context=context,
                should_send=False,
                channels=default_channels(preferences),
                processed_content=context.content,
                scheduled_for=now,
                reasoning=reason,
                stage=GateStage.SUPPRESSED,
            )

        rules = find_applicable_rules(context, await self._rules(context.user_id))
        logger.debug(
            "notification_rules_evaluated",
            user_id=context.user_id,
            stage=GateStage.RULE_EVALUATED.value,
            matched=len(rules),
        )
        rule_ids = [rule.id for rule in rules]
        rule_channels = _unique_channels(*(rule.actions.channels for rule in rules))
        custom_message = next(
            (rule.actions.custom_message for rule in rules if rule.actions.custom_message),
            None,
        )

        if self.ai_gateway is None:
            channels = _unique_channels(preferences.enabled_channels, rule_channels)
            return ProcessedNotification(
                original_context=context,
                should_send=True,
                channels=channels or [Channel.IN_APP],
                processed_content=custom_message or context.content,
                scheduled_for=calculate_optimal_delivery_time(context, preferences, now),
                reasoning=reason if not rules else f"{reason}; matched {len(rules)} rule(s)",
                stage=GateStage.SCHEDULED,
                applied_rule_ids=rule_ids,
            )

        runtime = await self._runtime_context(context, preferences, now)
        try:
            analysis = await call_with_timeout(
                self.ai_gateway.analyze_notification_context(context, runtime),
                self.settings.ai_timeout_seconds,
                "analyze_notification_context",
            )
        except CollaboratorError as e:
            fallback_reason = "ai_timeout" if isinstance(e, CollaboratorTimeout) else "ai_error"
            logger.warning(
                "notification_ai_fallback",
                user_id=context.user_id,
                reason=fallback_reason,
                error=str(e),
            )
            processed = self.fallback(
                context,
                preferences,
                fallback_reason,
                now,
                channels=rule_channels,
                content=custom_message,
            )
            processed.applied_rule_ids = rule_ids
            return processed

        should_deliver = analysis.should_deliver
        reasoning = analysis.reasoning
        if not should_deliver and analysis.confidence < self.settings.ai_min_suppress_confidence:
            should_deliver = True
            reasoning = f"Low-confidence suppression overridden: {analysis.reasoning}"

        if not should_deliver:
            logger.info(
                "notification_suppressed",
                user_id=context.user_id,
                type=context.type.value,
                stage=GateStage.AI_EVALUATED.value,
                reason=analysis.reasoning,
                confidence=analysis.confidence,
            )
            return ProcessedNotification(
                original_context=context,
                should_send=False,
                channels=default_channels(preferences),
                processed_content=context.content,
                scheduled_for=now,
                reasoning=reasoning,
                ai_enhanced=True,
                stage=GateStage.SUPPRESSED,
                applied_rule_ids=rule_ids,
            )

        channels = _unique_channels(
            analysis.recommended_channels or preferences.enabled_channels, rule_channels
        )
        scheduled_for = calculate_optimal_delivery_time(context, preferences, now)
        logger.info(
            "notification_scheduled",
            user_id=context.user_id,
            type=context.type.value,
            channels=[c.value for c in channels],
            delay_seconds=(scheduled_for - now).total_seconds(),
        )
        return ProcessedNotification(
            original_context=context,
            should_send=True,
            channels=channels or [Channel.IN_APP],
            processed_content=custom_message or analysis.enhanced_content or context.content,
            scheduled_for=scheduled_for,
            reasoning=reasoning,
            ai_enhanced=True,
            stage=GateStage.SCHEDULED,
            applied_rule_ids=rule_ids,
        )

    async def batch_process_notifications(
        self, contexts: list[NotificationContext]
    ) -> list[ProcessedNotification]:
        """Process in fixed-size chunks; a failing context falls back to delivery."""
        results: list[ProcessedNotification] = []
        size = self.settings.notification_batch_size
        for start in range(0, len(contexts), size):
            chunk = contexts[start : start + size]
            outcomes = await asyncio.gather(
                *(self.process_notification(context) for context in chunk),
                return_exceptions=True,
            )
            for context, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(
                        "notification_processing_failed",
                        user_id=context.user_id,
                        error=str(outcome),
                        error_type=type(outcome).__name__,
                    )
                    outcome = self.fallback(context, None, "processing_error", self.clock.now())
                results.append(outcome)
        return results
