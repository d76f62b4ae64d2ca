"""Composition root wiring stores, services and the scheduler together."""

from typing import Any, Optional

import asyncpg
import structlog

from automation_engine.clock import Clock, SystemClock
from automation_engine.config import Settings, get_settings
from automation_engine.database import close_pool, create_pool, run_migrations
from automation_engine.models.event import BehaviorEvent
from automation_engine.models.notification import NotificationContext, ProcessedNotification
from automation_engine.services.ai_gateway import AIGateway, OpenAIGateway
from automation_engine.services.delivery import DeliveryChannel, LoggingDeliveryChannel
from automation_engine.services.logging_service import configure_logging
from automation_engine.services.notification_gate import NotificationGate
from automation_engine.services.notification_service import NotificationService
from automation_engine.services.pattern_service import PatternService
from automation_engine.services.redis_service import RedisService
from automation_engine.services.rule_cache import RuleCache
from automation_engine.services.rule_engine import ActionHandler, RuleEngine
from automation_engine.services.rule_synthesizer import RuleSynthesizer
from automation_engine.services.scheduler_service import SchedulerService
from automation_engine.stores.base import EngineStore
from automation_engine.stores.postgres_store import PostgresStore

logger = structlog.get_logger(__name__)


class AutomationEngine:
    """All engine services built around one store, with a start/stop lifecycle."""

    def __init__(
        self,
        store: EngineStore,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        ai_gateway: Optional[AIGateway] = None,
        delivery: Optional[DeliveryChannel] = None,
        redis_service: Optional[RedisService] = None,
        action_handlers: Optional[dict[str, ActionHandler]] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.store = store
        self.redis_service = redis_service
        self._pool: Optional[asyncpg.Pool] = None

        self.rule_cache = RuleCache(store, self.settings.rule_cache_max_users)
        self.synthesizer = RuleSynthesizer(store, self.rule_cache, self.settings, self.clock)
        self.rule_engine = RuleEngine(store, self.rule_cache, self.clock, action_handlers)
        self.patterns = PatternService(
            store, self.synthesizer, ai_gateway, self.settings, self.clock
        )
        self.gate = NotificationGate(store, ai_gateway, redis_service, self.settings, self.clock)
        self.notifications = NotificationService(store, self.clock)
        self.scheduler = SchedulerService(
            store,
            delivery or LoggingDeliveryChannel(),
            redis_service,
            self.settings,
            self.clock,
        )

    @classmethod
    async def create(
        cls, settings: Optional[Settings] = None, **kwargs: Any
    ) -> "AutomationEngine":
        """Build an engine on PostgreSQL and Redis from settings.

        The OpenAI gateway is used only when an API key is configured.
        """
        settings = settings or get_settings()
        configure_logging(settings.log_level)

        pool = await create_pool(settings)
        await run_migrations(pool)

        kwargs.setdefault("ai_gateway", OpenAIGateway(settings) if settings.ai_enabled else None)
        kwargs.setdefault("redis_service", RedisService(settings))
        engine = cls(PostgresStore(pool), settings=settings, **kwargs)
        engine._pool = pool
        logger.info("automation_engine_created", ai_enabled=kwargs["ai_gateway"] is not None)
        return engine

    def start(self) -> None:
        self.scheduler.start()

    async def stop(self) -> None:
        """Stop the scheduler, drain pending analyses and release connections."""
        await self.scheduler.stop()
        await self.patterns.await_pending_analyses()
        if self.redis_service is not None:
            await self.redis_service.close()
        if self._pool is not None:
            await close_pool(self._pool)
            self._pool = None
        logger.info("automation_engine_stopped")

    async def track_behavior_event(self, event: BehaviorEvent) -> bool:
        return await self.patterns.track_behavior_event(event)

    async def submit_notification(self, context: NotificationContext) -> ProcessedNotification:
        """Gate a notification and queue it when it should be sent."""
        processed = await self.gate.process_notification(context)
        await self.notifications.schedule_notification(processed)
        return processed
