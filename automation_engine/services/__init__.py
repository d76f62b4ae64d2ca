"""Services package exports."""

from automation_engine.services.logging_service import configure_logging, get_logger
from automation_engine.services.notification_gate import NotificationGate
from automation_engine.services.pattern_service import PatternService
from automation_engine.services.rule_engine import RuleEngine
from automation_engine.services.scheduler_service import SchedulerService

__all__ = [
    "NotificationGate",
    "PatternService",
    "RuleEngine",
    "SchedulerService",
    "configure_logging",
    "get_logger",
]
