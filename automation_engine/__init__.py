"""Behavior-pattern recognition and automation engine."""

from automation_engine.config import Settings, get_settings
from automation_engine.engine import AutomationEngine

__all__ = ["AutomationEngine", "Settings", "get_settings"]
