"""Scoring of candidate patterns and merging with oracle suggestions."""

from datetime import datetime
from typing import Iterable

import structlog

from automation_engine.models.pattern import (
    AIPatternSuggestion,
    PatternCandidate,
    PatternSource,
    PatternType,
    WorkflowPattern,
)

logger = structlog.get_logger(__name__)


def _clamp(value: float) -> float:
    return max(0.0, min(value, 1.0))


def calculate_automation_potential(
    frequency: float,
    confidence: float,
    complexity_weight: float = 0.8,
) -> float:
    """Mean of the frequency score, the confidence and the complexity weight."""
    frequency_score = min(frequency * 2, 1.0)
    return _clamp((frequency_score + confidence + complexity_weight) / 3)


def score_candidates(
    user_id: str,
    candidates: Iterable[PatternCandidate],
    now: datetime,
    *,
    min_frequency: float = 0.3,
    min_confidence: float = 0.5,
    complexity_weight: float = 0.8,
) -> list[WorkflowPattern]:
    """Keep candidates above both thresholds and turn them into patterns."""
    patterns = []
    for candidate in candidates:
        if candidate.frequency <= min_frequency or candidate.confidence <= min_confidence:
            continue
        patterns.append(
            WorkflowPattern(
                user_id=user_id,
                pattern_type=candidate.pattern_type,
                source=PatternSource.LOCAL,
                description=candidate.description,
                frequency=_clamp(candidate.frequency),
                confidence=_clamp(candidate.confidence),
                automation_potential=calculate_automation_potential(
                    candidate.frequency, candidate.confidence, complexity_weight
                ),
                suggested_rule=candidate.suggested_rule,
                conditions=dict(candidate.conditions),
                actions=dict(candidate.actions),
                created_at=now,
                last_seen_at=now,
            )
        )
    return patterns


def patterns_from_suggestions(
    user_id: str,
    suggestions: Iterable[AIPatternSuggestion],
    now: datetime,
    *,
    min_automation_potential: float = 0.5,
) -> list[WorkflowPattern]:
    """Convert oracle suggestions above the potential threshold into patterns.

    Suggestions without a type are filed as context patterns.
    """
    patterns = []
    for suggestion in suggestions:
        if suggestion.automation_potential <= min_automation_potential:
            continue
        patterns.append(
            WorkflowPattern(
                user_id=user_id,
                pattern_type=suggestion.pattern_type or PatternType.CONTEXT,
                source=PatternSource.AI,
                description=suggestion.pattern,
                frequency=suggestion.frequency,
                confidence=suggestion.confidence,
                automation_potential=suggestion.automation_potential,
                suggested_rule=suggestion.suggested_rule,
                conditions=dict(suggestion.conditions),
                actions=dict(suggestion.actions),
                created_at=now,
                last_seen_at=now,
            )
        )
    return patterns


def merge_patterns(
    local: Iterable[WorkflowPattern],
    suggested: Iterable[WorkflowPattern],
) -> list[WorkflowPattern]:
    """Union local and oracle patterns, dropping repeats of a signature.

    The first pattern seen for a signature wins, so local detection takes
    precedence over an oracle suggestion with the same conditions.
    """
    merged: list[WorkflowPattern] = []
    seen: set[str] = set()
    for pattern in [*local, *suggested]:
        signature = pattern.signature
        if signature in seen:
            logger.debug(
                "pattern_duplicate_dropped",
                user_id=pattern.user_id,
                source=pattern.source.value,
                description=pattern.description,
            )
            continue
        seen.add(signature)
        merged.append(pattern)
    return merged
