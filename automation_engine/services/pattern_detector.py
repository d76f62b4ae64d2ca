"""Statistical pattern detection over a window of behavior events.

Three independent sub-detectors each turn an ordered event list into
candidate patterns:

- temporal: events bucketed by (day of week, 4-hour block)
- sequence: adjacent event-type pairs that happen close together
- context: recurring scalar metadata values

All functions here are pure; thresholds come from the caller.
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from automation_engine.errors import InsufficientDataError
from automation_engine.models.event import BehaviorEvent, is_scalar
from automation_engine.models.pattern import PatternCandidate, PatternType

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

HOUR_BLOCK_SIZE = 4


def day_of_week(moment: datetime) -> int:
    """Day index with Sunday = 0."""
    return (moment.weekday() + 1) % 7


def hour_block(moment: datetime) -> int:
    """Start hour of the 4-hour block containing ``moment``."""
    return (moment.hour // HOUR_BLOCK_SIZE) * HOUR_BLOCK_SIZE


def _event_type_value(event: BehaviorEvent) -> str:
    return event.event_type.value if hasattr(event.event_type, "value") else str(event.event_type)


def detect_time_patterns(
    events: Sequence[BehaviorEvent],
    threshold: float = 0.3,
) -> list[PatternCandidate]:
    """Find (day of week, 4-hour block) buckets holding more than ``threshold`` of events."""
    total = len(events)
    if total == 0:
        return []

    buckets: Counter = Counter(
        (day_of_week(event.timestamp), hour_block(event.timestamp)) for event in events
    )

    candidates = []
    for (day, block), count in buckets.items():
        frequency = count / total
        if frequency <= threshold:
            continue
        day_name = DAY_NAMES[day]
        candidates.append(
            PatternCandidate(
                pattern_type=PatternType.TEMPORAL,
                description=f"Frequently performs actions on {day_name} around {block}:00",
                frequency=frequency,
                confidence=min(frequency * 2, 1.0),
                suggested_rule=f"Auto-schedule similar tasks for {day_name} {block}:00",
                conditions={"day_of_week": day, "hour_block": block},
                actions={"suggest_time": f"{day}-{block}"},
            )
        )
    return candidates


def detect_sequence_patterns(
    events: Sequence[BehaviorEvent],
    threshold: float = 0.2,
    window: timedelta = timedelta(minutes=10),
) -> list[PatternCandidate]:
    """Find event-type transitions that recur within ``window`` of each other.

    Frequency is measured against every adjacent pair, including pairs that
    were too far apart to count.
    """
    total_pairs = len(events) - 1
    if total_pairs <= 0:
        return []

    transitions: Counter = Counter()
    for current, following in zip(events, events[1:]):
        if following.timestamp - current.timestamp < window:
            transitions[(_event_type_value(current), _event_type_value(following))] += 1

    candidates = []
    for (first, second), count in transitions.items():
        frequency = count / total_pairs
        if frequency <= threshold:
            continue
        candidates.append(
            PatternCandidate(
                pattern_type=PatternType.SEQUENCE,
                description=f"Frequently follows sequence: {first} then {second}",
                frequency=frequency,
                confidence=min(frequency * 3, 1.0),
                suggested_rule=f"Auto-suggest next action in sequence: {first}->{second}",
                conditions={"event_type": first},
                actions={"suggest_next": second},
            )
        )
    return candidates


def _scalar_fields(metadata: dict[str, Any]) -> Iterable[tuple[str, Any]]:
    for field, value in metadata.items():
        if is_scalar(value):
            yield field, value


def detect_context_patterns(
    events: Sequence[BehaviorEvent],
    threshold: float = 0.4,
) -> list[PatternCandidate]:
    """Find scalar metadata values present on more than ``threshold`` of events."""
    total = len(events)
    if total == 0:
        return []

    # Keyed on the value's type too, so True and 1 stay distinct.
    values: Counter = Counter()
    originals: dict[tuple[str, str, Any], Any] = {}
    for event in events:
        for field, value in _scalar_fields(event.metadata):
            key = (field, type(value).__name__, value)
            values[key] += 1
            originals.setdefault(key, value)

    candidates = []
    for key, count in values.items():
        frequency = count / total
        if frequency <= threshold:
            continue
        field = key[0]
        value = originals[key]
        candidates.append(
            PatternCandidate(
                pattern_type=PatternType.CONTEXT,
                description=f"Frequently uses {field} = {value}",
                frequency=frequency,
                confidence=min(frequency * 2, 1.0),
                suggested_rule=f"Auto-set {field} to {value} for similar contexts",
                conditions={field: value},
                actions={"auto_set": {field: value}},
            )
        )
    return candidates


def detect_patterns(
    events: Sequence[BehaviorEvent],
    *,
    min_events: int = 10,
    temporal_threshold: float = 0.3,
    sequence_threshold: float = 0.2,
    sequence_window: timedelta = timedelta(minutes=10),
    context_threshold: float = 0.4,
) -> list[PatternCandidate]:
    """Run all sub-detectors over one user's events.

    Raises:
        InsufficientDataError: fewer than ``min_events`` events
    """
    if len(events) < min_events:
        raise InsufficientDataError(
            "Insufficient data for pattern analysis",
            available=len(events),
            required=min_events,
        )

    ordered = sorted(events, key=lambda event: event.timestamp)
    return [
        *detect_time_patterns(ordered, temporal_threshold),
        *detect_sequence_patterns(ordered, sequence_threshold, sequence_window),
        *detect_context_patterns(ordered, context_threshold),
    ]
