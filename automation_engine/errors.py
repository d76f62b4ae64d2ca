"""Error taxonomy for the automation engine."""


class EngineError(Exception):
    """Base class for automation engine errors."""


class InsufficientDataError(EngineError):
    """Not enough events or tasks to run an analysis.

    Never surfaces to callers: services convert it into an empty result that
    carries the reason.
    """

    def __init__(self, reason: str, available: int = 0, required: int = 0):
        super().__init__(reason)
        self.reason = reason
        self.available = available
        self.required = required


class CollaboratorError(EngineError):
    """The AI oracle failed or returned a malformed response."""


class CollaboratorTimeout(CollaboratorError):
    """The AI oracle did not answer before its timeout."""


class PersistenceError(EngineError):
    """A store read or write failed."""


class RuleExecutionError(EngineError):
    """A single rule action could not be executed."""

    def __init__(self, rule_id: str, action: str, message: str):
        super().__init__(f"rule {rule_id} action {action!r}: {message}")
        self.rule_id = rule_id
        self.action = action
