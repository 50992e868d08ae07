"""
Alert engine exception hierarchy.

Routers translate these into HTTP errors; services raise them at the seams
where a caller can act on the failure.
"""
from typing import Optional


class AlertEngineError(Exception):
    """Base class for all alert engine errors."""


class AlertValidationError(AlertEngineError):
    """An inbound alert event failed boundary validation."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class RuleValidationError(AlertEngineError):
    """A routing rule's conditions or actions are malformed."""

    def __init__(self, message: str, errors: Optional[list] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(message)


class AlertGroupNotFoundError(AlertEngineError):
    def __init__(self, group_id):
        self.group_id = group_id
        super().__init__(f"Alert group {group_id} not found")


class RoutingRuleNotFoundError(AlertEngineError):
    def __init__(self, rule_id):
        self.rule_id = rule_id
        super().__init__(f"Routing rule {rule_id} not found")


class DispatchError(AlertEngineError):
    """Raised inside notification adapters; never escapes the dispatcher."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class SchedulingError(AlertEngineError):
    """The durable escalation queue rejected a schedule or cancel call."""
