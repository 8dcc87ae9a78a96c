"""
Error taxonomy for the evaluation, dispatch and escalation pipeline.
"""

from typing import Optional


class RunbookdError(Exception):
    """Base class for all engine errors"""


class ConfigurationError(RunbookdError, ValueError):
    """Malformed configuration, rule or runbook (rejected at load time)"""


class MetricUnavailable(RunbookdError):
    """Metric query failed, timed out or returned no data"""

    def __init__(self, expression: str, reason: str = "no data"):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Metric unavailable for '{expression}': {reason}")


class RunbookNotFound(RunbookdError, KeyError):
    """A firing rule has no registered runbook"""

    def __init__(self, rule_name: str):
        self.rule_name = rule_name
        super().__init__(rule_name)

    def __str__(self):
        return f"No runbook registered for rule '{self.rule_name}'"


class ActionExecutionFailure(RunbookdError):
    """An action failed after exhausting its retry policy"""

    def __init__(self, action: str, target: str, error: Optional[str] = None):
        self.action = action
        self.target = target
        self.error = error
        super().__init__(f"Action '{action}' on '{target}' failed: {error}")


class ActionTimeout(ActionExecutionFailure):
    """An action exceeded its timeout"""


class ParameterValidationError(ConfigurationError):
    """Action parameter could not be bound to its declared type"""


class EscalationDeliveryFailure(RunbookdError):
    """Every configured channel failed to deliver a notification"""

    def __init__(self, alert_id: str, channels):
        self.alert_id = alert_id
        self.channels = list(channels)
        super().__init__(
            f"Failed to deliver notification for {alert_id} via {', '.join(self.channels) or 'no channels'}"
        )
