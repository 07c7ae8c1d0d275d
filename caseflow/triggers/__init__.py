"""Event-driven trigger rules."""

from caseflow.triggers.engine import RuleExecutionResult, RuleStatus, TriggerEngine
from caseflow.triggers.resolver import EventPlaceholderResolver, validate_placeholders

__all__ = [
    "TriggerEngine",
    "RuleExecutionResult",
    "RuleStatus",
    "EventPlaceholderResolver",
    "validate_placeholders",
]
