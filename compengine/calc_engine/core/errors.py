"""
Typed errors raised by the compensation engine.

Legitimate zero outcomes (zero target, eligibility exclusions) are not
errors; they come back as results carrying an ExclusionReason.
"""

from datetime import date
from typing import List, Optional


class CompEngineError(Exception):
    """Base class for every engine error."""


class PlanConfigurationError(CompEngineError):
    """A plan failed validation and was rejected before any computation."""

    def __init__(self, plan_id: Optional[str], issues: List[str]):
        self.plan_id = plan_id
        self.issues = list(issues)
        super().__init__(f"Plan {plan_id or '<unnamed>'} rejected: {'; '.join(self.issues)}")


class TargetSegmentError(CompEngineError):
    """Target segments overlap or have an end date before their start date."""


class PeriodLockedError(CompEngineError):
    def __init__(self, month: date, action: str = "modify"):
        self.month = month
        self.action = action
        super().__init__(f"Cannot {action}: period {month:%Y-%m} is locked")


class MissingExchangeRateError(CompEngineError):
    def __init__(self, currency_code: str, month: Optional[date] = None, rate_type: str = "market"):
        self.currency_code = currency_code
        self.month = month
        self.rate_type = rate_type
        when = f" for {month:%Y-%m}" if month else ""
        super().__init__(f"Missing {rate_type} exchange rate for {currency_code}{when}")


class InvalidTransitionError(CompEngineError):
    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition {getattr(current, 'value', current)} -> {getattr(target, 'value', target)}")


class AllocationError(CompEngineError):
    """Deal-team SPIFF allocation does not fit the configured pool or participants."""


class InvalidExchangeRateError(CompEngineError):
    """An exchange rate is zero or negative."""

    def __init__(self, rate, currency_code: Optional[str] = None, rate_type: str = "market"):
        self.rate = rate
        self.currency_code = currency_code
        self.rate_type = rate_type
        which = f" for {currency_code}" if currency_code else ""
        super().__init__(f"Invalid {rate_type} exchange rate{which}: {rate} (must be positive)")
