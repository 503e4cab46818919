"""
Invariant checking for hard control-plane guarantees.

A broken invariant (a cap breach, a suppressed risk exit) is a correctness
bug. In strict builds it is fatal; in production it is logged at ERROR and
the offending mutation is refused by the caller. Both modes share the same
check() entry point so call sites never branch on the mode.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List

from utils.exceptions import InvariantViolationError

logger = logging.getLogger(__name__)


@dataclass
class InvariantViolation:
    """Record of one failed invariant check."""
    invariant: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    detected_at: datetime = field(default_factory=datetime.now)


class InvariantChecker(ABC):
    """Shared invariant check; subclasses decide what a failure does."""

    def __init__(self, max_recorded: int = 1000):
        self.max_recorded = max_recorded
        self.violations: List[InvariantViolation] = []  # most recent max_recorded
        self.violation_count = 0

    def check(self, condition: bool, invariant: str, message: str, **details: Any) -> bool:
        """
        Check an invariant.

        Args:
            condition: True when the invariant holds
            invariant: Short invariant name (e.g. "pool_hard_cap")
            message: Human-readable description of the failure
            **details: Structured context for the log record

        Returns:
            True if the invariant holds, False if it was violated
            (strict checkers raise instead of returning False)
        """
        if condition:
            return True

        violation = InvariantViolation(invariant=invariant, message=message, details=details)
        self.violation_count += 1
        self.violations.append(violation)
        if len(self.violations) > self.max_recorded:
            del self.violations[0]
        logger.error(
            f"🚨 INVARIANT VIOLATED [{invariant}]: {message}",
            extra={"invariant": invariant, **details}
        )
        self._on_violation(violation)
        return False

    @abstractmethod
    def _on_violation(self, violation: InvariantViolation) -> None:
        """React to a violation after it has been logged."""
        pass

    @property
    def strict(self) -> bool:
        return False


class StrictInvariantChecker(InvariantChecker):
    """Fatal mode for dev/test builds: every violation raises."""

    def _on_violation(self, violation: InvariantViolation) -> None:
        raise InvariantViolationError(
            violation.message,
            invariant=violation.invariant,
            details=violation.details
        )

    @property
    def strict(self) -> bool:
        return True


class LoggingInvariantChecker(InvariantChecker):
    """Production mode: violations are logged and recorded, never raised."""

    def _on_violation(self, violation: InvariantViolation) -> None:
        pass


def make_invariant_checker(strict: bool, max_recorded: int = 1000) -> InvariantChecker:
    """Select the invariant checker implementation for this build."""
    if strict:
        return StrictInvariantChecker(max_recorded)
    return LoggingInvariantChecker(max_recorded)
