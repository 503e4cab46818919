"""Exception taxonomy for the control plane.

Blocked decisions (dwell guard, cooldowns, tranche gates) are results, not
exceptions. Exceptions are reserved for bad configuration, malformed
boundary input, broken invariants and lifecycle misuse.
"""
from typing import Any, Dict, Optional


class ControlPlaneError(Exception):
    """Root of every error raised by the control plane."""

    def __init__(
        self,
        message: str,
        correlation_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id
        self.details = details or {}

    def to_log_fields(self) -> Dict[str, Any]:
        """Flat fields for a structured log record."""
        fields: Dict[str, Any] = {"error_type": self.__class__.__name__}
        if self.correlation_id:
            fields["correlation_id"] = self.correlation_id
        for key, value in self.details.items():
            fields[f"detail_{key}"] = value if isinstance(value, (str, int, float, bool)) else str(value)
        return fields


class ConfigurationError(ControlPlaneError):
    """A threshold, table or environment override is invalid."""

    def __init__(self, message: str, setting: Optional[str] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.setting = setting


class ValidationError(ControlPlaneError):
    """Malformed input at the boundary (ids, USD amounts, equity, fractions)."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.field = field


class InvariantViolationError(ControlPlaneError):
    """A hard guarantee broke (cap breach, suppressed risk exit). Strict builds only."""

    def __init__(
        self,
        message: str,
        invariant: str,
        correlation_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        super().__init__(message, correlation_id, details)
        self.invariant = invariant

    def __str__(self) -> str:
        return f"[{self.invariant}] {self.message}"


class ControlPlaneStateError(ControlPlaneError):
    """The process-wide control plane or a store was used out of lifecycle order."""
    pass
