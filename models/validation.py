"""Validation utilities for control plane inputs."""
import math
import re
from utils.exceptions import ValidationError


def validate_identifier(value: str, kind: str = "identifier") -> str:
    """
    Validate and normalize a position id, trade id, tranche id or pool address.

    Args:
        value: Identifier to validate
        kind: What the identifier names (used in error messages)

    Returns:
        Stripped identifier

    Raises:
        ValidationError: If identifier is invalid
    """
    if value is None or not str(value).strip():
        raise ValidationError(f"{kind} cannot be empty", field=kind)

    value = str(value).strip()

    if not re.match(r'^[A-Za-z0-9_\-:.]{1,128}$', value):
        raise ValidationError(
            f"Invalid {kind} format: {value!r}. "
            "Use 1-128 letters, digits, '_', '-', ':' or '.'",
            field=kind
        )

    return value


def validate_usd_amount(amount: float, kind: str = "amount", allow_zero: bool = True) -> float:
    """
    Validate a USD amount.

    Args:
        amount: Amount to validate
        kind: What the amount is (used in error messages)
        allow_zero: Whether zero is acceptable

    Returns:
        Validated amount as float

    Raises:
        ValidationError: If amount is invalid
    """
    try:
        amount = float(amount)
    except (TypeError, ValueError):
        raise ValidationError(f"{kind} must be a number, got {amount!r}", field=kind)

    if math.isnan(amount) or math.isinf(amount):
        raise ValidationError(f"{kind} must be finite, got {amount}", field=kind)

    if amount < 0:
        raise ValidationError(f"{kind} cannot be negative, got {amount}", field=kind)

    if not allow_zero and amount == 0:
        raise ValidationError(f"{kind} must be positive, got {amount}", field=kind)

    return amount


def validate_equity(equity: float) -> float:
    """Validate total portfolio equity (must be positive)."""
    return validate_usd_amount(equity, kind="Total equity", allow_zero=False)


def validate_fraction(value: float, kind: str = "fraction") -> float:
    """
    Validate a fraction in [0, 1].

    Raises:
        ValidationError: If value is outside [0, 1]
    """
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{kind} must be a number, got {value!r}", field=kind)

    if math.isnan(value) or not 0.0 <= value <= 1.0:
        raise ValidationError(f"{kind} must be between 0 and 1, got {value}", field=kind)

    return value
