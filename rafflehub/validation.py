"""Parsing helpers that turn raw request fields into typed values."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .errors import ValidationError

# Numeric(12, 2) columns hold at most ten integer digits.
MAX_AMOUNT = Decimal("1e10")


def require_text(value: Any, field: str, *, label: Optional[str] = None, max_length: int = 255) -> str:
    """Return ``value`` stripped, raising if it is missing or blank."""
    name = label or field
    if value is None or not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Missing required field: {name}", field=field)
    text = value.strip()
    if len(text) > max_length:
        raise ValidationError(f"{name} must be at most {max_length} characters", field=field)
    return text


def optional_text(value: Any, field: str, *, max_length: int = 255) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", field=field)
    text = value.strip()
    if len(text) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters", field=field)
    return text or None


def parse_amount(value: Any, field: str, *, allow_zero: bool, message: str) -> Decimal:
    """Parse a monetary amount with two decimal places.

    ``allow_zero`` selects between the "non-negative" and "positive" rules.
    Booleans, NaN and infinities are rejected.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(message, field=field)
    if isinstance(value, str):
        value = value.strip()
        if not value:
            raise ValidationError(message, field=field)
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(message, field=field) from e
    if not amount.is_finite():
        raise ValidationError(message, field=field)
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(message, field=field)
    if amount >= MAX_AMOUNT:
        raise ValidationError(f"{field} must be less than {MAX_AMOUNT:,.0f}", field=field)
    try:
        return amount.quantize(Decimal("0.01"))
    except InvalidOperation as e:
        raise ValidationError(message, field=field) from e


def parse_timestamp(value: Any, field: str, *, message: str) -> datetime:
    """Parse an ISO 8601 timestamp (``Z`` suffix allowed) into aware UTC.

    Naive values are read as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(message, field=field) from e
    else:
        raise ValidationError(message, field=field)

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_future_timestamp(value: Any, field: str, now: datetime) -> datetime:
    message = "End time must be a valid date in the future"
    parsed = parse_timestamp(value, field, message=message)
    if parsed <= now:
        raise ValidationError(message, field=field)
    return parsed


def parse_quantity(value: Any, *, maximum: int = 20) -> int:
    """Parse the number of tickets requested in one purchase."""
    if value is None or value == "":
        return 1
    if isinstance(value, bool):
        raise ValidationError("Quantity must be a whole number", field="quantity")
    try:
        quantity = int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError("Quantity must be a whole number", field="quantity") from e
    if isinstance(value, float) and value != quantity:
        raise ValidationError("Quantity must be a whole number", field="quantity")
    if quantity < 1 or quantity > maximum:
        raise ValidationError(
            f"Quantity must be between 1 and {maximum}", field="quantity"
        )
    return quantity
