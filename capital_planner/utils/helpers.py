"""Shared input coercion helpers.

parse_decimal:  numeric input → Decimal, range-checked or clamped
parse_int:      integer input, range-checked
require_text:   non-empty, length-limited string

All raise ValidationError naming the offending field.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from capital_planner.core.exceptions import ValidationError

TWO_PLACES = Decimal("0.01")


def quantize2(value: Decimal) -> Decimal:
    """Round half-up to two decimals."""
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def round_half_up(value) -> int:
    """Round to the nearest integer, .5 away from zero (not banker's rounding)."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_decimal(value, field, *, minimum=None, maximum=None, clamp=False):
    """Parse ``value`` into a Decimal.

    Booleans are rejected (``True`` is not a weight). When ``clamp`` is set,
    out-of-range values are pulled to the nearest bound instead of raising.
    """
    if value is None or isinstance(value, bool) or value == "":
        raise ValidationError(f"{field} is required", details={field: "required"})
    try:
        number = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", details={field: "not a number"})
    if not number.is_finite():
        raise ValidationError(f"{field} must be a finite number", details={field: "not finite"})

    minimum = Decimal(str(minimum)) if minimum is not None else None
    maximum = Decimal(str(maximum)) if maximum is not None else None
    if minimum is not None and number < minimum:
        if clamp:
            return minimum
        raise ValidationError(
            f"{field} must be >= {minimum}", details={field: f"below minimum {minimum}"},
        )
    if maximum is not None and number > maximum:
        if clamp:
            return maximum
        raise ValidationError(
            f"{field} must be <= {maximum}", details={field: f"above maximum {maximum}"},
        )
    return number


def parse_int(value, field, *, minimum=None, maximum=None, clamp=False):
    """Parse ``value`` into an int; floats with a fractional part are rejected."""
    if value is None or isinstance(value, bool) or value == "":
        raise ValidationError(f"{field} is required", details={field: "required"})
    try:
        number = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: "not an integer"})
    if not number.is_finite() or number != number.to_integral_value():
        raise ValidationError(f"{field} must be an integer", details={field: "not an integer"})
    number = int(number)
    if minimum is not None and number < minimum:
        if clamp:
            return minimum
        raise ValidationError(f"{field} must be >= {minimum}", details={field: f"below minimum {minimum}"})
    if maximum is not None and number > maximum:
        if clamp:
            return maximum
        raise ValidationError(f"{field} must be <= {maximum}", details={field: f"above maximum {maximum}"})
    return number


_TRUE_STRINGS = ("1", "true", "yes", "on")
_FALSE_STRINGS = ("0", "false", "no", "off")


def parse_bool(value, field, *, default=None):
    """Accept JSON booleans, 0/1 and the usual true/false strings."""
    if value is None:
        if default is None:
            raise ValidationError(f"{field} is required", details={field: "required"})
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ValidationError(f"{field} must be a boolean", details={field: "not a boolean"})


def require_text(value, field, *, max_length=None):
    text = (value or "").strip() if isinstance(value, str) or value is None else None
    if text is None:
        raise ValidationError(f"{field} must be a string", details={field: "not a string"})
    if not text:
        raise ValidationError(f"{field} is required", details={field: "required"})
    if max_length and len(text) > max_length:
        raise ValidationError(
            f"{field} must be <= {max_length} characters", details={field: "too long"},
        )
    return text
