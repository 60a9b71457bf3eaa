"""Shared parsing helpers for runtime and config value normalization."""

from __future__ import annotations


_TRUE_BOOLEAN_TOKENS = frozenset({"1", "true", "yes", "on"})
_FALSE_BOOLEAN_TOKENS = frozenset({"0", "false", "no", "off"})


def normalize_optional_string(value: object) -> str | None:
    """Normalize an optional value to a stripped non-empty string.

    Args:
        value: Arbitrary input value.

    Returns:
        Stripped string value, or `None` when the value is empty after trimming.
    """

    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text


def parse_permissive_boolean(value: object) -> bool | None:
    """Parse a permissive boolean token and return `None` for invalid values."""

    if isinstance(value, bool):
        return value

    normalized = normalize_optional_string(value)
    if normalized is None:
        return None

    token = normalized.lower()
    if token in _TRUE_BOOLEAN_TOKENS:
        return True
    if token in _FALSE_BOOLEAN_TOKENS:
        return False
    return None


def parse_number(value: object, field_name: str) -> float:
    """Parse an int/float/numeric string, rejecting booleans and blanks."""

    if isinstance(value, bool):
        raise ValueError(f"`{field_name}` must be a number.")
    if isinstance(value, (int, float)):
        return float(value)
    normalized = normalize_optional_string(value)
    if normalized is None:
        raise ValueError(f"`{field_name}` must be a number.")
    try:
        return float(normalized)
    except ValueError as exc:
        raise ValueError(f"`{field_name}` must be a number.") from exc


def parse_integer(value: object, field_name: str) -> int:
    """Parse an integer value, rejecting fractional numbers."""

    parsed = parse_number(value, field_name)
    if not parsed.is_integer():
        raise ValueError(f"`{field_name}` must be an integer.")
    return int(parsed)


def require_range(
    value: float,
    field_name: str,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> None:
    """Raise `ValueError` when a numeric value falls outside an inclusive range."""

    if minimum is not None and value < minimum:
        raise ValueError(f"`{field_name}` must be >= {minimum:g}, got {value:g}.")
    if maximum is not None and value > maximum:
        raise ValueError(f"`{field_name}` must be <= {maximum:g}, got {value:g}.")
