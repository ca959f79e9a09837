from __future__ import annotations


# Accepted line item statuses (must match models/line_items.py)
VALID_LINE_ITEM_STATUSES = {"active", "inactive"}

# Accepted deactivation reasons
VALID_REMOVAL_REASONS = {"refunded", "restocked", "removed", "cancelled", "manual"}

# Guard against nonsensical TTLs on issued claim tokens (1 year)
MAX_TOKEN_TTL_SECONDS = 365 * 24 * 3600


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate line item id)."""


class NotFoundError(LookupError):
    """404-level: unknown line item, order or product."""


def require_string(payload: dict, key: str) -> str:
    """
    Fetch a required, non-empty string field.

    Identifiers coming from the commerce platform are sometimes numeric in
    JSON; they are normalized to strings here so lookups stay consistent.
    """
    value = payload.get(key)
    if value is None:
        raise ValidationError(f"{key} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a string")
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    value = value.strip()
    if not value:
        raise ValidationError(f"{key} is required")
    return value


def optional_string(payload: dict, key: str) -> str | None:
    if payload.get(key) is None:
        return None
    value = require_string(payload, key)
    return value


def optional_int(payload: dict, key: str, *, minimum: int | None = None, maximum: int | None = None) -> int | None:
    """
    Strict integer parsing: rejects bools, floats and numeric strings with
    decimals or exponents.
    """
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped or "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{key} must be a plain integer")
        try:
            value = int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    if not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer")
    if minimum is not None and value < minimum:
        raise ValidationError(f"{key} must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{key} must be <= {maximum}")
    return value


def validate_status(status: str) -> str:
    """Normalize and validate a line item status value."""
    normalized = (status or "").strip().lower()
    if normalized not in VALID_LINE_ITEM_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(sorted(VALID_LINE_ITEM_STATUSES))}"
        )
    return normalized


def validate_reason(reason: str | None) -> str | None:
    if reason is None:
        return None
    normalized = reason.strip().lower()
    if normalized not in VALID_REMOVAL_REASONS:
        raise ValidationError(
            f"Invalid reason '{reason}'. Must be one of: {', '.join(sorted(VALID_REMOVAL_REASONS))}"
        )
    return normalized
