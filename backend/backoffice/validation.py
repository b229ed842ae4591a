from __future__ import annotations

from datetime import date, datetime
from typing import Iterable


# Maximum amount: $9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical amounts
MAX_AMOUNT_CENTS = 999_999_999


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate settlement for a period)."""


class InvalidTransitionError(ConflictError):
    """A status change that the state machine does not allow."""

    def __init__(self, current: str, requested: str, entity: str = "sub-order"):
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid {entity} status transition: {current} -> {requested}")


class NotFoundError(LookupError):
    """404-level missing aggregate (order, sub-order, settlement, invoice)."""


class ExternalFailure(RuntimeError):
    """A collaborator outside the database (payment provider) reported failure."""


class RefundProviderError(ExternalFailure):
    """
    The payment provider rejected or failed a refund.

    The refund is already persisted as FAILED when this is raised; retry it
    with refund_service.retry_refund(refund_id) or release it with
    refund_service.abandon_refund(refund_id).
    """

    def __init__(self, refund_id: int, message: str | None):
        self.refund_id = refund_id
        self.provider_message = message
        super().__init__(f"Refund {refund_id} failed at payment provider: {message or 'unknown error'}")


def require_positive_cents(value, field: str = "amount_cents") -> int:
    """
    Strict money validation: plain int, > 0, <= MAX_AMOUNT_CENTS.

    Floats are rejected rather than rounded so callers never lose a cent silently.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer number of cents")
    if value <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    if value > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} exceeds maximum of {MAX_AMOUNT_CENTS}")
    return value


def require_non_negative_cents(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer number of cents")
    if value < 0:
        raise ValidationError(f"{field} cannot be negative")
    return value


def require_choice(value: str, choices: Iterable[str], field: str) -> str:
    allowed = list(choices)
    if value not in allowed:
        raise ValidationError(f"Invalid {field}: {value!r}. Must be one of {allowed}")
    return value


def require_month(year: int, month: int) -> None:
    if not isinstance(month, int) or month < 1 or month > 12:
        raise ValidationError("Month must be between 1 and 12")
    if not isinstance(year, int) or year < 1970 or year > 9999:
        raise ValidationError("Year is out of range")


def require_period(start: date | datetime, end: date | datetime) -> None:
    if start is None or end is None:
        raise ValidationError("Period start and end are required")
    if end <= start:
        raise ValidationError("Period end date must be after start date")
