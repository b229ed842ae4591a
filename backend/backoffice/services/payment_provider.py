# Overview: Payment provider port used by refunds, plus an in-process mock.

"""
Payment provider interface.

The settlement core never speaks a gateway protocol. Refunds call
`initiate_refund` on whatever provider the app factory installed in
`app.extensions["payment_provider"]`, passing the refund number as the
idempotency key so a retried refund cannot move money twice at the provider.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from flask import current_app


@dataclass(frozen=True)
class RefundResult:
    """Outcome of a provider refund call."""

    success: bool
    provider_refund_id: str | None = None
    error_message: str | None = None


class PaymentProvider(ABC):
    """Abstract payment provider."""

    @abstractmethod
    def initiate_refund(self, transaction_ref: str | None, amount_cents: int, idempotency_key: str) -> RefundResult:
        """Reverse `amount_cents` of the captured payment `transaction_ref`."""
        ...


class MockPaymentProvider(PaymentProvider):
    """
    Deterministic provider for development and tests.

    - `fail_next(n, message)` makes the next n calls fail
    - a key that already succeeded replays its original result
    - every call is recorded in `calls`
    """

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self._failures_remaining = 0
        self._failure_message = "Provider unavailable"
        self._succeeded: dict[str, RefundResult] = {}

    def fail_next(self, count: int = 1, message: str = "Provider unavailable") -> None:
        self._failures_remaining = count
        self._failure_message = message

    def reset(self) -> None:
        self.calls.clear()
        self._succeeded.clear()
        self._failures_remaining = 0

    def initiate_refund(self, transaction_ref, amount_cents, idempotency_key):
        self.calls.append({
            "transaction_ref": transaction_ref,
            "amount_cents": amount_cents,
            "idempotency_key": idempotency_key,
        })

        if idempotency_key in self._succeeded:
            return self._succeeded[idempotency_key]

        if self._failures_remaining > 0:
            self._failures_remaining -= 1
            return RefundResult(success=False, error_message=self._failure_message)

        result = RefundResult(success=True, provider_refund_id=f"mock_rf_{idempotency_key}")
        self._succeeded[idempotency_key] = result
        return result


def get_payment_provider() -> PaymentProvider:
    return current_app.extensions["payment_provider"]
