# Overview: Service-layer operations for completing buyer payments.

"""
Payment completion.

Marks the order paid, moves every NEW sub-order to PAID and allocates escrow
(with INITIAL commission records) in one transaction. Capturing the payment
itself is the provider's job; this module only records the result.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Order
from ..time_utils import utcnow
from ..validation import ConflictError, NotFoundError, ValidationError
from .concurrency import lock_for_update, run_in_transaction
from .escrow_service import apply_escrow_allocations
from .order_lifecycle_service import STATUS_NEW, STATUS_PAID, apply_sub_order_transition, refresh_order_status


# =============================================================================
# PAYMENT STATUS (CONSTANTS)
# =============================================================================

PAYMENT_STATUS_PENDING = "PENDING"
PAYMENT_STATUS_COMPLETED = "COMPLETED"
PAYMENT_STATUS_FAILED = "FAILED"
PAYMENT_STATUS_REFUNDED = "REFUNDED"


def _load_order_for_update(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def complete_payment(order_id: int, payment_reference: str, actor_user_id: int | None = None) -> Order:
    """
    Record a captured payment for an order.

    Idempotent: completing an already-completed order returns it unchanged
    (escrow allocation is re-checked, never duplicated).

    Raises:
        ValidationError: missing payment reference
        NotFoundError: unknown order
        ConflictError: order payment already refunded
    """
    if not payment_reference:
        raise ValidationError("payment_reference is required")

    def _op():
        order = _load_order_for_update(order_id)

        if order.payment_status == PAYMENT_STATUS_COMPLETED:
            apply_escrow_allocations(order)
            return order
        if order.payment_status == PAYMENT_STATUS_REFUNDED:
            raise ConflictError(f"Order {order_id} payment was already refunded")

        order.payment_status = PAYMENT_STATUS_COMPLETED
        order.payment_reference = payment_reference
        order.paid_at = utcnow()

        for sub_order in order.sub_orders:
            if sub_order.status == STATUS_NEW:
                apply_sub_order_transition(
                    sub_order,
                    STATUS_PAID,
                    notes="Payment completed",
                    actor_user_id=actor_user_id,
                    refresh_parent=False,
                )
        refresh_order_status(order)

        apply_escrow_allocations(order)
        current_app.logger.info("Order %s paid (reference %s)", order.id, payment_reference)
        return order

    return run_in_transaction(_op)


def record_payment_failure(order_id: int, message: str | None = None) -> Order:
    """Mark a pending payment as FAILED; the order stays NEW."""
    def _op():
        order = _load_order_for_update(order_id)
        if order.payment_status != PAYMENT_STATUS_PENDING:
            raise ConflictError(
                f"Cannot record payment failure for order in payment status {order.payment_status}"
            )
        order.payment_status = PAYMENT_STATUS_FAILED
        current_app.logger.warning("Payment failed for order %s: %s", order.id, message)
        return order

    return run_in_transaction(_op)
