# Overview: Service-layer operations for refunds and proportional commission reversal.

"""
Refund Service

================================================================================
PURPOSE: Return buyer money for a whole order or one sub-order while keeping
escrow, commission and refunded running totals consistent
================================================================================

A refund has three steps:

1. Reservation (one locked transaction):
   - RefundTransaction row created (status PROCESSING, funds_reversed=True)
   - one RefundAllocation per sub-order touched
   - escrow drawn down, commission reversed proportionally
   - sub-order and order refunded_cents incremented
2. Provider call, keyed by refund_number as idempotency key.
3. Outcome (second transaction):
   - success -> COMPLETED, provider_succeeded=True; fully refunded sub-orders
     move to REFUNDED and a fully refunded order gets payment_status REFUNDED
   - failure -> FAILED with the provider message, RefundProviderError raised;
     statuses are left alone

Because the balances are reserved in step 1, two concurrent refunds against
the same sub-order can never push refunded_cents above total_cents.

A FAILED refund is either retried or abandoned:
- retry_refund() re-runs the reservation only when funds_reversed is False,
  then repeats the provider call with the same idempotency key
- abandon_refund() puts every allocation back and marks the refund ABANDONED

Refund operations must be called outside any enclosing unit of work: the
provider call happens between two commits.
================================================================================
"""

from __future__ import annotations

from uuid import uuid4

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import EscrowTransaction, Order, OrderItem, RefundAllocation, RefundTransaction, SubOrder
from ..time_utils import utcnow
from ..validation import (
    ConflictError,
    NotFoundError,
    RefundProviderError,
    ValidationError,
    require_positive_cents,
)
from .commission_service import (
    get_initial_commission_transaction,
    recalculate_for_refund,
    reinstate_refund_adjustment,
)
from .concurrency import lock_for_update, run_in_transaction
from .escrow_service import (
    ESCROW_RELEASED,
    apply_commission_adjustment,
    apply_restore_from_refund,
    apply_return_to_buyer,
)
from .fulfillment_service import cancel_item_quantity
from .order_lifecycle_service import (
    STATUS_NEW,
    STATUS_REFUNDED,
    TERMINAL_STATUSES,
    apply_sub_order_transition,
    can_transition,
    refresh_order_status,
)
from .payment_provider import get_payment_provider


# =============================================================================
# REFUND STATUS CONSTANTS
# =============================================================================

REFUND_STATUS_REQUESTED = "REQUESTED"
REFUND_STATUS_PROCESSING = "PROCESSING"
REFUND_STATUS_COMPLETED = "COMPLETED"
REFUND_STATUS_FAILED = "FAILED"
REFUND_STATUS_ABANDONED = "ABANDONED"

REFUND_STATUSES = (
    REFUND_STATUS_REQUESTED,
    REFUND_STATUS_PROCESSING,
    REFUND_STATUS_COMPLETED,
    REFUND_STATUS_FAILED,
    REFUND_STATUS_ABANDONED,
)


def generate_refund_number() -> str:
    return f"REF-{utcnow():%Y%m%d%H%M%S}-{uuid4().hex[:6].upper()}"


# =============================================================================
# ELIGIBILITY
# =============================================================================

def _lock_sub_order(sub_order_id: int) -> SubOrder:
    sub_order = lock_for_update(db.session.query(SubOrder).filter_by(id=sub_order_id)).first()
    if sub_order is None:
        raise NotFoundError(f"Sub-order {sub_order_id} not found")
    return sub_order


def _lock_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def _lock_escrow(sub_order_id: int) -> EscrowTransaction | None:
    return lock_for_update(
        db.session.query(EscrowTransaction).filter_by(sub_order_id=sub_order_id)
    ).first()


def _check_sub_order_refund(sub_order: SubOrder, amount_cents: int) -> None:
    """State checks shared by partial refunds, full refunds and retries."""
    if sub_order.order.payment_status != "COMPLETED":
        raise ConflictError("Order does not have a completed payment")

    if sub_order.status == STATUS_NEW:
        raise ConflictError(f"Sub-order {sub_order.id} has not been paid")

    remaining = sub_order.refundable_cents
    if remaining <= 0:
        raise ConflictError(f"Sub-order {sub_order.id} has already been fully refunded")
    if amount_cents > remaining:
        raise ConflictError(
            f"Refund amount {amount_cents} exceeds available refund amount {remaining} for sub-order {sub_order.id}"
        )

    completes = sub_order.refunded_cents + amount_cents >= sub_order.total_cents
    if completes and sub_order.status not in TERMINAL_STATUSES and not can_transition(sub_order.status, STATUS_REFUNDED):
        raise ConflictError(
            f"Sub-order {sub_order.id} in {sub_order.status} status cannot be fully refunded; cancel it first"
        )

    escrow = db.session.query(EscrowTransaction).filter_by(sub_order_id=sub_order.id).first()
    if escrow is not None:
        if escrow.status == ESCROW_RELEASED:
            raise ConflictError("Cannot refund - escrow has already been released to seller")
        available = escrow.gross_cents - escrow.refunded_cents
        if amount_cents > available:
            raise ConflictError(f"Refund amount exceeds available escrow balance {available}")


def validate_partial_refund_eligibility(sub_order_id: int, amount_cents: int) -> SubOrder:
    """
    Check a partial refund without mutating anything.

    Order of checks: sub-order exists, amount > 0, amount within the
    remaining refundable balance, sub-order state allows the refund.

    Raises:
        NotFoundError, ValidationError, ConflictError
    """
    sub_order = db.session.get(SubOrder, sub_order_id)
    if sub_order is None:
        raise NotFoundError(f"Sub-order {sub_order_id} not found")
    require_positive_cents(amount_cents, "refund amount")
    _check_sub_order_refund(sub_order, amount_cents)
    return sub_order


def validate_refund_eligibility(order_id: int, amount_cents: int | None = None) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    if order.payment_status != "COMPLETED":
        raise ConflictError("Order does not have a completed payment")

    available = order.total_cents - order.refunded_cents
    if available <= 0:
        raise ConflictError("No amount available to refund. Order has been fully refunded.")
    if amount_cents is not None:
        require_positive_cents(amount_cents, "refund amount")
        if amount_cents > available:
            raise ConflictError(f"Refund amount {amount_cents} exceeds available refund amount {available}")
    return order


# =============================================================================
# BALANCE MUTATION (caller owns the transaction)
# =============================================================================

def _apply_sub_order_refund(
    order: Order,
    sub_order: SubOrder,
    amount_cents: int,
    refund: RefundTransaction,
) -> RefundAllocation:
    allocation = RefundAllocation(
        refund_transaction_id=refund.id,
        sub_order_id=sub_order.id,
        amount_cents=amount_cents,
        commission_adjustment_cents=0,
        created_at=utcnow(),
    )

    escrow = _lock_escrow(sub_order.id)
    if escrow is not None:
        apply_return_to_buyer(escrow, amount_cents)
        initial = get_initial_commission_transaction(escrow.id)
        original_commission = initial.commission_cents if initial is not None else 0
        adjustment = recalculate_for_refund(escrow.id, amount_cents, original_commission)
        apply_commission_adjustment(escrow, adjustment)
        allocation.escrow_transaction_id = escrow.id
        allocation.commission_adjustment_cents = adjustment
    else:
        current_app.logger.warning("No escrow for sub-order %s; refunding balances only", sub_order.id)

    sub_order.refunded_cents += amount_cents
    order.refunded_cents += amount_cents
    db.session.add(allocation)
    return allocation


def _apply_partial_balances(refund: RefundTransaction) -> None:
    sub_order = _lock_sub_order(refund.sub_order_id)
    order = _lock_order(sub_order.order_id)
    _check_sub_order_refund(sub_order, refund.amount_cents)

    _apply_sub_order_refund(order, sub_order, refund.amount_cents, refund)
    refund.funds_reversed = True
    db.session.flush()


def _full_refund_plan(order: Order) -> list[tuple[SubOrder, int]]:
    plan = []
    for sub_order in order.sub_orders:
        remaining = sub_order.refundable_cents
        if sub_order.status not in TERMINAL_STATUSES and not can_transition(sub_order.status, STATUS_REFUNDED):
            raise ConflictError(
                f"Sub-order {sub_order.id} in {sub_order.status} status cannot be refunded"
            )
        if remaining > 0:
            escrow = db.session.query(EscrowTransaction).filter_by(sub_order_id=sub_order.id).first()
            if escrow is not None and escrow.status == ESCROW_RELEASED:
                raise ConflictError(
                    f"Cannot refund - escrow for sub-order {sub_order.id} has already been released to seller"
                )
        plan.append((sub_order, remaining))
    return plan


def _apply_full_balances(refund: RefundTransaction) -> None:
    order = _lock_order(refund.order_id)
    if order.payment_status != "COMPLETED":
        raise ConflictError("Order does not have a completed payment")
    plan = _full_refund_plan(order)

    for sub_order, remaining in plan:
        if remaining > 0:
            _apply_sub_order_refund(order, sub_order, remaining, refund)

    refund.funds_reversed = True
    db.session.flush()


def _apply_balances(refund: RefundTransaction) -> None:
    if refund.is_full_order_refund:
        _apply_full_balances(refund)
    else:
        _apply_partial_balances(refund)


def _apply_completion(refund: RefundTransaction) -> None:
    """Status changes that wait for the provider: REFUNDED sub-orders and order payment status."""
    order = _lock_order(refund.order_id)
    if refund.is_full_order_refund:
        sub_orders = list(order.sub_orders)
    else:
        sub_orders = [_lock_sub_order(refund.sub_order_id)]

    for sub_order in sub_orders:
        if sub_order.status in TERMINAL_STATUSES:
            continue
        if sub_order.refunded_cents < sub_order.total_cents and not refund.is_full_order_refund:
            continue
        if not can_transition(sub_order.status, STATUS_REFUNDED):
            current_app.logger.warning(
                "Sub-order %s moved to %s while refund %s was pending; status left unchanged",
                sub_order.id, sub_order.status, refund.refund_number,
            )
            continue
        apply_sub_order_transition(
            sub_order,
            STATUS_REFUNDED,
            notes=f"Refunded {sub_order.refunded_cents} cents ({refund.refund_number})",
            actor_user_id=refund.initiated_by_user_id,
            refresh_parent=False,
        )

    if order.refunded_cents >= order.total_cents:
        order.payment_status = "REFUNDED"
    refresh_order_status(order)


def _release_reservation(refund: RefundTransaction) -> None:
    """Undo every allocation of a refund whose money never left the platform."""
    order = _lock_order(refund.order_id)
    for allocation in refund.allocations:
        sub_order = _lock_sub_order(allocation.sub_order_id)
        if sub_order.status == STATUS_REFUNDED:
            raise ConflictError(
                f"Sub-order {sub_order.id} was fully refunded by a later refund; reservation cannot be released"
            )
        if allocation.escrow_transaction_id is not None:
            escrow = _lock_escrow(allocation.sub_order_id)
            apply_restore_from_refund(escrow, allocation.amount_cents)
            restored = reinstate_refund_adjustment(
                escrow.id,
                allocation.amount_cents,
                allocation.commission_adjustment_cents,
                notes=f"Reinstated commission for abandoned refund {refund.refund_number}",
            )
            apply_commission_adjustment(escrow, restored)
        sub_order.refunded_cents -= allocation.amount_cents
        order.refunded_cents -= allocation.amount_cents

    refund.funds_reversed = False
    db.session.flush()


# =============================================================================
# PROVIDER CALL
# =============================================================================

def _dispatch_to_provider(refund_id: int) -> RefundTransaction:
    refund = db.session.get(RefundTransaction, refund_id)
    transaction_ref = refund.order.payment_reference
    amount_cents = refund.amount_cents
    idempotency_key = refund.refund_number

    provider = get_payment_provider()
    try:
        result = provider.initiate_refund(transaction_ref, amount_cents, idempotency_key)
        success = result.success
        provider_refund_id = result.provider_refund_id
        error_message = result.error_message
    except Exception as exc:
        current_app.logger.exception("Payment provider raised during refund %s", idempotency_key)
        success = False
        provider_refund_id = None
        error_message = str(exc) or type(exc).__name__

    def _record():
        locked = lock_for_update(db.session.query(RefundTransaction).filter_by(id=refund_id)).first()
        locked.attempt_count += 1
        locked.processed_at = utcnow()
        if success:
            locked.status = REFUND_STATUS_COMPLETED
            locked.provider_succeeded = True
            locked.provider_refund_id = provider_refund_id
            locked.error_message = None
            _apply_completion(locked)
        else:
            locked.status = REFUND_STATUS_FAILED
            locked.error_message = error_message
        return locked

    refund = run_in_transaction(_record)

    if not success:
        current_app.logger.error("Refund %s failed: %s", idempotency_key, error_message)
        raise RefundProviderError(refund_id, error_message)

    current_app.logger.info("Refund %s completed for %s cents", idempotency_key, amount_cents)
    return refund


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================

def _reserve_partial_refund(
    sub_order_id: int,
    amount_cents: int,
    reason: str | None,
    initiated_by_user_id: int | None,
    return_request_id: int | None,
) -> int:
    sub_order = _lock_sub_order(sub_order_id)
    refund = RefundTransaction(
        refund_number=generate_refund_number(),
        order_id=sub_order.order_id,
        sub_order_id=sub_order.id,
        store_id=sub_order.store_id,
        return_request_id=return_request_id,
        amount_cents=amount_cents,
        status=REFUND_STATUS_PROCESSING,
        reason=reason,
        initiated_by_user_id=initiated_by_user_id,
        created_at=utcnow(),
    )
    db.session.add(refund)
    db.session.flush()
    _apply_balances(refund)

    current_app.logger.info(
        "Created partial refund %s for sub-order %s, amount %s cents",
        refund.refund_number, sub_order_id, amount_cents,
    )
    return refund.id


def process_partial_refund(
    sub_order_id: int,
    amount_cents: int,
    *,
    reason: str | None = None,
    initiated_by_user_id: int | None = None,
    return_request_id: int | None = None,
) -> RefundTransaction:
    """
    Refund part (or the rest) of one sub-order.

    Raises:
        NotFoundError: unknown sub-order
        ValidationError: non-positive amount
        ConflictError: amount above the remaining balance, state forbids refund,
            escrow already released
        RefundProviderError: the provider failed; the amount stays reserved,
            the refund is persisted as FAILED and can be retried or abandoned
    """
    if db.session.get(SubOrder, sub_order_id) is None:
        raise NotFoundError(f"Sub-order {sub_order_id} not found")
    require_positive_cents(amount_cents, "refund amount")

    refund_id = run_in_transaction(
        lambda: _reserve_partial_refund(sub_order_id, amount_cents, reason, initiated_by_user_id, return_request_id)
    )
    return _dispatch_to_provider(refund_id)


def process_full_refund(
    order_id: int,
    *,
    reason: str | None = None,
    initiated_by_user_id: int | None = None,
) -> RefundTransaction:
    """
    Refund everything still refundable on an order and move every sub-order to REFUNDED.

    One RefundTransaction (sub_order_id NULL) covers the whole amount; commission
    is reversed once per sub-order escrow.
    """
    def _reserve():
        order = _lock_order(order_id)
        if order.payment_status != "COMPLETED":
            raise ConflictError("Order does not have a completed payment")
        amount_cents = order.total_cents - order.refunded_cents
        if amount_cents <= 0:
            raise ConflictError("No amount available to refund. Order has been fully refunded.")

        refund = RefundTransaction(
            refund_number=generate_refund_number(),
            order_id=order.id,
            sub_order_id=None,
            store_id=None,
            amount_cents=amount_cents,
            status=REFUND_STATUS_PROCESSING,
            reason=reason,
            initiated_by_user_id=initiated_by_user_id,
            created_at=utcnow(),
        )
        db.session.add(refund)
        db.session.flush()
        _apply_balances(refund)

        current_app.logger.info(
            "Created full refund %s for order %s, amount %s cents",
            refund.refund_number, order_id, amount_cents,
        )
        return refund.id

    refund_id = run_in_transaction(_reserve)
    return _dispatch_to_provider(refund_id)


def retry_refund(refund_id: int) -> RefundTransaction:
    """
    Retry a FAILED refund with the same amount and idempotency key.

    Raises:
        NotFoundError: unknown refund
        ConflictError: refund is not FAILED
        RefundProviderError: the provider failed again
    """
    def _prepare():
        refund = lock_for_update(db.session.query(RefundTransaction).filter_by(id=refund_id)).first()
        if refund is None:
            raise NotFoundError(f"Refund {refund_id} not found")
        if refund.status != REFUND_STATUS_FAILED:
            raise ConflictError(f"Refund {refund_id} is not in FAILED status (current: {refund.status})")

        if not refund.funds_reversed:
            _apply_balances(refund)
        refund.status = REFUND_STATUS_PROCESSING
        current_app.logger.info("Retrying failed refund %s", refund.refund_number)
        return refund.id

    run_in_transaction(_prepare)
    return _dispatch_to_provider(refund_id)


def abandon_refund(refund_id: int, *, reason: str | None = None, actor_user_id: int | None = None) -> RefundTransaction:
    """
    Give up on a FAILED refund and release what it reserved.

    The reserved amounts go back to escrow and to the refunded totals, and the
    commission audit trail gets a compensating adjustment. The refund ends
    ABANDONED and can no longer be retried.

    Raises:
        NotFoundError: unknown refund
        ConflictError: refund is not FAILED, or a later refund already completed the sub-order
    """
    def _op():
        refund = lock_for_update(db.session.query(RefundTransaction).filter_by(id=refund_id)).first()
        if refund is None:
            raise NotFoundError(f"Refund {refund_id} not found")
        if refund.status != REFUND_STATUS_FAILED:
            raise ConflictError(f"Only FAILED refunds can be abandoned (current: {refund.status})")
        if refund.provider_succeeded:
            raise ConflictError(f"Refund {refund_id} already reached the payment provider")

        if refund.funds_reversed:
            _release_reservation(refund)
        refund.status = REFUND_STATUS_ABANDONED
        refund.processed_at = utcnow()
        current_app.logger.warning(
            "Abandoned refund %s (%s cents) by user %s: %s",
            refund.refund_number, refund.amount_cents, actor_user_id, reason or refund.error_message,
        )
        return refund

    return run_in_transaction(_op)


def refund_cancelled_items(
    order_item_id: int,
    quantity: int,
    *,
    reason: str | None = None,
    initiated_by_user_id: int | None = None,
) -> RefundTransaction | None:
    """Cancel item units and refund their value in one transaction."""
    def _op():
        amount = cancel_item_quantity(order_item_id, quantity, actor_user_id=initiated_by_user_id)
        if amount <= 0:
            return None
        item = db.session.get(OrderItem, order_item_id)
        return _reserve_partial_refund(
            item.sub_order_id,
            amount,
            reason or f"Cancelled {quantity} x item {order_item_id}",
            initiated_by_user_id,
            None,
        )

    refund_id = run_in_transaction(_op)
    if refund_id is None:
        return None
    return _dispatch_to_provider(refund_id)


# =============================================================================
# QUERIES
# =============================================================================

def get_refund(refund_id: int) -> RefundTransaction:
    refund = db.session.get(RefundTransaction, refund_id)
    if refund is None:
        raise NotFoundError(f"Refund {refund_id} not found")
    return refund


def get_refunds_by_order(order_id: int) -> list[RefundTransaction]:
    return (
        db.session.query(RefundTransaction)
        .filter_by(order_id=order_id)
        .order_by(RefundTransaction.created_at.desc(), RefundTransaction.id.desc())
        .all()
    )


def get_refunds_by_store(store_id: int, status: str | None = None) -> list[RefundTransaction]:
    query = (
        db.session.query(RefundTransaction)
        .outerjoin(SubOrder, RefundTransaction.sub_order_id == SubOrder.id)
        .filter(
            (RefundTransaction.store_id == store_id)
            | (SubOrder.store_id == store_id)
        )
    )
    if status is not None:
        if status not in REFUND_STATUSES:
            raise ValidationError(f"Invalid refund status: {status}")
        query = query.filter(RefundTransaction.status == status)
    return query.order_by(RefundTransaction.created_at.desc(), RefundTransaction.id.desc()).all()


def get_total_refunded_amount(order_id: int) -> int:
    """Sum of COMPLETED refunds for an order."""
    total = (
        db.session.query(func.coalesce(func.sum(RefundTransaction.amount_cents), 0))
        .filter(RefundTransaction.order_id == order_id)
        .filter(RefundTransaction.status == REFUND_STATUS_COMPLETED)
        .scalar()
    )
    return int(total)
