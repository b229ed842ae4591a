# Overview: Service-layer operations for escrow allocation, refund draw-down and release.

"""
Escrow Service

ESCROW LIFECYCLE:
    HELD -> PARTIALLY_REFUNDED -> RETURNED_TO_BUYER
    HELD/PARTIALLY_REFUNDED -> ELIGIBLE_FOR_PAYOUT -> RELEASED

- One escrow row per sub-order, created when the order payment completes.
- The INITIAL commission transaction is written together with the escrow row.
- Refunds draw the balance down; RELEASED escrow can no longer be refunded.
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import EscrowTransaction, Order, SubOrder
from ..time_utils import utcnow
from ..validation import ConflictError, NotFoundError, ValidationError, require_positive_cents
from .commission_service import TYPE_INITIAL, record_commission_transaction, resolve_commission
from .concurrency import lock_for_update, run_in_transaction
from .order_lifecycle_service import TERMINAL_STATUSES


ESCROW_HELD = "HELD"
ESCROW_PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
ESCROW_RETURNED_TO_BUYER = "RETURNED_TO_BUYER"
ESCROW_ELIGIBLE_FOR_PAYOUT = "ELIGIBLE_FOR_PAYOUT"
ESCROW_RELEASED = "RELEASED"


def sub_order_category_id(sub_order: SubOrder) -> int | None:
    """The items' category when every item shares one, else None."""
    category_ids = {item.category_id for item in sub_order.items}
    if len(category_ids) == 1:
        return next(iter(category_ids))
    return None


# =============================================================================
# CALLER-OWNED TRANSACTION HELPERS
# =============================================================================

def apply_escrow_allocations(order: Order) -> list[EscrowTransaction]:
    """
    Create one HELD escrow row (plus its INITIAL commission record) per sub-order.

    Idempotent: sub-orders that already have escrow are skipped. Sub-orders
    cancelled or refunded before payment never get escrow or commission.
    """
    created = []
    for sub_order in order.sub_orders:
        if sub_order.status in TERMINAL_STATUSES:
            current_app.logger.info(
                "Skipping escrow for sub-order %s in %s status", sub_order.id, sub_order.status
            )
            continue
        existing = db.session.query(EscrowTransaction).filter_by(sub_order_id=sub_order.id).first()
        if existing is not None:
            continue

        gross_cents = sub_order.total_cents
        category_id = sub_order_category_id(sub_order)
        quote = resolve_commission(gross_cents, sub_order.store_id, category_id)

        escrow = EscrowTransaction(
            order_id=order.id,
            sub_order_id=sub_order.id,
            store_id=sub_order.store_id,
            status=ESCROW_HELD,
            gross_cents=gross_cents,
            refunded_cents=0,
            commission_cents=quote.commission_cents,
            commission_rate_bps=quote.rate_bps,
            created_at=utcnow(),
        )
        escrow.recompute_net()
        db.session.add(escrow)
        db.session.flush()

        record_commission_transaction(
            escrow_transaction_id=escrow.id,
            store_id=sub_order.store_id,
            category_id=quote.applied_category_id if quote.applied_category_id is not None else category_id,
            transaction_type=TYPE_INITIAL,
            gross_cents=gross_cents,
            commission_cents=quote.commission_cents,
            rate_bps=quote.rate_bps,
            fixed_cents=quote.fixed_cents,
            source=quote.source,
            notes=f"Initial commission for sub-order {sub_order.sub_order_number}",
        )
        created.append(escrow)

    if created:
        current_app.logger.info("Created %d escrow allocations for order %s", len(created), order.id)
    else:
        current_app.logger.info("Escrow allocations already exist for order %s", order.id)
    return created


def apply_return_to_buyer(escrow: EscrowTransaction, amount_cents: int) -> EscrowTransaction:
    """Draw `amount_cents` out of a loaded, locked escrow row."""
    require_positive_cents(amount_cents)

    if escrow.status == ESCROW_RELEASED:
        raise ConflictError(f"Escrow {escrow.id} was already released to the seller")

    available = escrow.gross_cents - escrow.refunded_cents
    if amount_cents > available:
        raise ConflictError(
            f"Refund amount {amount_cents} exceeds available escrow amount {available}"
        )

    escrow.refunded_cents += amount_cents
    if escrow.refunded_cents >= escrow.gross_cents:
        escrow.status = ESCROW_RETURNED_TO_BUYER
    elif escrow.status in (ESCROW_HELD, ESCROW_PARTIALLY_REFUNDED):
        escrow.status = ESCROW_PARTIALLY_REFUNDED
    escrow.recompute_net()

    current_app.logger.info(
        "Returned %s cents from escrow %s to buyer (total refunded: %s)",
        amount_cents, escrow.id, escrow.refunded_cents,
    )
    return escrow


def apply_restore_from_refund(escrow: EscrowTransaction, amount_cents: int) -> EscrowTransaction:
    """Put back a draw-down reserved by a refund that never reached the buyer."""
    require_positive_cents(amount_cents)
    if amount_cents > escrow.refunded_cents:
        raise ConflictError(
            f"Cannot restore {amount_cents} cents to escrow {escrow.id}; only {escrow.refunded_cents} were refunded"
        )

    escrow.refunded_cents -= amount_cents
    if escrow.status in (ESCROW_PARTIALLY_REFUNDED, ESCROW_RETURNED_TO_BUYER):
        if escrow.eligible_for_payout_at is not None:
            escrow.status = ESCROW_ELIGIBLE_FOR_PAYOUT
        elif escrow.refunded_cents > 0:
            escrow.status = ESCROW_PARTIALLY_REFUNDED
        else:
            escrow.status = ESCROW_HELD
    escrow.recompute_net()

    current_app.logger.info(
        "Restored %s cents to escrow %s (total refunded: %s)",
        amount_cents, escrow.id, escrow.refunded_cents,
    )
    return escrow


def apply_commission_adjustment(escrow: EscrowTransaction, adjustment_cents: int) -> EscrowTransaction:
    """Add a (negative) commission adjustment to the escrow running total."""
    escrow.commission_cents += adjustment_cents
    escrow.recompute_net()
    return escrow


def apply_escrow_eligibility(sub_order: SubOrder, hold_days: int | None = None) -> EscrowTransaction | None:
    escrow = db.session.query(EscrowTransaction).filter_by(sub_order_id=sub_order.id).first()
    if escrow is None:
        current_app.logger.warning("No escrow transaction found for sub-order %s", sub_order.id)
        return None

    if escrow.status not in (ESCROW_HELD, ESCROW_PARTIALLY_REFUNDED):
        current_app.logger.info(
            "Escrow %s not eligible for payout from status %s", escrow.id, escrow.status
        )
        return escrow

    if hold_days is None:
        hold_days = current_app.config.get("ESCROW_PAYOUT_HOLD_DAYS", 7)

    escrow.status = ESCROW_ELIGIBLE_FOR_PAYOUT
    escrow.eligible_for_payout_at = utcnow() + timedelta(days=hold_days)
    current_app.logger.info(
        "Escrow %s eligible for payout on %s", escrow.id, escrow.eligible_for_payout_at
    )
    return escrow


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================

def create_escrow_allocations(order_id: int) -> list[EscrowTransaction]:
    """
    Allocate escrow for every sub-order of a paid order.

    Returns all escrow rows for the order (existing ones included).
    """
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.payment_status not in ("COMPLETED", "REFUNDED"):
            raise ConflictError("Payment must be completed before creating escrow allocations")
        apply_escrow_allocations(order)
        return get_escrow_transactions_by_order(order_id)

    return run_in_transaction(_op)


def return_escrow_to_buyer(escrow_transaction_id: int, amount_cents: int) -> EscrowTransaction:
    def _op():
        escrow = lock_for_update(
            db.session.query(EscrowTransaction).filter_by(id=escrow_transaction_id)
        ).first()
        if escrow is None:
            raise NotFoundError(f"Escrow transaction {escrow_transaction_id} not found")
        return apply_return_to_buyer(escrow, amount_cents)

    return run_in_transaction(_op)


def mark_escrow_eligible_for_payout(sub_order_id: int, hold_days: int | None = None) -> EscrowTransaction | None:
    def _op():
        sub_order = db.session.get(SubOrder, sub_order_id)
        if sub_order is None:
            raise NotFoundError(f"Sub-order {sub_order_id} not found")
        if sub_order.status != "DELIVERED":
            raise ConflictError(f"Sub-order {sub_order_id} must be DELIVERED before payout eligibility")
        return apply_escrow_eligibility(sub_order, hold_days)

    return run_in_transaction(_op)


def release_escrow(escrow_transaction_id: int) -> EscrowTransaction:
    """
    Release escrow to the seller. Idempotent for already-released rows.

    Raises:
        ConflictError: escrow was returned to the buyer, or the sub-order is not DELIVERED
    """
    def _op():
        escrow = lock_for_update(
            db.session.query(EscrowTransaction).filter_by(id=escrow_transaction_id)
        ).first()
        if escrow is None:
            raise NotFoundError(f"Escrow transaction {escrow_transaction_id} not found")

        if escrow.status == ESCROW_RELEASED:
            current_app.logger.info("Escrow %s already released", escrow.id)
            return escrow
        if escrow.status == ESCROW_RETURNED_TO_BUYER:
            raise ConflictError(f"Escrow {escrow.id} was fully returned to the buyer")
        if escrow.sub_order.status != "DELIVERED":
            raise ConflictError(
                f"Sub-order {escrow.sub_order_id} is not DELIVERED (status: {escrow.sub_order.status})"
            )

        escrow.status = ESCROW_RELEASED
        escrow.released_at = utcnow()
        current_app.logger.info(
            "Released escrow %s for sub-order %s, net amount %s cents",
            escrow.id, escrow.sub_order_id, escrow.net_cents,
        )
        return escrow

    return run_in_transaction(_op)


def process_eligible_payouts(now=None) -> int:
    """Release every escrow whose payout hold has elapsed. Returns the count."""
    now = now or utcnow()
    eligible_ids = [
        row.id
        for row in db.session.query(EscrowTransaction.id)
        .filter(EscrowTransaction.status == ESCROW_ELIGIBLE_FOR_PAYOUT)
        .filter(EscrowTransaction.eligible_for_payout_at.isnot(None))
        .filter(EscrowTransaction.eligible_for_payout_at <= now)
        .all()
    ]

    released = 0
    for escrow_id in eligible_ids:
        try:
            release_escrow(escrow_id)
            released += 1
        except ConflictError as exc:
            current_app.logger.warning("Skipped escrow %s release: %s", escrow_id, exc)

    if released:
        current_app.logger.info("Processed %d eligible escrow payouts", released)
    return released


# =============================================================================
# QUERIES
# =============================================================================

def get_escrow_by_sub_order(sub_order_id: int) -> EscrowTransaction | None:
    return db.session.query(EscrowTransaction).filter_by(sub_order_id=sub_order_id).first()


def get_escrow_transactions_by_order(order_id: int) -> list[EscrowTransaction]:
    return (
        db.session.query(EscrowTransaction)
        .filter_by(order_id=order_id)
        .order_by(EscrowTransaction.id.asc())
        .all()
    )


def get_escrow_transactions_by_store(store_id: int, status: str | None = None) -> list[EscrowTransaction]:
    query = db.session.query(EscrowTransaction).filter_by(store_id=store_id)
    if status is not None:
        if status not in (
            ESCROW_HELD, ESCROW_PARTIALLY_REFUNDED, ESCROW_RETURNED_TO_BUYER,
            ESCROW_ELIGIBLE_FOR_PAYOUT, ESCROW_RELEASED,
        ):
            raise ValidationError(f"Invalid escrow status: {status}")
        query = query.filter_by(status=status)
    return query.order_by(EscrowTransaction.created_at.desc(), EscrowTransaction.id.desc()).all()
