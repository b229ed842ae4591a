# Overview: Service-layer operations for the sub-order/order status state machine.

"""
Order Lifecycle Service

================================================================================
PURPOSE: Enforce the per-seller fulfillment state machine and derive the
buyer-facing order status from it
================================================================================

STATE MACHINE (sub-orders):

    NEW -> PAID -> PREPARING -> SHIPPED -> DELIVERED
     |      |         |            |           |
     v      v         v            v           v
  CANCELLED  CANCELLED/REFUNDED  CANCELLED  REFUNDED   REFUNDED

    CANCELLED and REFUNDED are terminal.

RULES:
1. Any pair not listed in VALID_TRANSITIONS raises InvalidTransitionError
   and leaves the sub-order untouched.
2. A transition to the current status is a no-op: nothing is written.
3. Every real transition writes exactly one OrderStatusHistory row in the
   same flush as the status change.
4. Order.status is never set by callers. It is recomputed from the
   sub-order statuses by derive_order_status() after every transition.

Functions named apply_* take loaded, locked objects and only flush; the
caller owns the transaction. The remaining public functions open their own
unit of work.
================================================================================
"""

from __future__ import annotations

from typing import Iterable

from flask import current_app

from ..extensions import db
from ..models import Order, SubOrder, OrderStatusHistory
from ..validation import InvalidTransitionError, NotFoundError, require_choice
from .concurrency import lock_for_update, run_in_transaction


# =============================================================================
# STATUS CONSTANTS
# =============================================================================

STATUS_NEW = "NEW"
STATUS_PAID = "PAID"
STATUS_PREPARING = "PREPARING"
STATUS_SHIPPED = "SHIPPED"
STATUS_DELIVERED = "DELIVERED"
STATUS_CANCELLED = "CANCELLED"
STATUS_REFUNDED = "REFUNDED"

ALL_STATUSES = (
    STATUS_NEW,
    STATUS_PAID,
    STATUS_PREPARING,
    STATUS_SHIPPED,
    STATUS_DELIVERED,
    STATUS_CANCELLED,
    STATUS_REFUNDED,
)
TERMINAL_STATUSES = frozenset({STATUS_CANCELLED, STATUS_REFUNDED})

VALID_TRANSITIONS = {
    STATUS_NEW: frozenset({STATUS_PAID, STATUS_CANCELLED}),
    STATUS_PAID: frozenset({STATUS_PREPARING, STATUS_CANCELLED, STATUS_REFUNDED}),
    STATUS_PREPARING: frozenset({STATUS_SHIPPED, STATUS_CANCELLED}),
    STATUS_SHIPPED: frozenset({STATUS_DELIVERED, STATUS_REFUNDED}),
    STATUS_DELIVERED: frozenset({STATUS_REFUNDED}),
    STATUS_CANCELLED: frozenset(),
    STATUS_REFUNDED: frozenset(),
}

# Most advanced first
ACTIVE_PRECEDENCE = (
    STATUS_DELIVERED,
    STATUS_SHIPPED,
    STATUS_PREPARING,
    STATUS_PAID,
    STATUS_NEW,
)


# =============================================================================
# PURE RULES
# =============================================================================

def can_transition(current: str, new: str) -> bool:
    """True when `current -> new` is an edge of the state machine or a no-op."""
    require_choice(current, ALL_STATUSES, "status")
    require_choice(new, ALL_STATUSES, "status")
    if current == new:
        return True
    return new in VALID_TRANSITIONS[current]


def validate_transition(current: str, new: str) -> None:
    if not can_transition(current, new):
        raise InvalidTransitionError(current, new)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def derive_order_status(statuses: Iterable[str]) -> str | None:
    """
    Derive the parent order status from its sub-order statuses.

    Precedence:
    1. all DELIVERED -> DELIVERED
    2. all CANCELLED -> CANCELLED; all REFUNDED -> REFUNDED
    3. otherwise the most advanced non-terminal status present
       (DELIVERED > SHIPPED > PREPARING > PAID > NEW)
    4. only terminal statuses, mixed -> CANCELLED

    Returns None for an empty collection; the caller keeps the current status.
    """
    status_set = set(statuses)
    if not status_set:
        return None

    if status_set == {STATUS_DELIVERED}:
        return STATUS_DELIVERED
    if status_set == {STATUS_CANCELLED}:
        return STATUS_CANCELLED
    if status_set == {STATUS_REFUNDED}:
        return STATUS_REFUNDED

    active = status_set - TERMINAL_STATUSES
    for status in ACTIVE_PRECEDENCE:
        if status in active:
            return status

    return STATUS_CANCELLED


# =============================================================================
# TRANSITIONS (caller owns the transaction)
# =============================================================================

def record_status_history(
    sub_order: SubOrder,
    previous_status: str | None,
    new_status: str,
    *,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> OrderStatusHistory:
    entry = OrderStatusHistory(
        sub_order_id=sub_order.id,
        previous_status=previous_status,
        new_status=new_status,
        notes=notes,
        changed_by_user_id=actor_user_id,
    )
    db.session.add(entry)
    return entry


def apply_sub_order_transition(
    sub_order: SubOrder,
    new_status: str,
    *,
    notes: str | None = None,
    actor_user_id: int | None = None,
    refresh_parent: bool = True,
) -> OrderStatusHistory | None:
    """
    Move a loaded sub-order to `new_status`.

    Returns the history row, or None for a same-status no-op.

    Raises:
        ValidationError: unknown status value
        InvalidTransitionError: edge not allowed (nothing is mutated)
    """
    previous = sub_order.status
    validate_transition(previous, new_status)
    if previous == new_status:
        return None

    sub_order.status = new_status
    entry = record_status_history(
        sub_order, previous, new_status, notes=notes, actor_user_id=actor_user_id
    )
    db.session.flush()

    current_app.logger.info(
        "Sub-order %s status %s -> %s (actor=%s)", sub_order.id, previous, new_status, actor_user_id
    )

    if refresh_parent:
        refresh_order_status(sub_order.order)
    return entry


def apply_sub_order_path(
    sub_order: SubOrder,
    path: Iterable[str],
    *,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> list[OrderStatusHistory]:
    """Walk several edges in order (e.g. PAID -> PREPARING -> SHIPPED), one history row each."""
    entries = []
    for status in path:
        entry = apply_sub_order_transition(
            sub_order, status, notes=notes, actor_user_id=actor_user_id, refresh_parent=False
        )
        if entry is not None:
            entries.append(entry)
    if entries:
        refresh_order_status(sub_order.order)
    return entries


def refresh_order_status(order: Order) -> str:
    """Recompute and store Order.status from its sub-orders."""
    derived = derive_order_status(so.status for so in order.sub_orders)
    if derived is not None and derived != order.status:
        current_app.logger.info("Order %s status %s -> %s", order.id, order.status, derived)
        order.status = derived
        db.session.flush()
    return order.status


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================

def _load_sub_order_for_update(sub_order_id: int) -> SubOrder:
    sub_order = lock_for_update(db.session.query(SubOrder).filter_by(id=sub_order_id)).first()
    if not sub_order:
        raise NotFoundError(f"Sub-order {sub_order_id} not found")
    return sub_order


def transition_sub_order(
    sub_order_id: int,
    new_status: str,
    *,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> SubOrder:
    """Generic transition entry point."""
    def _op():
        sub_order = _load_sub_order_for_update(sub_order_id)
        apply_sub_order_transition(sub_order, new_status, notes=notes, actor_user_id=actor_user_id)
        return sub_order

    return run_in_transaction(_op)


def mark_sub_order_preparing(sub_order_id: int, *, actor_user_id: int | None = None) -> SubOrder:
    return transition_sub_order(sub_order_id, STATUS_PREPARING, actor_user_id=actor_user_id)


def _tracking_note(tracking_number: str | None, carrier_name: str | None) -> str | None:
    if not tracking_number:
        return None
    note = f"Tracking: {tracking_number}"
    if carrier_name:
        note += f" via {carrier_name}"
    return note


def mark_sub_order_shipped(
    sub_order_id: int,
    *,
    tracking_number: str | None = None,
    carrier_name: str | None = None,
    tracking_url: str | None = None,
    actor_user_id: int | None = None,
) -> SubOrder:
    """PREPARING -> SHIPPED, storing tracking details."""
    def _op():
        sub_order = _load_sub_order_for_update(sub_order_id)
        apply_sub_order_transition(
            sub_order,
            STATUS_SHIPPED,
            notes=_tracking_note(tracking_number, carrier_name),
            actor_user_id=actor_user_id,
        )
        sub_order.tracking_number = tracking_number
        sub_order.carrier_name = carrier_name
        sub_order.tracking_url = tracking_url
        return sub_order

    return run_in_transaction(_op)


def mark_sub_order_delivered(sub_order_id: int, *, actor_user_id: int | None = None) -> SubOrder:
    """SHIPPED -> DELIVERED. Starts the escrow payout hold."""
    from .escrow_service import apply_escrow_eligibility

    def _op():
        sub_order = _load_sub_order_for_update(sub_order_id)
        entry = apply_sub_order_transition(sub_order, STATUS_DELIVERED, actor_user_id=actor_user_id)
        if entry is not None:
            apply_escrow_eligibility(sub_order)
        return sub_order

    return run_in_transaction(_op)


def cancel_sub_order(sub_order_id: int, *, notes: str | None = None, actor_user_id: int | None = None) -> SubOrder:
    """Cancel before shipment (NEW, PAID or PREPARING)."""
    return transition_sub_order(sub_order_id, STATUS_CANCELLED, notes=notes, actor_user_id=actor_user_id)


def update_tracking(
    sub_order_id: int,
    *,
    tracking_number: str | None = None,
    carrier_name: str | None = None,
    tracking_url: str | None = None,
    actor_user_id: int | None = None,
) -> SubOrder:
    """
    Update shipment tracking on a SHIPPED or DELIVERED sub-order.

    The status does not change; a history row with identical previous/new
    status records the update.
    """
    def _op():
        sub_order = _load_sub_order_for_update(sub_order_id)
        if sub_order.status not in (STATUS_SHIPPED, STATUS_DELIVERED):
            raise InvalidTransitionError(
                sub_order.status, sub_order.status, entity="tracking update for sub-order"
            )

        sub_order.tracking_number = tracking_number
        sub_order.carrier_name = carrier_name
        sub_order.tracking_url = tracking_url

        note = "Tracking information updated"
        detail = _tracking_note(tracking_number, carrier_name)
        if detail:
            note = f"{note}: {detail}"
        record_status_history(
            sub_order, sub_order.status, sub_order.status, notes=note, actor_user_id=actor_user_id
        )
        current_app.logger.info("Sub-order %s tracking updated (actor=%s)", sub_order.id, actor_user_id)
        return sub_order

    return run_in_transaction(_op)


def get_status_history(sub_order_id: int) -> list[OrderStatusHistory]:
    return (
        db.session.query(OrderStatusHistory)
        .filter_by(sub_order_id=sub_order_id)
        .order_by(OrderStatusHistory.id.asc())
        .all()
    )
