# Overview: Service-layer operations for item-level fulfillment within a sub-order.

"""
Item Fulfillment Service

Items move NEW -> PREPARING -> SHIPPED (or CANCELLED) in partial quantities:

    quantity == quantity_shipped + quantity_cancelled + quantity_remaining

After every change the owning sub-order is rolled up:
- all items cancelled         -> CANCELLED
- any units shipped           -> SHIPPED
- any item preparing          -> PREPARING
The rollup walks valid state-machine edges only (PAID -> PREPARING -> SHIPPED)
and writes one history row per edge.

Cancelling units records the item-level refunded amount and returns it.
Balances on the sub-order, order and escrow only move through the refund
service (see refund_service.refund_cancelled_items).
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import OrderItem, SubOrder
from ..money import prorate
from ..validation import ConflictError, NotFoundError, ValidationError
from .concurrency import lock_for_update, run_in_transaction
from .order_lifecycle_service import (
    STATUS_CANCELLED,
    STATUS_NEW,
    STATUS_PAID,
    STATUS_PREPARING,
    STATUS_SHIPPED,
    TERMINAL_STATUSES,
    apply_sub_order_path,
)


ITEM_STATUS_NEW = "NEW"
ITEM_STATUS_PREPARING = "PREPARING"
ITEM_STATUS_SHIPPED = "SHIPPED"
ITEM_STATUS_CANCELLED = "CANCELLED"

# Edges the rollup walks to reach a target from a given sub-order status
_ROLLUP_PATHS = {
    (STATUS_PAID, STATUS_PREPARING): (STATUS_PREPARING,),
    (STATUS_PAID, STATUS_SHIPPED): (STATUS_PREPARING, STATUS_SHIPPED),
    (STATUS_PREPARING, STATUS_SHIPPED): (STATUS_SHIPPED,),
    (STATUS_NEW, STATUS_CANCELLED): (STATUS_CANCELLED,),
    (STATUS_PAID, STATUS_CANCELLED): (STATUS_CANCELLED,),
    (STATUS_PREPARING, STATUS_CANCELLED): (STATUS_CANCELLED,),
}


def _require_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Quantity must be greater than 0")
    return quantity


def _load_item_for_update(order_item_id: int) -> OrderItem:
    item = lock_for_update(db.session.query(OrderItem).filter_by(id=order_item_id)).first()
    if item is None:
        raise NotFoundError(f"Order item {order_item_id} not found")
    return item


def validate_item_fulfillment(sub_order: SubOrder) -> None:
    """
    Raises:
        ConflictError: payment not completed, or sub-order already terminal
    """
    if sub_order.order.payment_status != "COMPLETED":
        raise ConflictError("Cannot fulfill items until payment is completed")
    if sub_order.status in TERMINAL_STATUSES:
        raise ConflictError(f"Cannot fulfill items for sub-order in {sub_order.status} status")


def item_rollup_target(items: list[OrderItem]) -> str | None:
    if not items:
        return None
    if all(item.status == ITEM_STATUS_CANCELLED for item in items):
        return STATUS_CANCELLED
    if any(item.quantity_shipped > 0 for item in items):
        return STATUS_SHIPPED
    if any(item.status == ITEM_STATUS_PREPARING for item in items):
        return STATUS_PREPARING
    return None


def rollup_sub_order_from_items(sub_order: SubOrder, *, actor_user_id: int | None = None) -> str:
    target = item_rollup_target(list(sub_order.items))
    if target is None or target == sub_order.status:
        return sub_order.status

    path = _ROLLUP_PATHS.get((sub_order.status, target))
    if path is None:
        current_app.logger.info(
            "Sub-order %s stays %s; item state suggests %s", sub_order.id, sub_order.status, target
        )
        return sub_order.status

    apply_sub_order_path(sub_order, path, notes="Item fulfillment update", actor_user_id=actor_user_id)
    return sub_order.status


def calculate_item_refund_amount(order_item_id: int, quantity: int) -> int:
    """(unit price + tax per unit) * quantity, in cents."""
    _require_quantity(quantity)
    item = db.session.get(OrderItem, order_item_id)
    if item is None:
        raise NotFoundError(f"Order item {order_item_id} not found")
    if quantity > item.quantity:
        raise ValidationError(f"Quantity {quantity} exceeds item quantity {item.quantity}")
    return item.unit_price_cents * quantity + prorate(item.tax_cents, quantity, item.quantity)


def get_available_quantity(order_item_id: int) -> int:
    item = db.session.get(OrderItem, order_item_id)
    if item is None:
        raise NotFoundError(f"Order item {order_item_id} not found")
    return item.quantity_remaining


def mark_item_preparing(order_item_id: int, *, actor_user_id: int | None = None) -> OrderItem:
    def _op():
        item = _load_item_for_update(order_item_id)
        if item.status != ITEM_STATUS_NEW:
            raise ConflictError(f"Cannot change item status from {item.status} to PREPARING")
        validate_item_fulfillment(item.sub_order)

        item.status = ITEM_STATUS_PREPARING
        db.session.flush()
        rollup_sub_order_from_items(item.sub_order, actor_user_id=actor_user_id)

        current_app.logger.info("Order item %s preparing (actor=%s)", item.id, actor_user_id)
        return item

    return run_in_transaction(_op)


def ship_item_quantity(order_item_id: int, quantity: int, *, actor_user_id: int | None = None) -> OrderItem:
    """Ship part or all of an item's remaining quantity."""
    _require_quantity(quantity)

    def _op():
        item = _load_item_for_update(order_item_id)
        if quantity > item.quantity_remaining:
            raise ConflictError(
                f"Cannot ship {quantity} items. Only {item.quantity_remaining} available."
            )
        validate_item_fulfillment(item.sub_order)

        item.quantity_shipped += quantity
        if item.quantity_shipped + item.quantity_cancelled == item.quantity:
            item.status = ITEM_STATUS_SHIPPED
        elif item.status == ITEM_STATUS_NEW:
            item.status = ITEM_STATUS_PREPARING
        db.session.flush()
        rollup_sub_order_from_items(item.sub_order, actor_user_id=actor_user_id)

        current_app.logger.info(
            "Shipped %s units of order item %s (actor=%s)", quantity, item.id, actor_user_id
        )
        return item

    return run_in_transaction(_op)


def cancel_item_quantity(order_item_id: int, quantity: int, *, actor_user_id: int | None = None) -> int:
    """
    Cancel unshipped units of an item.

    Returns the refundable amount in cents for the cancelled units, capped so
    the item's refunded total never exceeds its line total.
    """
    _require_quantity(quantity)

    def _op():
        item = _load_item_for_update(order_item_id)
        if quantity > item.quantity_remaining:
            raise ConflictError(
                f"Cannot cancel {quantity} items. Only {item.quantity_remaining} available."
            )
        validate_item_fulfillment(item.sub_order)

        amount = calculate_item_refund_amount(item.id, quantity)
        amount = min(amount, item.line_total_cents - item.refunded_cents)

        item.quantity_cancelled += quantity
        item.refunded_cents += amount
        if item.quantity_cancelled == item.quantity:
            item.status = ITEM_STATUS_CANCELLED
        elif item.quantity_shipped + item.quantity_cancelled == item.quantity:
            item.status = ITEM_STATUS_SHIPPED
        elif item.status == ITEM_STATUS_NEW:
            item.status = ITEM_STATUS_PREPARING
        db.session.flush()
        rollup_sub_order_from_items(item.sub_order, actor_user_id=actor_user_id)

        current_app.logger.info(
            "Cancelled %s units of order item %s, refundable %s cents (actor=%s)",
            quantity, item.id, amount, actor_user_id,
        )
        return amount

    return run_in_transaction(_op)


def get_sub_order_items(sub_order_id: int) -> list[OrderItem]:
    return (
        db.session.query(OrderItem)
        .filter_by(sub_order_id=sub_order_id)
        .order_by(OrderItem.id.asc())
        .all()
    )
