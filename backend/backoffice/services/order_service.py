# Overview: Service-layer operations for placing multi-seller orders.

"""
Order placement.

A buyer order is split into one SubOrder per store. Item, sub-order and
order totals are computed once here; afterwards only refunds change the
refunded running totals.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime
from uuid import uuid4

from flask import current_app

from ..extensions import db
from ..models import Order, OrderItem, Store, SubOrder
from ..time_utils import utcnow
from ..validation import NotFoundError, ValidationError, require_non_negative_cents
from .concurrency import run_in_transaction
from .order_lifecycle_service import STATUS_NEW, record_status_history


def _validate_line(line: dict, index: int) -> dict:
    for key in ("store_id", "product_id", "quantity", "unit_price_cents"):
        if line.get(key) is None:
            raise ValidationError(f"Line {index}: {key} is required")

    quantity = line["quantity"]
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(f"Line {index}: quantity must be a positive integer")

    require_non_negative_cents(line["unit_price_cents"], f"line {index} unit_price_cents")
    tax_cents = line.get("tax_cents", 0)
    require_non_negative_cents(tax_cents, f"line {index} tax_cents")

    return {
        "store_id": line["store_id"],
        "product_id": line["product_id"],
        "category_id": line.get("category_id"),
        "title": line.get("title") or f"Product {line['product_id']}",
        "quantity": quantity,
        "unit_price_cents": line["unit_price_cents"],
        "tax_cents": tax_cents,
    }


def create_order(
    buyer_id: int | None,
    lines: list[dict],
    ordered_at: datetime | None = None,
    shipping_by_store: dict[int, int] | None = None,
) -> Order:
    """
    Create an order with one NEW sub-order per store.

    Args:
        buyer_id: Buyer placing the order
        lines: dicts with store_id, product_id, quantity, unit_price_cents and
            optional category_id, title, tax_cents (tax for the whole line)
        ordered_at: Order date (defines settlement period membership); now if omitted
        shipping_by_store: Optional {store_id: shipping_cents}

    Raises:
        ValidationError: empty order or malformed line
        NotFoundError: unknown store
    """
    if not lines:
        raise ValidationError("Order must contain at least one line")

    validated = [_validate_line(line, i) for i, line in enumerate(lines, start=1)]
    shipping_by_store = shipping_by_store or {}
    for store_id, shipping_cents in shipping_by_store.items():
        require_non_negative_cents(shipping_cents, f"shipping for store {store_id}")

    by_store: "OrderedDict[int, list[dict]]" = OrderedDict()
    for line in validated:
        by_store.setdefault(line["store_id"], []).append(line)

    def _op():
        for store_id in by_store:
            if db.session.get(Store, store_id) is None:
                raise NotFoundError(f"Store {store_id} not found")

        order_number = f"ORD-{uuid4().hex[:12].upper()}"
        order = Order(
            order_number=order_number,
            buyer_id=buyer_id,
            status=STATUS_NEW,
            payment_status="PENDING",
            ordered_at=ordered_at or utcnow(),
        )
        db.session.add(order)
        db.session.flush()

        order_subtotal = order_tax = order_shipping = 0
        for seq, (store_id, store_lines) in enumerate(by_store.items(), start=1):
            shipping_cents = shipping_by_store.get(store_id, 0)
            sub_order = SubOrder(
                order=order,
                store_id=store_id,
                sub_order_number=f"{order_number}-{seq:02d}",
                status=STATUS_NEW,
                shipping_cents=shipping_cents,
            )
            db.session.add(sub_order)

            items_total = 0
            for line in store_lines:
                item = OrderItem(sub_order=sub_order, status="NEW", refunded_cents=0, **{
                    k: line[k] for k in ("product_id", "category_id", "title", "quantity", "unit_price_cents", "tax_cents")
                })
                db.session.add(item)
                items_total += item.unit_price_cents * item.quantity + item.tax_cents
                order_subtotal += item.unit_price_cents * item.quantity
                order_tax += item.tax_cents

            sub_order.subtotal_cents = items_total
            sub_order.total_cents = items_total + shipping_cents
            sub_order.refunded_cents = 0
            order_shipping += shipping_cents
            db.session.flush()

            record_status_history(sub_order, None, STATUS_NEW, notes="Order placed", actor_user_id=buyer_id)

        order.subtotal_cents = order_subtotal
        order.tax_cents = order_tax
        order.shipping_cents = order_shipping
        order.total_cents = order_subtotal + order_tax + order_shipping
        order.refunded_cents = 0
        db.session.flush()

        current_app.logger.info(
            "Created order %s with %d sub-orders, total %s cents",
            order.order_number, len(by_store), order.total_cents,
        )
        return order

    return run_in_transaction(_op)


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def get_sub_order(sub_order_id: int) -> SubOrder:
    sub_order = db.session.get(SubOrder, sub_order_id)
    if sub_order is None:
        raise NotFoundError(f"Sub-order {sub_order_id} not found")
    return sub_order


def list_sub_orders_for_store(store_id: int, status: str | None = None) -> list[SubOrder]:
    query = db.session.query(SubOrder).filter_by(store_id=store_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(SubOrder.id.desc()).all()
