from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z


class Order(db.Model):
    """
    Buyer-facing order aggregate.

    `status` is derived from the sub-order statuses (see
    order_lifecycle_service.derive_order_status) and is only written directly
    at creation. `refunded_cents` is a running total maintained by refunds.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_ordered_at", "ordered_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False, unique=True)
    buyer_id = db.Column(db.Integer, nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="NEW", index=True)
    payment_status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)  # PENDING, COMPLETED, FAILED, REFUNDED
    payment_reference = db.Column(db.String(128), nullable=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)

    ordered_at = db.Column(db.DateTime(timezone=True), nullable=False)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "buyer_id": self.buyer_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_reference": self.payment_reference,
            "subtotal_cents": self.subtotal_cents,
            "shipping_cents": self.shipping_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "refunded_cents": self.refunded_cents,
            "ordered_at": to_utc_z(self.ordered_at),
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
            "version_id": self.version_id,
        }


class SubOrder(db.Model):
    """
    One seller's slice of an order, with its own fulfillment state machine.

    Never deleted. Mutated only through the lifecycle and refund services.
    """
    __tablename__ = "sub_orders"
    __table_args__ = (
        db.Index("ix_sub_orders_store_status", "store_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    sub_order_number = db.Column(db.String(64), nullable=False, unique=True)

    status = db.Column(db.String(16), nullable=False, default="NEW", index=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)

    # Shipment tracking
    tracking_number = db.Column(db.String(128), nullable=True)
    carrier_name = db.Column(db.String(64), nullable=True)
    tracking_url = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("sub_orders", lazy=True, order_by="SubOrder.id"))
    store = db.relationship("Store")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def refundable_cents(self) -> int:
        return self.total_cents - self.refunded_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "store_id": self.store_id,
            "sub_order_number": self.sub_order_number,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "shipping_cents": self.shipping_cents,
            "total_cents": self.total_cents,
            "refunded_cents": self.refunded_cents,
            "tracking_number": self.tracking_number,
            "carrier_name": self.carrier_name,
            "tracking_url": self.tracking_url,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class OrderItem(db.Model):
    """
    Line item within a sub-order.

    INVARIANTS:
    - quantity == quantity_shipped + quantity_cancelled + remaining
    - refunded_cents <= (unit_price_cents + tax per unit) * quantity
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        db.CheckConstraint(
            "quantity_shipped + quantity_cancelled <= quantity",
            name="ck_order_items_fulfilled_within_quantity",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sub_order_id = db.Column(db.Integer, db.ForeignKey("sub_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)
    title = db.Column(db.String(255), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="NEW")  # NEW, PREPARING, SHIPPED, CANCELLED

    quantity = db.Column(db.Integer, nullable=False)
    quantity_shipped = db.Column(db.Integer, nullable=False, default=0)
    quantity_cancelled = db.Column(db.Integer, nullable=False, default=0)

    unit_price_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)  # tax for the whole line
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    sub_order = db.relationship("SubOrder", backref=db.backref("items", lazy=True, order_by="OrderItem.id"))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def quantity_remaining(self) -> int:
        return self.quantity - self.quantity_shipped - self.quantity_cancelled

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity + self.tax_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sub_order_id": self.sub_order_id,
            "product_id": self.product_id,
            "category_id": self.category_id,
            "title": self.title,
            "status": self.status,
            "quantity": self.quantity,
            "quantity_shipped": self.quantity_shipped,
            "quantity_cancelled": self.quantity_cancelled,
            "quantity_remaining": self.quantity_remaining,
            "unit_price_cents": self.unit_price_cents,
            "tax_cents": self.tax_cents,
            "refunded_cents": self.refunded_cents,
        }


class OrderStatusHistory(db.Model):
    """
    Immutable audit record of a sub-order status change.

    previous_status is NULL for the record written at creation.
    """
    __tablename__ = "order_status_history"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sub_order_id = db.Column(db.Integer, db.ForeignKey("sub_orders.id"), nullable=False, index=True)
    previous_status = db.Column(db.String(16), nullable=True)
    new_status = db.Column(db.String(16), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    changed_by_user_id = db.Column(db.Integer, nullable=True)
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sub_order = db.relationship("SubOrder", backref=db.backref("status_history", lazy=True, order_by="OrderStatusHistory.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sub_order_id": self.sub_order_id,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "notes": self.notes,
            "changed_by_user_id": self.changed_by_user_id,
            "changed_at": to_utc_z(self.changed_at),
        }
