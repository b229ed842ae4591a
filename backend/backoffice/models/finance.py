from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z


class EscrowTransaction(db.Model):
    """
    Funds held by the platform for one sub-order pending payout.

    WHY: Seller money is not paid out at checkout. The escrow row is the
    running balance that refunds draw down and settlements aggregate.

    LIFECYCLE:
    1. HELD: created when payment completes
    2. PARTIALLY_REFUNDED / RETURNED_TO_BUYER: refunds drew down the balance
    3. ELIGIBLE_FOR_PAYOUT: sub-order delivered and hold period set
    4. RELEASED: paid out to the seller (no further refunds)

    refunded_cents and commission_cents accumulate; they are never reset.
    net_cents == gross_cents - refunded_cents - commission_cents
    """
    __tablename__ = "escrow_transactions"
    __table_args__ = (
        db.CheckConstraint("refunded_cents <= gross_cents", name="ck_escrow_refund_within_gross"),
        db.Index("ix_escrow_store_status", "store_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    sub_order_id = db.Column(db.Integer, db.ForeignKey("sub_orders.id"), nullable=False, unique=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    status = db.Column(db.String(24), nullable=False, default="HELD", index=True)

    gross_cents = db.Column(db.Integer, nullable=False)
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)
    commission_cents = db.Column(db.Integer, nullable=False, default=0)
    net_cents = db.Column(db.Integer, nullable=False, default=0)
    commission_rate_bps = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    eligible_for_payout_at = db.Column(db.DateTime(timezone=True), nullable=True)
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    sub_order = db.relationship("SubOrder", backref=db.backref("escrow", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def recompute_net(self) -> None:
        self.net_cents = self.gross_cents - self.refunded_cents - self.commission_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "sub_order_id": self.sub_order_id,
            "store_id": self.store_id,
            "status": self.status,
            "gross_cents": self.gross_cents,
            "refunded_cents": self.refunded_cents,
            "commission_cents": self.commission_cents,
            "net_cents": self.net_cents,
            "commission_rate_bps": self.commission_rate_bps,
            "created_at": to_utc_z(self.created_at),
            "eligible_for_payout_at": to_utc_z(self.eligible_for_payout_at) if self.eligible_for_payout_at else None,
            "released_at": to_utc_z(self.released_at) if self.released_at else None,
        }


class CommissionTransaction(db.Model):
    """
    Immutable audit record of one commission calculation.

    INITIAL rows are written when escrow is created; REFUND_ADJUSTMENT rows
    carry a negative commission_cents. Rows are never updated or deleted.
    """
    __tablename__ = "commission_transactions"
    __table_args__ = (
        db.Index("ix_commission_tx_store_created", "store_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    escrow_transaction_id = db.Column(db.Integer, db.ForeignKey("escrow_transactions.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)

    transaction_type = db.Column(db.String(24), nullable=False)  # INITIAL, REFUND_ADJUSTMENT
    source = db.Column(db.String(16), nullable=False)  # GLOBAL, SELLER, CATEGORY

    gross_cents = db.Column(db.Integer, nullable=False)
    commission_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    fixed_commission_cents = db.Column(db.Integer, nullable=False, default=0)
    commission_cents = db.Column(db.Integer, nullable=False)

    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    escrow_transaction = db.relationship("EscrowTransaction", backref=db.backref("commission_transactions", lazy=True, order_by="CommissionTransaction.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "escrow_transaction_id": self.escrow_transaction_id,
            "store_id": self.store_id,
            "category_id": self.category_id,
            "transaction_type": self.transaction_type,
            "source": self.source,
            "gross_cents": self.gross_cents,
            "commission_rate_bps": self.commission_rate_bps,
            "fixed_commission_cents": self.fixed_commission_cents,
            "commission_cents": self.commission_cents,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }


class RefundTransaction(db.Model):
    """
    One refund action against an order or a single sub-order.

    sub_order_id is NULL for full-order refunds.

    Two flags track the two halves of a refund separately:
    - funds_reversed: escrow/commission/sub-order/order balances were updated
    - provider_succeeded: the payment provider confirmed the reversal
    A retry only repeats the half that has not happened yet.
    Sub-order and order terminal status changes wait for provider_succeeded.
    """
    __tablename__ = "refund_transactions"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_refund_amount_positive"),
        db.Index("ix_refund_tx_store_created", "store_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    refund_number = db.Column(db.String(64), nullable=False, unique=True)  # provider idempotency key

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    sub_order_id = db.Column(db.Integer, db.ForeignKey("sub_orders.id"), nullable=True, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=True)
    return_request_id = db.Column(db.Integer, nullable=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="REQUESTED", index=True)  # REQUESTED, PROCESSING, COMPLETED, FAILED, ABANDONED
    reason = db.Column(db.Text, nullable=True)

    funds_reversed = db.Column(db.Boolean, nullable=False, default=False)
    provider_succeeded = db.Column(db.Boolean, nullable=False, default=False)
    provider_refund_id = db.Column(db.String(128), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    attempt_count = db.Column(db.Integer, nullable=False, default=0)

    initiated_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("refunds", lazy=True, order_by="RefundTransaction.id"))
    sub_order = db.relationship("SubOrder", backref=db.backref("refunds", lazy=True, order_by="RefundTransaction.id"))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_full_order_refund(self) -> bool:
        return self.sub_order_id is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "refund_number": self.refund_number,
            "order_id": self.order_id,
            "sub_order_id": self.sub_order_id,
            "store_id": self.store_id,
            "return_request_id": self.return_request_id,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "reason": self.reason,
            "funds_reversed": self.funds_reversed,
            "provider_succeeded": self.provider_succeeded,
            "provider_refund_id": self.provider_refund_id,
            "error_message": self.error_message,
            "attempt_count": self.attempt_count,
            "initiated_by_user_id": self.initiated_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "processed_at": to_utc_z(self.processed_at) if self.processed_at else None,
        }


class RefundAllocation(db.Model):
    """
    The share of a refund reserved against one sub-order.

    Written with the balance mutation so that abandoning a FAILED refund can
    put back exactly what it reserved (escrow draw-down and commission reversal).
    """
    __tablename__ = "refund_allocations"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_refund_allocation_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    refund_transaction_id = db.Column(db.Integer, db.ForeignKey("refund_transactions.id"), nullable=False, index=True)
    sub_order_id = db.Column(db.Integer, db.ForeignKey("sub_orders.id"), nullable=False, index=True)
    escrow_transaction_id = db.Column(db.Integer, db.ForeignKey("escrow_transactions.id"), nullable=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    commission_adjustment_cents = db.Column(db.Integer, nullable=False, default=0)  # <= 0
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    refund = db.relationship("RefundTransaction", backref=db.backref("allocations", lazy=True, order_by="RefundAllocation.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "refund_transaction_id": self.refund_transaction_id,
            "sub_order_id": self.sub_order_id,
            "escrow_transaction_id": self.escrow_transaction_id,
            "amount_cents": self.amount_cents,
            "commission_adjustment_cents": self.commission_adjustment_cents,
            "created_at": to_utc_z(self.created_at),
        }


class Payout(db.Model):
    """Seller payout record. The settlement core only reads PAID rows."""
    __tablename__ = "payouts"
    __table_args__ = (
        db.Index("ix_payouts_store_status_paid", "store_id", "status", "paid_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="SCHEDULED")  # SCHEDULED, PROCESSING, PAID, FAILED
    reference = db.Column(db.String(128), nullable=True)
    scheduled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "reference": self.reference,
            "scheduled_at": to_utc_z(self.scheduled_at) if self.scheduled_at else None,
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
        }
