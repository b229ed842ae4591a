from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z, to_iso_date


class Settlement(db.Model):
    """
    Versioned per-store, per-period financial snapshot.

    LIFECYCLE:
    1. DRAFT: generated, may be regenerated or adjusted
    2. FINALIZED: immutable
    3. SUPERSEDED: replaced by a regenerated version (kept for audit)

    CRITICAL: at most one row per (store, period) has is_current_version set.
    The partial unique index enforces that at the database level, so a
    regeneration must flush the supersede before inserting the new version.
    """
    __tablename__ = "settlements"
    __table_args__ = (
        db.Index(
            "uq_settlements_current_period",
            "store_id", "period_start", "period_end",
            unique=True,
            sqlite_where=db.text("is_current_version = 1"),
            postgresql_where=db.text("is_current_version"),
        ),
        db.Index("ix_settlements_store_period", "store_id", "period_start"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    # Shared across versions (e.g., "STL-000012-202401")
    settlement_number = db.Column(db.String(64), nullable=False, index=True)

    # Half-open period: period_start <= ordered_at < period_end
    period_start = db.Column(db.DateTime(timezone=True), nullable=False)
    period_end = db.Column(db.DateTime(timezone=True), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="DRAFT", index=True)  # DRAFT, FINALIZED, SUPERSEDED
    currency_code = db.Column(db.String(3), nullable=False, default="USD")

    gross_sales_cents = db.Column(db.Integer, nullable=False, default=0)
    refunds_cents = db.Column(db.Integer, nullable=False, default=0)
    commission_cents = db.Column(db.Integer, nullable=False, default=0)
    adjustments_cents = db.Column(db.Integer, nullable=False, default=0)
    net_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_payouts_cents = db.Column(db.Integer, nullable=False, default=0)  # informational only

    version = db.Column(db.Integer, nullable=False, default=1)
    is_current_version = db.Column(db.Boolean, nullable=False, default=True)
    previous_settlement_id = db.Column(db.Integer, db.ForeignKey("settlements.id"), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    finalized_at = db.Column(db.DateTime(timezone=True), nullable=True)
    superseded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    store = db.relationship("Store")
    previous_settlement = db.relationship("Settlement", remote_side=[id])
    __mapper_args__ = {"version_id_col": version_id}

    def recompute_net(self) -> None:
        self.net_amount_cents = (
            self.gross_sales_cents
            - self.refunds_cents
            - self.commission_cents
            + self.adjustments_cents
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "settlement_number": self.settlement_number,
            "period_start": to_utc_z(self.period_start),
            "period_end": to_utc_z(self.period_end),
            "status": self.status,
            "currency_code": self.currency_code,
            "gross_sales_cents": self.gross_sales_cents,
            "refunds_cents": self.refunds_cents,
            "commission_cents": self.commission_cents,
            "adjustments_cents": self.adjustments_cents,
            "net_amount_cents": self.net_amount_cents,
            "total_payouts_cents": self.total_payouts_cents,
            "version": self.version,
            "is_current_version": self.is_current_version,
            "previous_settlement_id": self.previous_settlement_id,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "finalized_at": to_utc_z(self.finalized_at) if self.finalized_at else None,
        }


class SettlementItem(db.Model):
    """Per-sub-order contribution to a settlement, for traceability."""
    __tablename__ = "settlement_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    settlement_id = db.Column(db.Integer, db.ForeignKey("settlements.id"), nullable=False, index=True)
    sub_order_id = db.Column(db.Integer, db.ForeignKey("sub_orders.id"), nullable=False, index=True)
    escrow_transaction_id = db.Column(db.Integer, db.ForeignKey("escrow_transactions.id"), nullable=True)
    order_number = db.Column(db.String(64), nullable=True)
    ordered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    gross_cents = db.Column(db.Integer, nullable=False, default=0)
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)
    commission_cents = db.Column(db.Integer, nullable=False, default=0)
    net_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=True)

    settlement = db.relationship("Settlement", backref=db.backref("items", lazy=True, order_by="SettlementItem.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "settlement_id": self.settlement_id,
            "sub_order_id": self.sub_order_id,
            "escrow_transaction_id": self.escrow_transaction_id,
            "order_number": self.order_number,
            "ordered_at": to_utc_z(self.ordered_at) if self.ordered_at else None,
            "gross_cents": self.gross_cents,
            "refunded_cents": self.refunded_cents,
            "commission_cents": self.commission_cents,
            "net_cents": self.net_cents,
            "status": self.status,
        }


class SettlementAdjustment(db.Model):
    """
    Manual signed correction on a settlement.

    Copied forward (re-parented) when a settlement is regenerated so the
    adjustment total survives a new version.
    """
    __tablename__ = "settlement_adjustments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    settlement_id = db.Column(db.Integer, db.ForeignKey("settlements.id"), nullable=False, index=True)
    adjustment_type = db.Column(db.String(32), nullable=False)  # CREDIT, DEBIT, CORRECTION, PRIOR_PERIOD_ADJUSTMENT, OTHER
    amount_cents = db.Column(db.Integer, nullable=False)  # signed
    description = db.Column(db.Text, nullable=False)
    is_prior_period = db.Column(db.Boolean, nullable=False, default=False)
    related_settlement_id = db.Column(db.Integer, db.ForeignKey("settlements.id"), nullable=True)
    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    settlement = db.relationship(
        "Settlement",
        foreign_keys=[settlement_id],
        backref=db.backref("adjustments", lazy=True, order_by="SettlementAdjustment.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "settlement_id": self.settlement_id,
            "adjustment_type": self.adjustment_type,
            "amount_cents": self.amount_cents,
            "description": self.description,
            "is_prior_period": self.is_prior_period,
            "related_settlement_id": self.related_settlement_id,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class CommissionInvoice(db.Model):
    """
    Commission bill sent to a store for a period.

    LIFECYCLE: DRAFT -> ISSUED -> PAID, or DRAFT/ISSUED -> CANCELLED.
    A credit note is a negated copy that marks its original SUPERSEDED.

    invoice_number is "INV-{year}-{sequence:06d}". The sequence is derived
    from the highest existing number for that year; the unique constraint
    catches concurrent collisions.
    """
    __tablename__ = "commission_invoices"
    __table_args__ = (
        db.Index("ix_commission_invoices_store_period", "store_id", "period_start", "period_end"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(32), nullable=False, unique=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="DRAFT", index=True)  # DRAFT, ISSUED, PAID, CANCELLED, SUPERSEDED
    currency_code = db.Column(db.String(3), nullable=False, default="USD")

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    is_credit_note = db.Column(db.Boolean, nullable=False, default=False)
    # On a credit note: the invoice it corrects
    correcting_invoice_id = db.Column(db.Integer, db.ForeignKey("commission_invoices.id"), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    issue_date = db.Column(db.Date, nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    store = db.relationship("Store")
    correcting_invoice = db.relationship("CommissionInvoice", remote_side=[id])
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "store_id": self.store_id,
            "period_start": to_iso_date(self.period_start),
            "period_end": to_iso_date(self.period_end),
            "status": self.status,
            "currency_code": self.currency_code,
            "subtotal_cents": self.subtotal_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "is_credit_note": self.is_credit_note,
            "correcting_invoice_id": self.correcting_invoice_id,
            "notes": self.notes,
            "issue_date": to_iso_date(self.issue_date),
            "due_date": to_iso_date(self.due_date),
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "created_at": to_utc_z(self.created_at),
        }


class CommissionInvoiceItem(db.Model):
    """One billed commission transaction."""
    __tablename__ = "commission_invoice_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("commission_invoices.id"), nullable=False, index=True)
    commission_transaction_id = db.Column(db.Integer, db.ForeignKey("commission_transactions.id"), nullable=True, index=True)
    description = db.Column(db.String(255), nullable=False)
    gross_cents = db.Column(db.Integer, nullable=False, default=0)
    commission_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    commission_cents = db.Column(db.Integer, nullable=False, default=0)

    invoice = db.relationship("CommissionInvoice", backref=db.backref("items", lazy=True, order_by="CommissionInvoiceItem.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "commission_transaction_id": self.commission_transaction_id,
            "description": self.description,
            "gross_cents": self.gross_cents,
            "commission_rate_bps": self.commission_rate_bps,
            "commission_cents": self.commission_cents,
        }


class CommissionInvoiceConfig(db.Model):
    """Singleton row with invoice tax rate, due days and issuer details."""
    __tablename__ = "commission_invoice_configs"

    id = db.Column(db.Integer, primary_key=True)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    payment_due_days = db.Column(db.Integer, nullable=False, default=30)
    company_name = db.Column(db.String(255), nullable=True)
    company_address = db.Column(db.Text, nullable=True)
    tax_id = db.Column(db.String(64), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tax_rate_bps": self.tax_rate_bps,
            "payment_due_days": self.payment_due_days,
            "company_name": self.company_name,
            "company_address": self.company_address,
            "tax_id": self.tax_id,
            "updated_at": to_utc_z(self.updated_at),
        }
