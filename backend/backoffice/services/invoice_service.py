# Overview: Service-layer operations for commission invoices and credit notes.

"""
Commission Invoice Service

Invoices bill a store for the commission recorded in a period:

    subtotal = sum(commission_transactions.commission_cents)   (refund reversals included)
    tax      = round_half_up(subtotal * tax_rate_bps / 10000)
    total    = subtotal + tax

STATUS MACHINE (explicit calls only, no rollup):
    DRAFT -> ISSUED -> PAID
    DRAFT/ISSUED -> CANCELLED
    any non-credit-note invoice -> SUPERSEDED when a credit note corrects it

Generation is idempotent by period: an existing invoice for the exact period
that is not CANCELLED/SUPERSEDED is returned unchanged. Numbers are
"INV-{year}-{sequence:06d}", derived from the highest existing number for
the year; gaps left by failed generations are tolerated.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import (
    Category,
    CommissionInvoice,
    CommissionInvoiceConfig,
    CommissionInvoiceItem,
    CommissionTransaction,
    Store,
)
from ..money import apply_rate_bps
from ..time_utils import end_of_day_exclusive, month_dates, utcnow
from ..validation import (
    ConflictError,
    NotFoundError,
    ValidationError,
    require_month,
    require_non_negative_cents,
)
from .concurrency import lock_for_update, run_in_transaction


# =============================================================================
# STATUS CONSTANTS
# =============================================================================

INVOICE_STATUS_DRAFT = "DRAFT"
INVOICE_STATUS_ISSUED = "ISSUED"
INVOICE_STATUS_PAID = "PAID"
INVOICE_STATUS_CANCELLED = "CANCELLED"
INVOICE_STATUS_SUPERSEDED = "SUPERSEDED"

_INACTIVE_STATUSES = (INVOICE_STATUS_CANCELLED, INVOICE_STATUS_SUPERSEDED)
_NUMBER_PATTERN = re.compile(r"^INV-(\d{4})-(\d+)$")


@dataclass
class InvoiceBatchResult:
    year: int
    month: int
    generated: list[int] = field(default_factory=list)
    empty: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)

    @property
    def generated_count(self) -> int:
        return len(self.generated)


# =============================================================================
# CONFIGURATION
# =============================================================================

def get_or_create_invoice_config() -> CommissionInvoiceConfig:
    """Return the singleton config row, seeding it from app config on first use."""
    config = db.session.query(CommissionInvoiceConfig).order_by(CommissionInvoiceConfig.id.asc()).first()
    if config is None:
        config = CommissionInvoiceConfig(
            tax_rate_bps=current_app.config.get("COMMISSION_INVOICE_TAX_BPS", 0),
            payment_due_days=current_app.config.get("COMMISSION_INVOICE_DUE_DAYS", 30),
            company_name=current_app.config.get("COMMISSION_INVOICE_COMPANY_NAME"),
        )
        db.session.add(config)
        db.session.flush()
    return config


def update_invoice_config(
    *,
    tax_rate_bps: int | None = None,
    payment_due_days: int | None = None,
    company_name: str | None = None,
    company_address: str | None = None,
    tax_id: str | None = None,
) -> CommissionInvoiceConfig:
    if tax_rate_bps is not None:
        require_non_negative_cents(tax_rate_bps, "tax_rate_bps")
    if payment_due_days is not None and (not isinstance(payment_due_days, int) or payment_due_days < 0):
        raise ValidationError("payment_due_days must be a non-negative integer")

    def _op():
        config = get_or_create_invoice_config()
        if tax_rate_bps is not None:
            config.tax_rate_bps = tax_rate_bps
        if payment_due_days is not None:
            config.payment_due_days = payment_due_days
        if company_name is not None:
            config.company_name = company_name
        if company_address is not None:
            config.company_address = company_address
        if tax_id is not None:
            config.tax_id = tax_id
        current_app.logger.info("Updated commission invoice configuration")
        return config

    return run_in_transaction(_op)


# =============================================================================
# NUMBERING
# =============================================================================

def next_invoice_number(year: int) -> str:
    prefix = f"INV-{year}-"
    numbers = (
        db.session.query(CommissionInvoice.invoice_number)
        .filter(CommissionInvoice.invoice_number.like(f"{prefix}%"))
        .all()
    )
    highest = 0
    for (number,) in numbers:
        match = _NUMBER_PATTERN.match(number)
        if match and int(match.group(1)) == year:
            highest = max(highest, int(match.group(2)))
    return f"{prefix}{highest + 1:06d}"


# =============================================================================
# GENERATION
# =============================================================================

def _existing_invoice(store_id: int, period_start: date, period_end: date) -> CommissionInvoice | None:
    return (
        db.session.query(CommissionInvoice)
        .filter_by(store_id=store_id, period_start=period_start, period_end=period_end, is_credit_note=False)
        .filter(CommissionInvoice.status.notin_(_INACTIVE_STATUSES))
        .first()
    )


def _period_transactions(store_id: int, period_start: date, period_end: date) -> list[CommissionTransaction]:
    """Commission transactions created on any day from period_start through period_end."""
    return (
        db.session.query(CommissionTransaction)
        .filter(CommissionTransaction.store_id == store_id)
        .filter(CommissionTransaction.created_at >= datetime.combine(period_start, datetime.min.time()))
        .filter(CommissionTransaction.created_at < end_of_day_exclusive(period_end))
        .order_by(CommissionTransaction.created_at.asc(), CommissionTransaction.id.asc())
        .all()
    )


def _item_description(tx: CommissionTransaction) -> str:
    label = "Commission" if tx.transaction_type == "INITIAL" else "Commission refund adjustment"
    if tx.category_id is not None:
        category = db.session.get(Category, tx.category_id)
        if category is not None:
            label += f" - {category.name}"
    return f"{label} (Transaction #{tx.id})"


def generate_invoice(store_id: int, period_start: date, period_end: date) -> CommissionInvoice | None:
    """
    Bill a store's commission for [period_start, period_end] (whole days).

    Returns the existing active invoice for the exact period when there is
    one, and None when the period has no commission transactions.

    Raises:
        ValidationError: period_end before period_start
        NotFoundError: unknown store
    """
    if period_start is None or period_end is None:
        raise ValidationError("Period start and end are required")
    if period_end < period_start:
        raise ValidationError("Period end date must not be before start date")

    def _op():
        store = db.session.get(Store, store_id)
        if store is None:
            raise NotFoundError(f"Store {store_id} not found")

        existing = _existing_invoice(store_id, period_start, period_end)
        if existing is not None:
            current_app.logger.warning(
                "Invoice %s already exists for store %s, period %s to %s",
                existing.invoice_number, store_id, period_start, period_end,
            )
            return existing

        transactions = _period_transactions(store_id, period_start, period_end)
        if not transactions:
            current_app.logger.info(
                "No commission transactions for store %s in period %s to %s",
                store_id, period_start, period_end,
            )
            return None

        config = get_or_create_invoice_config()
        subtotal = sum(tx.commission_cents for tx in transactions)
        tax = apply_rate_bps(subtotal, config.tax_rate_bps)
        today = utcnow().date()

        invoice = CommissionInvoice(
            invoice_number=next_invoice_number(period_start.year),
            store_id=store_id,
            period_start=period_start,
            period_end=period_end,
            status=INVOICE_STATUS_DRAFT,
            currency_code=store.currency_code or current_app.config.get("STORE_CURRENCY", "USD"),
            subtotal_cents=subtotal,
            tax_rate_bps=config.tax_rate_bps,
            tax_cents=tax,
            total_cents=subtotal + tax,
            issue_date=today,
            due_date=today + timedelta(days=config.payment_due_days),
            created_at=utcnow(),
        )
        db.session.add(invoice)
        db.session.flush()

        for tx in transactions:
            db.session.add(CommissionInvoiceItem(
                invoice_id=invoice.id,
                commission_transaction_id=tx.id,
                description=_item_description(tx),
                gross_cents=tx.gross_cents,
                commission_rate_bps=tx.commission_rate_bps,
                commission_cents=tx.commission_cents,
            ))
        db.session.flush()

        current_app.logger.info(
            "Generated invoice %s for store %s, total %s cents",
            invoice.invoice_number, store_id, invoice.total_cents,
        )
        return invoice

    return run_in_transaction(_op, retry_on=(IntegrityError,))


def generate_monthly_invoices(year: int, month: int) -> InvoiceBatchResult:
    """Invoice every active store for a calendar month, one transaction per store."""
    require_month(year, month)
    period_start, period_end = month_dates(year, month)
    result = InvoiceBatchResult(year=year, month=month)

    store_ids = [
        row.id
        for row in db.session.query(Store.id).filter(Store.status == "ACTIVE").order_by(Store.id.asc()).all()
    ]
    current_app.logger.info("Generating monthly commission invoices for %04d-%02d", year, month)

    for store_id in store_ids:
        try:
            invoice = generate_invoice(store_id, period_start, period_end)
            if invoice is None:
                result.empty.append(store_id)
            else:
                result.generated.append(invoice.id)
        except Exception as exc:
            current_app.logger.exception("Error generating invoice for store %s", store_id)
            result.failed[store_id] = str(exc)

    current_app.logger.info(
        "Generated %d commission invoices for %04d-%02d", result.generated_count, year, month
    )
    return result


# =============================================================================
# STATUS TRANSITIONS
# =============================================================================

def _load_invoice_for_update(invoice_id: int) -> CommissionInvoice:
    invoice = lock_for_update(db.session.query(CommissionInvoice).filter_by(id=invoice_id)).first()
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


def issue_invoice(invoice_id: int) -> CommissionInvoice:
    def _op():
        invoice = _load_invoice_for_update(invoice_id)
        if invoice.status != INVOICE_STATUS_DRAFT:
            raise ConflictError(f"Invoice {invoice.invoice_number} is not in DRAFT status")
        invoice.status = INVOICE_STATUS_ISSUED
        invoice.issue_date = utcnow().date()
        current_app.logger.info("Issued invoice %s", invoice.invoice_number)
        return invoice

    return run_in_transaction(_op)


def mark_invoice_paid(invoice_id: int) -> CommissionInvoice:
    def _op():
        invoice = _load_invoice_for_update(invoice_id)
        if invoice.status != INVOICE_STATUS_ISSUED:
            raise ConflictError(f"Invoice {invoice.invoice_number} is not in ISSUED status")
        invoice.status = INVOICE_STATUS_PAID
        invoice.paid_at = utcnow()
        current_app.logger.info("Marked invoice %s as paid", invoice.invoice_number)
        return invoice

    return run_in_transaction(_op)


def cancel_invoice(invoice_id: int) -> CommissionInvoice:
    """DRAFT or ISSUED -> CANCELLED. Cancelling twice is a no-op."""
    def _op():
        invoice = _load_invoice_for_update(invoice_id)
        if invoice.status == INVOICE_STATUS_CANCELLED:
            return invoice
        if invoice.status == INVOICE_STATUS_PAID:
            raise ConflictError(f"Cannot cancel paid invoice {invoice.invoice_number}")
        if invoice.status != INVOICE_STATUS_DRAFT and invoice.status != INVOICE_STATUS_ISSUED:
            raise ConflictError(f"Cannot cancel invoice in {invoice.status} status")
        invoice.status = INVOICE_STATUS_CANCELLED
        invoice.cancelled_at = utcnow()
        current_app.logger.info("Cancelled invoice %s", invoice.invoice_number)
        return invoice

    return run_in_transaction(_op)


def create_credit_note(original_invoice_id: int, reason: str) -> CommissionInvoice:
    """
    Issue a negated copy of an invoice and mark the original SUPERSEDED.

    Raises:
        ValidationError: empty reason
        NotFoundError: unknown original invoice
        ConflictError: original is a credit note or already superseded
    """
    if not reason or not reason.strip():
        raise ValidationError("A reason is required for a credit note")

    def _op():
        original = _load_invoice_for_update(original_invoice_id)
        if original.is_credit_note:
            raise ConflictError("Cannot create a credit note for a credit note")
        if original.status == INVOICE_STATUS_SUPERSEDED:
            raise ConflictError(f"Invoice {original.invoice_number} has already been superseded")

        config = get_or_create_invoice_config()
        today = utcnow().date()
        credit_note = CommissionInvoice(
            invoice_number=next_invoice_number(today.year),
            store_id=original.store_id,
            period_start=original.period_start,
            period_end=original.period_end,
            status=INVOICE_STATUS_DRAFT,
            currency_code=original.currency_code,
            subtotal_cents=-original.subtotal_cents,
            tax_rate_bps=original.tax_rate_bps,
            tax_cents=-original.tax_cents,
            total_cents=-original.total_cents,
            is_credit_note=True,
            correcting_invoice_id=original.id,
            notes=f"Credit note for invoice {original.invoice_number}. Reason: {reason.strip()}",
            issue_date=today,
            due_date=today + timedelta(days=config.payment_due_days),
            created_at=utcnow(),
        )
        db.session.add(credit_note)
        db.session.flush()

        for item in original.items:
            db.session.add(CommissionInvoiceItem(
                invoice_id=credit_note.id,
                commission_transaction_id=item.commission_transaction_id,
                description=f"Credit: {item.description}",
                gross_cents=-item.gross_cents,
                commission_rate_bps=item.commission_rate_bps,
                commission_cents=-item.commission_cents,
            ))

        original.status = INVOICE_STATUS_SUPERSEDED
        db.session.flush()

        current_app.logger.info(
            "Created credit note %s for invoice %s", credit_note.invoice_number, original.invoice_number
        )
        return credit_note

    return run_in_transaction(_op, retry_on=(IntegrityError,))


# =============================================================================
# QUERIES
# =============================================================================

def get_invoice(invoice_id: int) -> CommissionInvoice:
    invoice = db.session.get(CommissionInvoice, invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


def get_invoice_detail(invoice_id: int) -> dict:
    """Full invoice aggregate (items, issuer config, corrected invoice) for exports."""
    invoice = get_invoice(invoice_id)
    config = get_or_create_invoice_config()
    data = invoice.to_dict()
    data["store_name"] = invoice.store.name if invoice.store else None
    data["items"] = [item.to_dict() for item in invoice.items]
    data["issuer"] = {
        "company_name": config.company_name,
        "company_address": config.company_address,
        "tax_id": config.tax_id,
    }
    data["correcting_invoice_number"] = (
        invoice.correcting_invoice.invoice_number if invoice.correcting_invoice else None
    )
    return data


def list_invoices(store_id: int | None = None, include_superseded: bool = False) -> list[CommissionInvoice]:
    query = db.session.query(CommissionInvoice)
    if store_id:
        query = query.filter(CommissionInvoice.store_id == store_id)
    if not include_superseded:
        query = query.filter(CommissionInvoice.status != INVOICE_STATUS_SUPERSEDED)
    return query.order_by(CommissionInvoice.period_start.desc(), CommissionInvoice.id.desc()).all()
