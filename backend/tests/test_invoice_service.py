"""
Tests for commission invoices, numbering and credit notes.

Commission transactions are stamped when payment completes, so invoice
periods here are built around today's date.
"""

from datetime import timedelta

import pytest

from backoffice.extensions import db
from backoffice.models import CommissionInvoice
from backoffice.services import invoice_service, refund_service
from backoffice.time_utils import utcnow
from backoffice.validation import ConflictError, NotFoundError, ValidationError


@pytest.fixture
def today():
    return utcnow().date()


@pytest.fixture
def period(today):
    return today - timedelta(days=1), today


@pytest.fixture
def billed_sales(db_session, store_a, global_commission, place_order):
    first = place_order((store_a, 20000))
    place_order((store_a, 10000))
    refund_service.process_partial_refund(first.sub_orders[0].id, 6000)


def test_generate_invoice_totals(billed_sales, store_a, period, today):
    invoice = invoice_service.generate_invoice(store_a.id, *period)

    assert invoice.invoice_number == f"INV-{period[0].year}-000001"
    assert invoice.status == "DRAFT"
    assert invoice.subtotal_cents == 2000 + 1000 - 600
    assert invoice.tax_rate_bps == 2000
    assert invoice.tax_cents == 480
    assert invoice.total_cents == 2880
    assert invoice.due_date == today + timedelta(days=14)
    assert len(invoice.items) == 3
    assert sum(item.commission_cents for item in invoice.items) == invoice.subtotal_cents
    assert invoice.items[0].description.startswith("Commission")


def test_generate_is_idempotent_by_period(billed_sales, store_a, period):
    first = invoice_service.generate_invoice(store_a.id, *period)
    again = invoice_service.generate_invoice(store_a.id, *period)

    assert again.id == first.id
    assert db.session.query(CommissionInvoice).count() == 1


def test_cancelled_invoice_can_be_regenerated(billed_sales, store_a, period):
    first = invoice_service.generate_invoice(store_a.id, *period)
    invoice_service.cancel_invoice(first.id)

    second = invoice_service.generate_invoice(store_a.id, *period)

    assert second.id != first.id
    assert second.invoice_number.endswith("-000002")


def test_no_commission_means_no_invoice(db_session, store_b, period):
    assert invoice_service.generate_invoice(store_b.id, *period) is None
    assert db.session.query(CommissionInvoice).count() == 0


def test_period_outside_activity_is_empty(billed_sales, store_a, today):
    old_start = today - timedelta(days=40)
    assert invoice_service.generate_invoice(store_a.id, old_start, old_start + timedelta(days=5)) is None


def test_generation_input_errors(db_session, store_a, period):
    start, end = period
    with pytest.raises(ValidationError):
        invoice_service.generate_invoice(store_a.id, end, start)
    with pytest.raises(NotFoundError):
        invoice_service.generate_invoice(999999, start, end)


def test_numbers_continue_after_gaps(db_session, store_a, today):
    db.session.add(CommissionInvoice(
        invoice_number=f"INV-{today.year}-000010",
        store_id=store_a.id,
        period_start=today,
        period_end=today,
        status="CANCELLED",
    ))
    db.session.add(CommissionInvoice(
        invoice_number=f"INV-{today.year - 1}-000042",
        store_id=store_a.id,
        period_start=today,
        period_end=today,
        status="PAID",
    ))
    db.session.commit()

    assert invoice_service.next_invoice_number(today.year) == f"INV-{today.year}-000011"
    assert invoice_service.next_invoice_number(today.year - 1) == f"INV-{today.year - 1}-000043"
    assert invoice_service.next_invoice_number(today.year + 1) == f"INV-{today.year + 1}-000001"


def test_status_machine(billed_sales, store_a, period):
    invoice = invoice_service.generate_invoice(store_a.id, *period)

    with pytest.raises(ConflictError):
        invoice_service.mark_invoice_paid(invoice.id)

    issued = invoice_service.issue_invoice(invoice.id)
    assert issued.status == "ISSUED"
    with pytest.raises(ConflictError):
        invoice_service.issue_invoice(invoice.id)

    paid = invoice_service.mark_invoice_paid(invoice.id)
    assert paid.status == "PAID"
    assert paid.paid_at is not None

    with pytest.raises(ConflictError):
        invoice_service.cancel_invoice(invoice.id)
    with pytest.raises(NotFoundError):
        invoice_service.issue_invoice(999999)


def test_issued_invoice_can_be_cancelled(billed_sales, store_a, period):
    invoice = invoice_service.generate_invoice(store_a.id, *period)
    invoice_service.issue_invoice(invoice.id)

    cancelled = invoice_service.cancel_invoice(invoice.id)
    assert cancelled.status == "CANCELLED"
    assert cancelled.cancelled_at is not None
    assert invoice_service.cancel_invoice(invoice.id).status == "CANCELLED"


def test_credit_note_negates_original(billed_sales, store_a, period, today):
    original = invoice_service.generate_invoice(store_a.id, *period)
    invoice_service.issue_invoice(original.id)

    credit = invoice_service.create_credit_note(original.id, "Commission rate applied in error")

    assert credit.is_credit_note is True
    assert credit.correcting_invoice_id == original.id
    assert credit.invoice_number.startswith(f"INV-{today.year}-")
    assert credit.total_cents == -2880
    assert credit.subtotal_cents == -2400
    assert credit.tax_cents == -480
    assert [item.commission_cents for item in credit.items] == [
        -item.commission_cents for item in original.items
    ]
    assert all(item.description.startswith("Credit: ") for item in credit.items)
    assert "Commission rate applied in error" in credit.notes

    original = db.session.get(CommissionInvoice, original.id)
    assert original.status == "SUPERSEDED"
    assert credit.total_cents == -original.total_cents

    with pytest.raises(ConflictError):
        invoice_service.create_credit_note(original.id, "again")
    with pytest.raises(ConflictError):
        invoice_service.create_credit_note(credit.id, "credit of a credit")


def test_credit_note_errors(db_session):
    with pytest.raises(NotFoundError):
        invoice_service.create_credit_note(999999, "missing")
    with pytest.raises(ValidationError):
        invoice_service.create_credit_note(999999, " ")


def test_superseded_invoices_hidden_by_default(billed_sales, store_a, period):
    original = invoice_service.generate_invoice(store_a.id, *period)
    credit = invoice_service.create_credit_note(original.id, "Wrong period")

    assert [i.id for i in invoice_service.list_invoices(store_a.id)] == [credit.id]
    assert {i.id for i in invoice_service.list_invoices(store_a.id, include_superseded=True)} == {
        original.id, credit.id,
    }


def test_monthly_batch(billed_sales, store_a, store_b, today):
    result = invoice_service.generate_monthly_invoices(today.year, today.month)

    assert result.generated_count == 1
    assert result.empty == [store_b.id]
    assert result.failed == {}

    with pytest.raises(ValidationError):
        invoice_service.generate_monthly_invoices(today.year, 0)


def test_config_and_detail(billed_sales, store_a, period):
    config = invoice_service.update_invoice_config(company_address="1 Market St", tax_id="US-123")
    assert config.company_name == "Marketplace Platform"
    assert config.tax_rate_bps == 2000

    invoice = invoice_service.generate_invoice(store_a.id, *period)
    detail = invoice_service.get_invoice_detail(invoice.id)

    assert detail["store_name"] == "Store A"
    assert len(detail["items"]) == 3
    assert detail["issuer"]["tax_id"] == "US-123"
    assert detail["correcting_invoice_number"] is None

    with pytest.raises(ValidationError):
        invoice_service.update_invoice_config(payment_due_days=-1)
