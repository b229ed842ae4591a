"""
Tests for order placement, payment capture, escrow and payouts.
"""

from datetime import datetime, timedelta

import pytest

from backoffice.extensions import db
from backoffice.models import CommissionTransaction, EscrowTransaction, Order, SubOrder
from backoffice.services import escrow_service, order_lifecycle_service as lifecycle
from backoffice.services import payout_service
from backoffice.services.order_service import create_order, get_order, list_sub_orders_for_store
from backoffice.services.payment_service import complete_payment, record_payment_failure
from backoffice.time_utils import utcnow
from backoffice.validation import ConflictError, NotFoundError, ValidationError


def test_create_order_splits_by_store(db_session, store_a, store_b):
    order = create_order(
        buyer_id=8,
        lines=[
            {"store_id": store_a.id, "product_id": 1, "quantity": 2, "unit_price_cents": 1500, "tax_cents": 300},
            {"store_id": store_b.id, "product_id": 2, "quantity": 1, "unit_price_cents": 4000},
            {"store_id": store_a.id, "product_id": 3, "quantity": 1, "unit_price_cents": 500},
        ],
        shipping_by_store={store_a.id: 700},
    )

    assert order.status == "NEW"
    assert order.payment_status == "PENDING"
    assert len(order.sub_orders) == 2
    first, second = order.sub_orders
    assert first.sub_order_number == f"{order.order_number}-01"
    assert first.subtotal_cents == 3000 + 300 + 500
    assert first.total_cents == 3800 + 700
    assert second.total_cents == 4000
    assert order.total_cents == first.total_cents + second.total_cents
    assert [h.new_status for h in lifecycle.get_status_history(first.id)] == ["NEW"]
    assert [so.id for so in list_sub_orders_for_store(store_b.id)] == [second.id]


@pytest.mark.parametrize("lines", [
    [],
    [{"store_id": 1, "product_id": 1, "quantity": 0, "unit_price_cents": 100}],
    [{"store_id": 1, "product_id": 1, "quantity": 1, "unit_price_cents": -1}],
    [{"store_id": 1, "product_id": 1, "quantity": 1}],
])
def test_create_order_validation(db_session, lines):
    with pytest.raises(ValidationError):
        create_order(buyer_id=1, lines=lines)


def test_create_order_unknown_store(db_session):
    with pytest.raises(NotFoundError):
        create_order(buyer_id=1, lines=[{"store_id": 999999, "product_id": 1, "quantity": 1, "unit_price_cents": 100}])
    assert db.session.query(Order).count() == 0


def test_payment_marks_paid_and_allocates_escrow(db_session, store_a, store_b, global_commission, place_order):
    order = place_order((store_a, 20000), (store_b, 5000), paid=False)

    paid = complete_payment(order.id, "pay_123", actor_user_id=8)

    assert paid.payment_status == "COMPLETED"
    assert paid.status == "PAID"
    assert {so.status for so in paid.sub_orders} == {"PAID"}
    escrows = escrow_service.get_escrow_transactions_by_order(order.id)
    assert [(e.gross_cents, e.commission_cents, e.status) for e in escrows] == [
        (20000, 2000, "HELD"),
        (5000, 500, "HELD"),
    ]


def test_sub_order_cancelled_before_payment_gets_no_escrow(db_session, store_a, store_b, global_commission, place_order):
    order = place_order((store_a, 20000), (store_b, 5000), paid=False)
    kept, cancelled = order.sub_orders
    lifecycle.cancel_sub_order(cancelled.id, notes="Seller out of stock")

    complete_payment(order.id, "pay_456")

    escrows = escrow_service.get_escrow_transactions_by_order(order.id)
    assert [e.sub_order_id for e in escrows] == [kept.id]
    assert escrow_service.get_escrow_by_sub_order(cancelled.id) is None
    commission = db.session.query(CommissionTransaction).all()
    assert [tx.gross_cents for tx in commission] == [20000]
    assert db.session.get(SubOrder, cancelled.id).status == "CANCELLED"


def test_payment_is_idempotent(db_session, store_a, global_commission, place_order):
    order = place_order((store_a, 20000))

    complete_payment(order.id, "pay_again")
    escrow_service.create_escrow_allocations(order.id)

    assert db.session.query(EscrowTransaction).count() == 1
    assert db.session.query(CommissionTransaction).count() == 1
    assert get_order(order.id).payment_reference == f"pay_{order.order_number}"


def test_payment_errors(db_session, store_a, place_order):
    order = place_order((store_a, 1000), paid=False)
    with pytest.raises(ValidationError):
        complete_payment(order.id, "")
    with pytest.raises(NotFoundError):
        complete_payment(999999, "pay")
    with pytest.raises(ConflictError):
        escrow_service.create_escrow_allocations(order.id)

    failed = record_payment_failure(order.id, "Card declined")
    assert failed.payment_status == "FAILED"
    assert failed.status == "NEW"


def test_category_commission_applies_to_escrow(db_session, store_a, category, global_commission, place_order):
    category.commission_rate_bps = 1500
    db_session.commit()

    order = place_order((store_a, 10000), category_id=category.id)

    escrow = escrow_service.get_escrow_by_sub_order(order.sub_orders[0].id)
    assert escrow.commission_cents == 1500
    initial = db.session.query(CommissionTransaction).filter_by(escrow_transaction_id=escrow.id).one()
    assert initial.source == "CATEGORY"
    assert initial.category_id == category.id


def test_release_requires_delivery(db_session, store_a, global_commission, place_order):
    order = place_order((store_a, 10000))
    sub_order_id = order.sub_orders[0].id
    escrow = escrow_service.get_escrow_by_sub_order(sub_order_id)

    with pytest.raises(ConflictError):
        escrow_service.release_escrow(escrow.id)
    with pytest.raises(ConflictError):
        escrow_service.mark_escrow_eligible_for_payout(sub_order_id)

    lifecycle.mark_sub_order_preparing(sub_order_id)
    lifecycle.mark_sub_order_shipped(sub_order_id)
    lifecycle.mark_sub_order_delivered(sub_order_id)

    released = escrow_service.release_escrow(escrow.id)
    assert released.status == "RELEASED"
    assert released.released_at is not None
    assert escrow_service.release_escrow(escrow.id).status == "RELEASED"

    with pytest.raises(ConflictError):
        escrow_service.return_escrow_to_buyer(escrow.id, 100)


def test_return_to_buyer_limits(db_session, store_a, global_commission, place_order):
    order = place_order((store_a, 10000))
    escrow = escrow_service.get_escrow_by_sub_order(order.sub_orders[0].id)

    escrow_service.return_escrow_to_buyer(escrow.id, 4000)
    with pytest.raises(ConflictError):
        escrow_service.return_escrow_to_buyer(escrow.id, 6001)
    with pytest.raises(ValidationError):
        escrow_service.return_escrow_to_buyer(escrow.id, 0)

    escrow = escrow_service.return_escrow_to_buyer(escrow.id, 6000)
    assert escrow.status == "RETURNED_TO_BUYER"
    assert escrow.refunded_cents == 10000


def test_process_eligible_payouts(db_session, store_a, store_b, global_commission, place_order):
    order = place_order((store_a, 10000), (store_b, 5000))
    for sub_order in order.sub_orders:
        lifecycle.mark_sub_order_preparing(sub_order.id)
        lifecycle.mark_sub_order_shipped(sub_order.id)
    lifecycle.mark_sub_order_delivered(order.sub_orders[0].id)

    assert escrow_service.process_eligible_payouts() == 0
    assert escrow_service.process_eligible_payouts(now=utcnow() + timedelta(days=8)) == 1

    released = escrow_service.get_escrow_transactions_by_store(store_a.id, status="RELEASED")
    assert len(released) == 1
    assert escrow_service.get_escrow_transactions_by_store(store_b.id)[0].status == "HELD"
    with pytest.raises(ValidationError):
        escrow_service.get_escrow_transactions_by_store(store_a.id, status="FROZEN")


def test_payout_lifecycle(db_session, store_a):
    payout = payout_service.schedule_payout(store_a.id, 12000, scheduled_at=datetime(2024, 3, 1))
    assert payout.status == "SCHEDULED"

    paid = payout_service.mark_payout_paid(payout.id, reference="WIRE-9", paid_at=datetime(2024, 3, 2))
    assert paid.status == "PAID"
    assert paid.reference == "WIRE-9"

    failed = payout_service.schedule_payout(store_a.id, 500)
    payout_service.mark_payout_failed(failed.id)

    total = payout_service.sum_completed_payouts(store_a.id, datetime(2024, 3, 1), datetime(2024, 3, 31, 23, 59, 59))
    assert total == 12000
    with pytest.raises(ValidationError):
        payout_service.schedule_payout(store_a.id, 0)
