"""
Tests for partial/full refunds, commission reversal and provider retries.
"""

import pytest

from backoffice.extensions import db
from backoffice.models import CommissionTransaction, EscrowTransaction, Order, RefundTransaction, SubOrder
from backoffice.services import order_lifecycle_service as lifecycle
from backoffice.services import refund_service
from backoffice.services.escrow_service import release_escrow
from backoffice.validation import ConflictError, NotFoundError, RefundProviderError, ValidationError


def _escrow(sub_order_id):
    return db.session.query(EscrowTransaction).filter_by(sub_order_id=sub_order_id).one()


def _adjustments(escrow_id):
    return (
        db.session.query(CommissionTransaction)
        .filter_by(escrow_transaction_id=escrow_id, transaction_type="REFUND_ADJUSTMENT")
        .order_by(CommissionTransaction.id)
        .all()
    )


def _deliver(sub_order_id):
    lifecycle.mark_sub_order_preparing(sub_order_id)
    lifecycle.mark_sub_order_shipped(sub_order_id)
    lifecycle.mark_sub_order_delivered(sub_order_id)


def test_two_partial_refunds_end_to_end(db_session, store_a, global_commission, place_order, provider):
    order = place_order((store_a, 20000))
    sub_order_id = order.sub_orders[0].id
    escrow = _escrow(sub_order_id)
    assert escrow.commission_cents == 2000
    assert escrow.net_cents == 18000

    first = refund_service.process_partial_refund(sub_order_id, 6000, reason="Damaged", initiated_by_user_id=4)

    assert first.status == "COMPLETED"
    assert first.funds_reversed is True
    assert first.provider_succeeded is True
    assert first.provider_refund_id == f"mock_rf_{first.refund_number}"
    assert [tx.commission_cents for tx in _adjustments(escrow.id)] == [-600]

    sub_order = db.session.get(SubOrder, sub_order_id)
    assert sub_order.refunded_cents == 6000
    assert sub_order.status == "PAID"
    escrow = _escrow(sub_order_id)
    assert escrow.status == "PARTIALLY_REFUNDED"
    assert escrow.commission_cents == 1400
    assert escrow.net_cents == 20000 - 6000 - 1400

    refund_service.process_partial_refund(sub_order_id, 14000)

    sub_order = db.session.get(SubOrder, sub_order_id)
    assert sub_order.refunded_cents == 20000
    assert sub_order.status == "REFUNDED"
    assert sub_order.order.refunded_cents == 20000
    assert sub_order.order.payment_status == "REFUNDED"
    assert sub_order.order.status == "REFUNDED"

    escrow = _escrow(sub_order_id)
    assert escrow.status == "RETURNED_TO_BUYER"
    assert escrow.commission_cents == 0
    assert [tx.commission_cents for tx in _adjustments(escrow.id)] == [-600, -1400]
    assert refund_service.get_total_refunded_amount(order.id) == 20000
    assert [call["amount_cents"] for call in provider.calls] == [6000, 14000]


def test_refund_above_remaining_balance_is_rejected(db_session, store_a, global_commission, place_order):
    order = place_order((store_a, 20000))
    sub_order_id = order.sub_orders[0].id
    refund_service.process_partial_refund(sub_order_id, 15000)

    with pytest.raises(ConflictError):
        refund_service.process_partial_refund(sub_order_id, 5001)

    assert db.session.get(SubOrder, sub_order_id).refunded_cents == 15000
    assert db.session.query(RefundTransaction).count() == 1


@pytest.mark.parametrize("amount", [0, -100, 10.5])
def test_refund_amount_must_be_positive_cents(db_session, store_a, place_order, amount):
    order = place_order((store_a, 20000))
    with pytest.raises(ValidationError):
        refund_service.process_partial_refund(order.sub_orders[0].id, amount)


def test_unknown_sub_order(db_session):
    with pytest.raises(NotFoundError):
        refund_service.process_partial_refund(999999, 100)


def test_unpaid_order_cannot_be_refunded(db_session, store_a, place_order):
    order = place_order((store_a, 20000), paid=False)
    with pytest.raises(ConflictError):
        refund_service.process_partial_refund(order.sub_orders[0].id, 100)
    with pytest.raises(ConflictError):
        refund_service.validate_refund_eligibility(order.id)


def test_full_refund_of_preparing_sub_order_needs_cancellation(db_session, store_a, global_commission, place_order):
    order = place_order((store_a, 20000))
    sub_order_id = order.sub_orders[0].id
    lifecycle.mark_sub_order_preparing(sub_order_id)

    with pytest.raises(ConflictError):
        refund_service.process_partial_refund(sub_order_id, 20000)

    # Partial refunds leave the status alone
    refund_service.process_partial_refund(sub_order_id, 5000)
    assert db.session.get(SubOrder, sub_order_id).status == "PREPARING"


def test_provider_failure_then_retry(db_session, store_a, global_commission, place_order, provider):
    order = place_order((store_a, 20000))
    sub_order_id = order.sub_orders[0].id
    provider.fail_next(1, "Gateway timeout")

    with pytest.raises(RefundProviderError) as excinfo:
        refund_service.process_partial_refund(sub_order_id, 6000)

    refund = refund_service.get_refund(excinfo.value.refund_id)
    assert refund.status == "FAILED"
    assert refund.error_message == "Gateway timeout"
    assert refund.funds_reversed is True
    assert refund.provider_succeeded is False
    assert db.session.get(SubOrder, sub_order_id).refunded_cents == 6000
    assert refund_service.get_total_refunded_amount(order.id) == 0

    retried = refund_service.retry_refund(refund.id)

    assert retried.status == "COMPLETED"
    assert retried.attempt_count == 2
    assert retried.error_message is None
    # Balances were reserved once and are not applied again
    assert db.session.get(SubOrder, sub_order_id).refunded_cents == 6000
    assert len(_adjustments(_escrow(sub_order_id).id)) == 1
    keys = {call["idempotency_key"] for call in provider.calls}
    assert keys == {refund.refund_number}
    assert len(provider.calls) == 2


def test_failed_full_amount_refund_keeps_statuses(db_session, store_a, global_commission, place_order, provider):
    order = place_order((store_a, 20000))
    sub_order_id = order.sub_orders[0].id
    provider.fail_next(1, "Card network unavailable")

    with pytest.raises(RefundProviderError) as excinfo:
        refund_service.process_partial_refund(sub_order_id, 20000)

    sub_order = db.session.get(SubOrder, sub_order_id)
    assert sub_order.refunded_cents == 20000
    assert sub_order.status == "PAID"
    assert sub_order.order.payment_status == "COMPLETED"
    assert sub_order.order.status == "PAID"
    assert refund_service.get_total_refunded_amount(order.id) == 0

    refund_service.retry_refund(excinfo.value.refund_id)

    sub_order = db.session.get(SubOrder, sub_order_id)
    assert sub_order.status == "REFUNDED"
    assert sub_order.order.payment_status == "REFUNDED"
    assert sub_order.order.status == "REFUNDED"


def test_abandoned_refund_releases_reservation(db_session, store_a, global_commission, place_order, provider):
    order = place_order((store_a, 20000))
    sub_order_id = order.sub_orders[0].id
    provider.fail_next(1, "Account closed")

    with pytest.raises(RefundProviderError) as excinfo:
        refund_service.process_partial_refund(sub_order_id, 20000)
    refund_id = excinfo.value.refund_id
    assert _escrow(sub_order_id).status == "RETURNED_TO_BUYER"

    abandoned = refund_service.abandon_refund(refund_id, reason="Buyer paid by store credit", actor_user_id=5)

    assert abandoned.status == "ABANDONED"
    assert abandoned.funds_reversed is False
    sub_order = db.session.get(SubOrder, sub_order_id)
    assert sub_order.refunded_cents == 0
    assert sub_order.status == "PAID"
    assert sub_order.order.refunded_cents == 0
    escrow = _escrow(sub_order_id)
    assert escrow.status == "HELD"
    assert escrow.refunded_cents == 0
    assert escrow.commission_cents == 2000
    assert escrow.net_cents == 18000
    assert [tx.commission_cents for tx in _adjustments(escrow.id)] == [-2000, 2000]
    assert [a.amount_cents for a in abandoned.allocations] == [20000]

    with pytest.raises(ConflictError):
        refund_service.retry_refund(refund_id)
    with pytest.raises(ConflictError):
        refund_service.abandon_refund(refund_id)

    # The released balance can be refunded again with the full commission reversal
    refund = refund_service.process_partial_refund(sub_order_id, 5000)
    assert refund.status == "COMPLETED"
    assert [tx.commission_cents for tx in _adjustments(escrow.id)] == [-2000, 2000, -500]


def test_abandon_restores_payout_eligibility(db_session, store_a, global_commission, place_order, provider):
    order = place_order((store_a, 20000))
    sub_order_id = order.sub_orders[0].id
    _deliver(sub_order_id)
    provider.fail_next(1)

    with pytest.raises(RefundProviderError) as excinfo:
        refund_service.process_partial_refund(sub_order_id, 20000)
    refund_service.abandon_refund(excinfo.value.refund_id)

    assert _escrow(sub_order_id).status == "ELIGIBLE_FOR_PAYOUT"
    assert db.session.get(SubOrder, sub_order_id).status == "DELIVERED"


def test_only_failed_refunds_can_be_abandoned(db_session, store_a, global_commission, place_order):
    order = place_order((store_a, 20000))
    refund = refund_service.process_partial_refund(order.sub_orders[0].id, 1000)

    with pytest.raises(ConflictError):
        refund_service.abandon_refund(refund.id)
    with pytest.raises(NotFoundError):
        refund_service.abandon_refund(999999)


def test_only_failed_refunds_can_be_retried(db_session, store_a, global_commission, place_order):
    order = place_order((store_a, 20000))
    refund = refund_service.process_partial_refund(order.sub_orders[0].id, 1000)

    with pytest.raises(ConflictError):
        refund_service.retry_refund(refund.id)
    with pytest.raises(NotFoundError):
        refund_service.retry_refund(999999)


def test_provider_exception_is_recorded_as_failure(db_session, store_a, global_commission, place_order, provider, monkeypatch):
    order = place_order((store_a, 20000))

    def _boom(*args, **kwargs):
        raise TimeoutError("read timed out")

    monkeypatch.setattr(provider, "initiate_refund", _boom)
    with pytest.raises(RefundProviderError):
        refund_service.process_partial_refund(order.sub_orders[0].id, 1000)

    refund = refund_service.get_refunds_by_order(order.id)[0]
    assert refund.status == "FAILED"
    assert refund.error_message == "read timed out"


def test_full_refund_covers_every_sub_order(db_session, store_a, store_b, global_commission, place_order):
    order = place_order((store_a, 20000), (store_b, 10000))
    first, second = order.sub_orders
    refund_service.process_partial_refund(first.id, 5000)

    refund = refund_service.process_full_refund(order.id, reason="Buyer cancelled", initiated_by_user_id=2)

    assert refund.sub_order_id is None
    assert refund.amount_cents == 25000
    assert refund.status == "COMPLETED"

    order = db.session.get(Order, order.id)
    assert order.refunded_cents == 30000
    assert order.payment_status == "REFUNDED"
    assert order.status == "REFUNDED"
    assert {so.status for so in order.sub_orders} == {"REFUNDED"}
    assert _escrow(first.id).commission_cents == 0
    assert _escrow(second.id).commission_cents == 0
    assert [tx.commission_cents for tx in _adjustments(_escrow(first.id).id)] == [-500, -1500]

    with pytest.raises(ConflictError):
        refund_service.process_full_refund(order.id)


def test_full_refund_blocked_by_preparing_sub_order(db_session, store_a, store_b, global_commission, place_order):
    order = place_order((store_a, 20000), (store_b, 10000))
    lifecycle.mark_sub_order_preparing(order.sub_orders[1].id)

    with pytest.raises(ConflictError):
        refund_service.process_full_refund(order.id)

    assert db.session.get(Order, order.id).refunded_cents == 0
    assert db.session.query(RefundTransaction).count() == 0


def test_released_escrow_cannot_be_refunded(db_session, store_a, global_commission, place_order):
    order = place_order((store_a, 20000))
    sub_order_id = order.sub_orders[0].id
    _deliver(sub_order_id)
    release_escrow(_escrow(sub_order_id).id)

    with pytest.raises(ConflictError):
        refund_service.process_partial_refund(sub_order_id, 1000)


def test_delivered_sub_order_refund_keeps_payout_eligibility(db_session, store_a, global_commission, place_order):
    order = place_order((store_a, 20000))
    sub_order_id = order.sub_orders[0].id
    _deliver(sub_order_id)

    refund_service.process_partial_refund(sub_order_id, 2000)

    assert _escrow(sub_order_id).status == "ELIGIBLE_FOR_PAYOUT"
    assert db.session.get(SubOrder, sub_order_id).status == "DELIVERED"


def test_refund_queries(db_session, store_a, store_b, global_commission, place_order):
    order = place_order((store_a, 20000), (store_b, 10000))
    refund_service.process_partial_refund(order.sub_orders[0].id, 1000)
    refund_service.process_partial_refund(order.sub_orders[1].id, 2000)

    assert [r.amount_cents for r in refund_service.get_refunds_by_store(store_a.id)] == [1000]
    assert len(refund_service.get_refunds_by_store(store_b.id, status="COMPLETED")) == 1
    assert len(refund_service.get_refunds_by_order(order.id)) == 2
    with pytest.raises(ValidationError):
        refund_service.get_refunds_by_store(store_a.id, status="DONE")


def test_eligibility_checks_do_not_mutate(db_session, store_a, global_commission, place_order):
    order = place_order((store_a, 20000))
    sub_order_id = order.sub_orders[0].id

    assert refund_service.validate_partial_refund_eligibility(sub_order_id, 20000).id == sub_order_id
    assert refund_service.validate_refund_eligibility(order.id, 20000).id == order.id
    with pytest.raises(ConflictError):
        refund_service.validate_partial_refund_eligibility(sub_order_id, 20001)
    with pytest.raises(ConflictError):
        refund_service.validate_refund_eligibility(order.id, 20001)

    assert db.session.get(SubOrder, sub_order_id).refunded_cents == 0
    assert db.session.query(RefundTransaction).count() == 0
