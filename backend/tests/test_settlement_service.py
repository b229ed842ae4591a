"""
Tests for settlement generation, versioning, adjustments and finalization.
"""

from datetime import date, datetime

import pytest

from backoffice.extensions import db
from backoffice.models import Settlement, Store
from backoffice.services import refund_service, settlement_service
from backoffice.services.payout_service import mark_payout_paid, schedule_payout
from backoffice.time_utils import month_bounds
from backoffice.validation import ConflictError, NotFoundError, ValidationError

JANUARY = month_bounds(2024, 1)


@pytest.fixture
def january_sales(db_session, store_a, global_commission, place_order):
    """Two January orders for store A (one partially refunded) and one February order."""
    first = place_order((store_a, 20000), ordered_at=datetime(2024, 1, 5, 9, 30))
    place_order((store_a, 10000), ordered_at=datetime(2024, 1, 31, 23, 59, 59))
    place_order((store_a, 7000), ordered_at=datetime(2024, 2, 1, 0, 0))
    refund_service.process_partial_refund(first.sub_orders[0].id, 6000)
    return first


def _current_versions(store_id, start, end):
    return (
        db.session.query(Settlement)
        .filter_by(store_id=store_id, period_start=start, period_end=end, is_current_version=True)
        .all()
    )


def test_generate_aggregates_escrow_by_order_date(january_sales, store_a):
    settlement = settlement_service.generate_settlement(store_a.id, *JANUARY)

    assert settlement.status == "DRAFT"
    assert settlement.version == 1
    assert settlement.is_current_version is True
    assert settlement.settlement_number == f"STL-{store_a.id:06d}-202401"
    assert settlement.gross_sales_cents == 30000
    assert settlement.refunds_cents == 6000
    assert settlement.commission_cents == 3000 - 600
    assert settlement.adjustments_cents == 0
    assert settlement.net_amount_cents == 30000 - 6000 - 2400
    assert len(settlement.items) == 2
    assert sum(item.net_cents for item in settlement.items) == settlement.net_amount_cents


def test_date_period_covers_whole_days(january_sales, store_a):
    settlement = settlement_service.generate_settlement(store_a.id, date(2024, 1, 1), date(2024, 1, 31))
    assert settlement.period_end == datetime(2024, 2, 1)
    assert settlement.gross_sales_cents == 30000


def test_last_instant_of_month_is_settled_once(db_session, store_a, global_commission, place_order):
    place_order((store_a, 10000), ordered_at=datetime(2024, 1, 31, 23, 59, 59, 500000))
    schedule = schedule_payout(store_a.id, 2500)
    mark_payout_paid(schedule.id, paid_at=datetime(2024, 1, 31, 23, 59, 59, 999999))

    settlement_service.generate_monthly_settlements(2024, 1)
    settlement_service.generate_monthly_settlements(2024, 2)

    january = _current_versions(store_a.id, *JANUARY)[0]
    february = _current_versions(store_a.id, *month_bounds(2024, 2))[0]
    assert january.gross_sales_cents == 10000
    assert january.total_payouts_cents == 2500
    assert february.gross_sales_cents == 0
    assert february.total_payouts_cents == 0


def test_month_bounds_are_half_open():
    assert month_bounds(2024, 1) == (datetime(2024, 1, 1), datetime(2024, 2, 1))
    assert month_bounds(2023, 12) == (datetime(2023, 12, 1), datetime(2024, 1, 1))


def test_payouts_are_informational(january_sales, store_a):
    payout = schedule_payout(store_a.id, 5000, scheduled_at=datetime(2024, 1, 20))
    mark_payout_paid(payout.id, reference="WIRE-1", paid_at=datetime(2024, 1, 21))
    schedule_payout(store_a.id, 9999, scheduled_at=datetime(2024, 1, 22))

    settlement = settlement_service.generate_settlement(store_a.id, *JANUARY)

    assert settlement.total_payouts_cents == 5000
    assert settlement.net_amount_cents == 21600


def test_duplicate_generation_is_a_conflict(january_sales, store_a):
    settlement_service.generate_settlement(store_a.id, *JANUARY)
    with pytest.raises(ConflictError):
        settlement_service.generate_settlement(store_a.id, *JANUARY)
    assert len(_current_versions(store_a.id, *JANUARY)) == 1


def test_generation_input_errors(db_session, store_a):
    start, end = JANUARY
    with pytest.raises(ValidationError):
        settlement_service.generate_settlement(store_a.id, end, start)
    with pytest.raises(ValidationError):
        settlement_service.generate_settlement(store_a.id, start, start)
    with pytest.raises(NotFoundError):
        settlement_service.generate_settlement(999999, start, end)


def test_regenerate_supersedes_and_carries_adjustments(january_sales, store_a):
    original = settlement_service.generate_settlement(store_a.id, *JANUARY)
    settlement_service.add_adjustment(original.id, "CREDIT", 500, "Shipping label credit", actor_user_id=1)
    settlement_service.add_adjustment(original.id, "DEBIT", -200, "Chargeback fee")
    refund_service.process_partial_refund(january_sales.sub_orders[0].id, 4000)

    replacement = settlement_service.regenerate_settlement(original.id)

    assert replacement.version == 2
    assert replacement.previous_settlement_id == original.id
    assert replacement.refunds_cents == 10000
    assert replacement.adjustments_cents == 300
    assert [a.amount_cents for a in replacement.adjustments] == [500, -200]
    assert replacement.net_amount_cents == (
        replacement.gross_sales_cents - replacement.refunds_cents - replacement.commission_cents + 300
    )

    original = db.session.get(Settlement, original.id)
    assert original.status == "SUPERSEDED"
    assert original.is_current_version is False
    assert sum(a.amount_cents for a in original.adjustments) == replacement.adjustments_cents

    current = _current_versions(store_a.id, *JANUARY)
    assert [s.id for s in current] == [replacement.id]
    versions = settlement_service.get_settlement_versions(store_a.id, *JANUARY)
    assert [s.version for s in versions] == [1, 2]

    with pytest.raises(ConflictError):
        settlement_service.regenerate_settlement(original.id)


def test_failed_regeneration_keeps_original_current(january_sales, store_a, monkeypatch):
    original = settlement_service.generate_settlement(store_a.id, *JANUARY)
    settlement_service.add_adjustment(original.id, "CREDIT", 500, "Shipping label credit")

    def _broken_build(*args, **kwargs):
        raise RuntimeError("aggregation query failed")

    monkeypatch.setattr(settlement_service, "_build_settlement", _broken_build)
    with pytest.raises(RuntimeError):
        settlement_service.regenerate_settlement(original.id)

    original = db.session.get(Settlement, original.id)
    assert original.status == "DRAFT"
    assert original.is_current_version is True
    assert original.superseded_at is None
    assert [s.id for s in _current_versions(store_a.id, *JANUARY)] == [original.id]
    assert db.session.query(Settlement).count() == 1


def test_concurrent_generation_loser_gets_conflict(january_sales, store_a, monkeypatch):
    first = settlement_service.generate_settlement(store_a.id, *JANUARY)

    # The second caller checked before the first one committed
    monkeypatch.setattr(settlement_service, "_current_settlement", lambda *args: None)
    with pytest.raises(ConflictError):
        settlement_service.generate_settlement(store_a.id, *JANUARY)

    assert [s.id for s in _current_versions(store_a.id, *JANUARY)] == [first.id]


def test_adjustment_validation(january_sales, store_a):
    settlement = settlement_service.generate_settlement(store_a.id, *JANUARY)
    with pytest.raises(ValidationError):
        settlement_service.add_adjustment(settlement.id, "BONUS", 100, "x")
    with pytest.raises(ValidationError):
        settlement_service.add_adjustment(settlement.id, "CREDIT", 0, "x")
    with pytest.raises(ValidationError):
        settlement_service.add_adjustment(settlement.id, "CREDIT", 100, "  ")
    with pytest.raises(NotFoundError):
        settlement_service.add_adjustment(999999, "CREDIT", 100, "x")


def test_prior_period_adjustment_links_settlement(january_sales, store_a):
    december = settlement_service.generate_settlement(store_a.id, *month_bounds(2023, 12))
    january = settlement_service.generate_settlement(store_a.id, *JANUARY)

    adjustment = settlement_service.add_adjustment(
        january.id, "PRIOR_PERIOD_ADJUSTMENT", -150, "December fee correction",
        related_settlement_id=december.id,
    )

    assert adjustment.is_prior_period is True
    assert adjustment.related_settlement_id == december.id
    assert db.session.get(Settlement, january.id).net_amount_cents == 21600 - 150


def test_finalize_is_idempotent_and_locks(january_sales, store_a):
    settlement = settlement_service.generate_settlement(store_a.id, *JANUARY)

    first = settlement_service.finalize_settlement(settlement.id)
    finalized_at = first.finalized_at
    second = settlement_service.finalize_settlement(settlement.id)

    assert second.status == "FINALIZED"
    assert second.finalized_at == finalized_at
    with pytest.raises(ConflictError):
        settlement_service.add_adjustment(settlement.id, "CREDIT", 100, "Late credit")
    with pytest.raises(ConflictError):
        settlement_service.regenerate_settlement(settlement.id)


def test_monthly_batch_runs_per_store(january_sales, store_a, store_b, db_session):
    suspended = Store(name="Store C", code="C", status="SUSPENDED")
    db_session.add(suspended)
    db_session.commit()

    result = settlement_service.generate_monthly_settlements(2024, 1)
    assert result.generated_count == 2
    assert result.failed == {}
    assert suspended.id not in result.skipped

    rerun = settlement_service.generate_monthly_settlements(2024, 1)
    assert rerun.generated_count == 0
    assert set(rerun.skipped) == {store_a.id, store_b.id}

    with pytest.raises(ValidationError):
        settlement_service.generate_monthly_settlements(2024, 13)


def test_detail_and_summary(january_sales, store_a):
    settlement = settlement_service.generate_settlement(store_a.id, *JANUARY)
    settlement_service.add_adjustment(settlement.id, "OTHER", 100, "Promo support")

    detail = settlement_service.get_settlement_detail(settlement.id)
    assert detail["store_name"] == "Store A"
    assert len(detail["items"]) == 2
    assert [a["amount_cents"] for a in detail["adjustment_entries"]] == [100]
    assert detail["previous_settlement_number"] is None

    summary = settlement_service.get_settlement_summary(store_a.id, *JANUARY)
    assert summary["order_count"] == 2
    assert summary["net_amount_cents"] == 21600
    assert summary["existing_settlement_id"] == settlement.id

    assert [s.id for s in settlement_service.list_settlements(store_a.id)] == [settlement.id]
