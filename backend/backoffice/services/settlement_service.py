# Overview: Service-layer operations for versioned seller settlements.

"""
Settlement Service

================================================================================
PURPOSE: Aggregate escrow activity for one store and period into a versioned
settlement document
================================================================================

TOTALS:
    gross_sales = sum(escrow.gross_cents)
    refunds     = sum(escrow.refunded_cents)
    commission  = sum(escrow.commission_cents)     (net of refund reversals)
    net_amount  = gross_sales - refunds - commission + adjustments
    total_payouts = PAID payouts in the period     (informational, not netted)

Period membership is by ORDER date (Order.ordered_at) over the half-open
range [period_start, period_end). Date arguments cover whole days.

VERSIONING:
    DRAFT --finalize--> FINALIZED (immutable)
    DRAFT --regenerate--> SUPERSEDED, plus a new DRAFT with version + 1

- generate_settlement() is not an upsert: a current settlement for the exact
  (store, period) is a ConflictError.
- regenerate_settlement() supersedes and rebuilds in ONE transaction, carrying
  adjustments forward. If the rebuild fails the supersede is rolled back, so
  exactly one current version exists at all times.
================================================================================
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import (
    EscrowTransaction,
    Order,
    Settlement,
    SettlementAdjustment,
    SettlementItem,
    Store,
    SubOrder,
)
from ..time_utils import end_of_day_exclusive, month_bounds, utcnow
from ..validation import (
    ConflictError,
    NotFoundError,
    ValidationError,
    require_choice,
    require_month,
    require_period,
)
from .concurrency import lock_for_update, run_in_transaction
from .payout_service import sum_completed_payouts


# =============================================================================
# CONSTANTS
# =============================================================================

SETTLEMENT_STATUS_DRAFT = "DRAFT"
SETTLEMENT_STATUS_FINALIZED = "FINALIZED"
SETTLEMENT_STATUS_SUPERSEDED = "SUPERSEDED"

ADJUSTMENT_CREDIT = "CREDIT"
ADJUSTMENT_DEBIT = "DEBIT"
ADJUSTMENT_CORRECTION = "CORRECTION"
ADJUSTMENT_PRIOR_PERIOD = "PRIOR_PERIOD_ADJUSTMENT"
ADJUSTMENT_OTHER = "OTHER"
ADJUSTMENT_TYPES = (
    ADJUSTMENT_CREDIT,
    ADJUSTMENT_DEBIT,
    ADJUSTMENT_CORRECTION,
    ADJUSTMENT_PRIOR_PERIOD,
    ADJUSTMENT_OTHER,
)

SETTLEABLE_STORE_STATUSES = ("ACTIVE", "LIMITED_ACTIVE")


@dataclass
class SettlementBatchResult:
    """Outcome of a period-end run across stores."""

    year: int
    month: int
    generated: list[int] = field(default_factory=list)
    skipped: dict[int, str] = field(default_factory=dict)
    failed: dict[int, str] = field(default_factory=dict)

    @property
    def generated_count(self) -> int:
        return len(self.generated)


def settlement_number(store_id: int, period_start: datetime) -> str:
    return f"STL-{store_id:06d}-{period_start:%Y%m}"


def _as_period(start: date | datetime, end: date | datetime) -> tuple[datetime, datetime]:
    """
    Normalize to a half-open [start, end) datetime range.

    A date end is inclusive of that whole day, so it becomes the following midnight.
    Datetime ends are already exclusive.
    """
    if not isinstance(start, datetime) and isinstance(start, date):
        start = datetime(start.year, start.month, start.day)
    if not isinstance(end, datetime) and isinstance(end, date):
        end = end_of_day_exclusive(end)
    require_period(start, end)
    return start, end


# =============================================================================
# AGGREGATION
# =============================================================================

def _period_rows(store_id: int, start: datetime, end: datetime):
    """(sub_order, order, escrow) for the store's sub-orders ordered within the period."""
    return (
        db.session.query(SubOrder, Order, EscrowTransaction)
        .join(Order, SubOrder.order_id == Order.id)
        .join(EscrowTransaction, EscrowTransaction.sub_order_id == SubOrder.id)
        .filter(SubOrder.store_id == store_id)
        .filter(Order.ordered_at >= start)
        .filter(Order.ordered_at < end)
        .order_by(Order.ordered_at.asc(), SubOrder.id.asc())
        .all()
    )


def _current_settlement(store_id: int, start: datetime, end: datetime) -> Settlement | None:
    return (
        db.session.query(Settlement)
        .filter_by(store_id=store_id, period_start=start, period_end=end, is_current_version=True)
        .first()
    )


def _build_settlement(store: Store, start: datetime, end: datetime, *, version: int = 1,
                      previous: Settlement | None = None) -> Settlement:
    rows = _period_rows(store.id, start, end)

    settlement = Settlement(
        store_id=store.id,
        settlement_number=settlement_number(store.id, start),
        period_start=start,
        period_end=end,
        status=SETTLEMENT_STATUS_DRAFT,
        currency_code=store.currency_code or current_app.config.get("STORE_CURRENCY", "USD"),
        gross_sales_cents=sum(escrow.gross_cents for _, _, escrow in rows),
        refunds_cents=sum(escrow.refunded_cents for _, _, escrow in rows),
        commission_cents=sum(escrow.commission_cents for _, _, escrow in rows),
        adjustments_cents=0,
        total_payouts_cents=sum_completed_payouts(store.id, start, end),
        version=version,
        is_current_version=True,
        previous_settlement_id=previous.id if previous is not None else None,
        created_at=utcnow(),
    )
    settlement.recompute_net()
    db.session.add(settlement)
    db.session.flush()

    for sub_order, order, escrow in rows:
        db.session.add(SettlementItem(
            settlement_id=settlement.id,
            sub_order_id=sub_order.id,
            escrow_transaction_id=escrow.id,
            order_number=order.order_number,
            ordered_at=order.ordered_at,
            gross_cents=escrow.gross_cents,
            refunded_cents=escrow.refunded_cents,
            commission_cents=escrow.commission_cents,
            net_cents=escrow.gross_cents - escrow.refunded_cents - escrow.commission_cents,
            status=sub_order.status,
        ))
    db.session.flush()

    current_app.logger.info(
        "Generated settlement %s v%s for store %s: %s to %s, %d sub-orders, net %s cents",
        settlement.settlement_number, version, store.id, start, end, len(rows), settlement.net_amount_cents,
    )
    return settlement


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================

def generate_settlement(store_id: int, period_start: date | datetime, period_end: date | datetime) -> Settlement:
    """
    Create version 1 of a settlement for (store, period).

    Raises:
        ValidationError: period_end <= period_start
        NotFoundError: unknown store
        ConflictError: a current settlement already exists for the exact period
    """
    start, end = _as_period(period_start, period_end)

    def _op():
        store = db.session.get(Store, store_id)
        if store is None:
            raise NotFoundError(f"Store {store_id} not found")

        existing = _current_settlement(store_id, start, end)
        if existing is not None:
            raise ConflictError(f"A settlement already exists for this period (ID: {existing.id})")

        return _build_settlement(store, start, end)

    try:
        return run_in_transaction(_op)
    except IntegrityError as exc:
        # Lost a race with a concurrent generation for the same period
        current_app.logger.warning(
            "Concurrent settlement generation for store %s, %s to %s: %s", store_id, start, end, exc.orig
        )
        raise ConflictError("A settlement already exists for this period") from exc


def regenerate_settlement(settlement_id: int) -> Settlement:
    """
    Supersede a DRAFT settlement and build its next version.

    Adjustments are copied to the new version and included in its net amount.

    Raises:
        NotFoundError: unknown settlement
        ConflictError: settlement is FINALIZED or already SUPERSEDED
    """
    def _op():
        existing = lock_for_update(db.session.query(Settlement).filter_by(id=settlement_id)).first()
        if existing is None:
            raise NotFoundError(f"Settlement {settlement_id} not found")
        if existing.status == SETTLEMENT_STATUS_FINALIZED:
            raise ConflictError("Cannot regenerate a finalized settlement")
        if existing.status == SETTLEMENT_STATUS_SUPERSEDED or not existing.is_current_version:
            raise ConflictError(f"Settlement {settlement_id} has already been superseded")

        existing.status = SETTLEMENT_STATUS_SUPERSEDED
        existing.is_current_version = False
        existing.superseded_at = utcnow()
        db.session.flush()

        replacement = _build_settlement(
            existing.store,
            existing.period_start,
            existing.period_end,
            version=existing.version + 1,
            previous=existing,
        )

        for adjustment in existing.adjustments:
            db.session.add(SettlementAdjustment(
                settlement_id=replacement.id,
                adjustment_type=adjustment.adjustment_type,
                amount_cents=adjustment.amount_cents,
                description=adjustment.description,
                is_prior_period=adjustment.is_prior_period,
                related_settlement_id=adjustment.related_settlement_id,
                created_by_user_id=adjustment.created_by_user_id,
                created_at=utcnow(),
            ))
        replacement.adjustments_cents = sum(a.amount_cents for a in existing.adjustments)
        replacement.recompute_net()
        db.session.flush()

        current_app.logger.info(
            "Regenerated settlement %s (v%s), superseding settlement %s",
            replacement.settlement_number, replacement.version, settlement_id,
        )
        return replacement

    return run_in_transaction(_op)


def add_adjustment(
    settlement_id: int,
    adjustment_type: str,
    amount_cents: int,
    description: str,
    related_settlement_id: int | None = None,
    actor_user_id: int | None = None,
) -> SettlementAdjustment:
    """
    Add a signed manual correction and recompute the net amount.

    Raises:
        ValidationError: unknown type, zero/non-integer amount, empty description
        NotFoundError: unknown settlement or related settlement
        ConflictError: settlement is FINALIZED or SUPERSEDED
    """
    require_choice(adjustment_type, ADJUSTMENT_TYPES, "adjustment type")
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents == 0:
        raise ValidationError("Adjustment amount must be a non-zero integer number of cents")
    if not description or not description.strip():
        raise ValidationError("Adjustment description is required")

    def _op():
        settlement = lock_for_update(db.session.query(Settlement).filter_by(id=settlement_id)).first()
        if settlement is None:
            raise NotFoundError(f"Settlement {settlement_id} not found")
        if settlement.status == SETTLEMENT_STATUS_FINALIZED:
            raise ConflictError("Cannot add adjustment to a finalized settlement")
        if settlement.status == SETTLEMENT_STATUS_SUPERSEDED:
            raise ConflictError("Cannot add adjustment to a superseded settlement")
        if related_settlement_id is not None and db.session.get(Settlement, related_settlement_id) is None:
            raise NotFoundError(f"Related settlement {related_settlement_id} not found")

        adjustment = SettlementAdjustment(
            settlement_id=settlement.id,
            adjustment_type=adjustment_type,
            amount_cents=amount_cents,
            description=description.strip(),
            is_prior_period=adjustment_type == ADJUSTMENT_PRIOR_PERIOD,
            related_settlement_id=related_settlement_id,
            created_by_user_id=actor_user_id,
            created_at=utcnow(),
        )
        db.session.add(adjustment)

        settlement.adjustments_cents += amount_cents
        settlement.recompute_net()
        db.session.flush()

        current_app.logger.info(
            "Added %s adjustment of %s cents to settlement %s",
            adjustment_type, amount_cents, settlement.settlement_number,
        )
        return adjustment

    return run_in_transaction(_op)


def finalize_settlement(settlement_id: int) -> Settlement:
    """Idempotent: finalizing a FINALIZED settlement returns it untouched."""
    def _op():
        settlement = lock_for_update(db.session.query(Settlement).filter_by(id=settlement_id)).first()
        if settlement is None:
            raise NotFoundError(f"Settlement {settlement_id} not found")
        if settlement.status == SETTLEMENT_STATUS_FINALIZED:
            return settlement
        if settlement.status == SETTLEMENT_STATUS_SUPERSEDED:
            raise ConflictError("Cannot finalize a superseded settlement")

        settlement.status = SETTLEMENT_STATUS_FINALIZED
        settlement.finalized_at = utcnow()
        current_app.logger.info(
            "Finalized settlement %s (ID: %s)", settlement.settlement_number, settlement.id
        )
        return settlement

    return run_in_transaction(_op)


def generate_monthly_settlements(year: int, month: int) -> SettlementBatchResult:
    """
    Generate settlements for every active store for a calendar month.

    Each store runs in its own transaction; a failure is logged and recorded
    in the result without stopping the batch.
    """
    require_month(year, month)
    start, end = month_bounds(year, month)
    result = SettlementBatchResult(year=year, month=month)

    store_ids = [
        row.id
        for row in db.session.query(Store.id)
        .filter(Store.status.in_(SETTLEABLE_STORE_STATUSES))
        .order_by(Store.id.asc())
        .all()
    ]

    for store_id in store_ids:
        try:
            settlement = generate_settlement(store_id, start, end)
            result.generated.append(settlement.id)
        except ConflictError as exc:
            current_app.logger.warning("Skipped settlement for store %s: %s", store_id, exc)
            result.skipped[store_id] = str(exc)
        except Exception as exc:
            current_app.logger.exception("Error generating settlement for store %s", store_id)
            result.failed[store_id] = str(exc)

    current_app.logger.info(
        "Generated %d settlements for %04d-%02d from %d stores",
        result.generated_count, year, month, len(store_ids),
    )
    return result


# =============================================================================
# QUERIES
# =============================================================================

def get_settlement(settlement_id: int) -> Settlement:
    settlement = db.session.get(Settlement, settlement_id)
    if settlement is None:
        raise NotFoundError(f"Settlement {settlement_id} not found")
    return settlement


def get_settlement_detail(settlement_id: int) -> dict:
    """Full aggregate (items, adjustments, store) for exports."""
    settlement = get_settlement(settlement_id)
    data = settlement.to_dict()
    data["store_name"] = settlement.store.name if settlement.store else None
    data["items"] = [item.to_dict() for item in settlement.items]
    data["adjustment_entries"] = [adj.to_dict() for adj in settlement.adjustments]
    data["previous_settlement_number"] = (
        settlement.previous_settlement.settlement_number if settlement.previous_settlement else None
    )
    return data


def list_settlements(store_id: int | None = None, include_superseded: bool = False) -> list[Settlement]:
    query = db.session.query(Settlement)
    if store_id:
        query = query.filter(Settlement.store_id == store_id)
    if not include_superseded:
        query = query.filter(Settlement.is_current_version.is_(True))
    return query.order_by(Settlement.period_start.desc(), Settlement.version.desc()).all()


def get_settlement_versions(store_id: int, period_start: date | datetime, period_end: date | datetime) -> list[Settlement]:
    start, end = _as_period(period_start, period_end)
    return (
        db.session.query(Settlement)
        .filter_by(store_id=store_id, period_start=start, period_end=end)
        .order_by(Settlement.version.asc())
        .all()
    )


def get_settlement_summary(store_id: int, period_start: date | datetime, period_end: date | datetime) -> dict:
    """Preview the totals a settlement would have, without persisting anything."""
    start, end = _as_period(period_start, period_end)
    rows = _period_rows(store_id, start, end)

    gross = sum(escrow.gross_cents for _, _, escrow in rows)
    refunds = sum(escrow.refunded_cents for _, _, escrow in rows)
    commission = sum(escrow.commission_cents for _, _, escrow in rows)
    existing = _current_settlement(store_id, start, end)

    return {
        "store_id": store_id,
        "period_start": start,
        "period_end": end,
        "order_count": len(rows),
        "gross_sales_cents": gross,
        "refunds_cents": refunds,
        "commission_cents": commission,
        "net_amount_cents": gross - refunds - commission,
        "total_payouts_cents": sum_completed_payouts(store_id, start, end),
        "has_existing_settlement": existing is not None,
        "existing_settlement_id": existing.id if existing is not None else None,
    }
