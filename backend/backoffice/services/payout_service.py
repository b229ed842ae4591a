# Overview: Service-layer operations for the seller payout ledger (read model for settlements).

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Payout, Store
from ..time_utils import utcnow
from ..validation import ConflictError, NotFoundError, require_positive_cents
from .concurrency import lock_for_update, run_in_transaction


PAYOUT_STATUS_SCHEDULED = "SCHEDULED"
PAYOUT_STATUS_PROCESSING = "PROCESSING"
PAYOUT_STATUS_PAID = "PAID"
PAYOUT_STATUS_FAILED = "FAILED"


def schedule_payout(store_id: int, amount_cents: int, scheduled_at: datetime | None = None) -> Payout:
    require_positive_cents(amount_cents)

    def _op():
        if db.session.get(Store, store_id) is None:
            raise NotFoundError(f"Store {store_id} not found")
        payout = Payout(
            store_id=store_id,
            amount_cents=amount_cents,
            status=PAYOUT_STATUS_SCHEDULED,
            scheduled_at=scheduled_at or utcnow(),
        )
        db.session.add(payout)
        db.session.flush()
        current_app.logger.info("Scheduled payout %s for store %s: %s cents", payout.id, store_id, amount_cents)
        return payout

    return run_in_transaction(_op)


def _load_payout_for_update(payout_id: int) -> Payout:
    payout = lock_for_update(db.session.query(Payout).filter_by(id=payout_id)).first()
    if payout is None:
        raise NotFoundError(f"Payout {payout_id} not found")
    return payout


def mark_payout_paid(payout_id: int, reference: str | None = None, paid_at: datetime | None = None) -> Payout:
    def _op():
        payout = _load_payout_for_update(payout_id)
        if payout.status == PAYOUT_STATUS_PAID:
            return payout
        if payout.status == PAYOUT_STATUS_FAILED:
            raise ConflictError(f"Payout {payout_id} failed and cannot be marked paid")
        payout.status = PAYOUT_STATUS_PAID
        payout.reference = reference
        payout.paid_at = paid_at or utcnow()
        current_app.logger.info("Payout %s paid (reference %s)", payout.id, reference)
        return payout

    return run_in_transaction(_op)


def mark_payout_failed(payout_id: int) -> Payout:
    def _op():
        payout = _load_payout_for_update(payout_id)
        if payout.status == PAYOUT_STATUS_PAID:
            raise ConflictError(f"Payout {payout_id} is already paid")
        payout.status = PAYOUT_STATUS_FAILED
        current_app.logger.warning("Payout %s failed", payout.id)
        return payout

    return run_in_transaction(_op)


def sum_completed_payouts(store_id: int, start: datetime, end: datetime) -> int:
    """Total of PAID payouts for a store with paid_at in [start, end)."""
    total = (
        db.session.query(func.coalesce(func.sum(Payout.amount_cents), 0))
        .filter(Payout.store_id == store_id)
        .filter(Payout.status == PAYOUT_STATUS_PAID)
        .filter(Payout.paid_at >= start)
        .filter(Payout.paid_at < end)
        .scalar()
    )
    return int(total)
