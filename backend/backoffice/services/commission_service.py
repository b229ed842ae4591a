# Overview: Service-layer operations for commission resolution and the commission audit trail.

"""
Commission Service

Resolution order for a (store, category) pair, first match wins:
1. CATEGORY: the category carries a rate or fixed-fee override
2. SELLER:   the store carries a rate or fixed-fee override
3. GLOBAL:   newest active CommissionConfig (0% when none exists)

commission_cents = round_half_up(gross_cents * rate_bps / 10000) + fixed_cents

CommissionTransaction rows are append-only. An INITIAL row is written when
escrow is created; each refund appends a REFUND_ADJUSTMENT row with a
negative commission_cents proportional to the refunded share of gross.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Category, CommissionConfig, CommissionTransaction, EscrowTransaction, Store
from ..money import apply_rate_bps, prorate
from ..time_utils import utcnow
from ..validation import (
    NotFoundError,
    ValidationError,
    require_choice,
    require_non_negative_cents,
)
from .concurrency import run_in_transaction


# =============================================================================
# CONSTANTS
# =============================================================================

TYPE_INITIAL = "INITIAL"
TYPE_REFUND_ADJUSTMENT = "REFUND_ADJUSTMENT"
TRANSACTION_TYPES = (TYPE_INITIAL, TYPE_REFUND_ADJUSTMENT)

SOURCE_GLOBAL = "GLOBAL"
SOURCE_SELLER = "SELLER"
SOURCE_CATEGORY = "CATEGORY"
COMMISSION_SOURCES = (SOURCE_GLOBAL, SOURCE_SELLER, SOURCE_CATEGORY)


@dataclass(frozen=True)
class CommissionQuote:
    """Result of resolving and applying a commission rule to a gross amount."""

    commission_cents: int
    rate_bps: int
    fixed_cents: int
    source: str
    applied_category_id: int | None = None


# =============================================================================
# RESOLUTION
# =============================================================================

def get_active_global_config() -> CommissionConfig | None:
    return (
        db.session.query(CommissionConfig)
        .filter(CommissionConfig.is_active.is_(True))
        .order_by(CommissionConfig.created_at.desc(), CommissionConfig.id.desc())
        .first()
    )


def resolve_commission(gross_cents: int, store_id: int, category_id: int | None = None) -> CommissionQuote:
    """
    Resolve the effective commission rule and apply it to `gross_cents`.

    Never raises for missing configuration: with no override and no active
    global config the commission is zero and a warning is logged.
    """
    rate_bps = 0
    fixed_cents = 0
    source = SOURCE_GLOBAL
    applied_category_id = None

    if category_id is not None:
        category = db.session.get(Category, category_id)
        if category is not None and category.has_commission_override:
            rate_bps = category.commission_rate_bps or 0
            fixed_cents = category.fixed_commission_cents or 0
            source = SOURCE_CATEGORY
            applied_category_id = category.id

    if source == SOURCE_GLOBAL:
        store = db.session.get(Store, store_id)
        if store is not None and store.has_commission_override:
            rate_bps = store.commission_rate_bps or 0
            fixed_cents = store.fixed_commission_cents or 0
            source = SOURCE_SELLER

    if source == SOURCE_GLOBAL:
        config = get_active_global_config()
        if config is not None:
            rate_bps = config.commission_rate_bps
            fixed_cents = config.fixed_commission_cents
        else:
            current_app.logger.warning(
                "No active commission configuration found for store %s, using 0%% commission", store_id
            )

    commission_cents = apply_rate_bps(gross_cents, rate_bps) + fixed_cents

    current_app.logger.info(
        "Calculated commission for store %s: %s cents (source=%s, rate_bps=%s, fixed_cents=%s)",
        store_id, commission_cents, source, rate_bps, fixed_cents,
    )
    return CommissionQuote(
        commission_cents=commission_cents,
        rate_bps=rate_bps,
        fixed_cents=fixed_cents,
        source=source,
        applied_category_id=applied_category_id,
    )


# =============================================================================
# AUDIT TRAIL (caller owns the transaction)
# =============================================================================

def record_commission_transaction(
    *,
    escrow_transaction_id: int,
    store_id: int,
    category_id: int | None,
    transaction_type: str,
    gross_cents: int,
    commission_cents: int,
    rate_bps: int,
    fixed_cents: int,
    source: str,
    notes: str | None = None,
) -> CommissionTransaction:
    """
    Append an immutable commission record.

    Raises:
        ValidationError: unknown transaction type or source
    """
    require_choice(transaction_type, TRANSACTION_TYPES, "commission transaction type")
    require_choice(source, COMMISSION_SOURCES, "commission source")

    tx = CommissionTransaction(
        escrow_transaction_id=escrow_transaction_id,
        store_id=store_id,
        category_id=category_id,
        transaction_type=transaction_type,
        gross_cents=gross_cents,
        commission_cents=commission_cents,
        commission_rate_bps=rate_bps,
        fixed_commission_cents=fixed_cents,
        source=source,
        notes=notes,
        created_at=utcnow(),
    )
    db.session.add(tx)
    db.session.flush()

    current_app.logger.info(
        "Recorded %s commission transaction %s for escrow %s: %s cents",
        transaction_type, tx.id, escrow_transaction_id, commission_cents,
    )
    return tx


def get_initial_commission_transaction(escrow_transaction_id: int) -> CommissionTransaction | None:
    return (
        db.session.query(CommissionTransaction)
        .filter_by(escrow_transaction_id=escrow_transaction_id, transaction_type=TYPE_INITIAL)
        .order_by(CommissionTransaction.created_at.desc(), CommissionTransaction.id.desc())
        .first()
    )


def _reversed_so_far(escrow_transaction_id: int) -> int:
    """Commission already reversed by prior adjustments, as a positive magnitude."""
    commission = (
        db.session.query(func.coalesce(func.sum(CommissionTransaction.commission_cents), 0))
        .filter_by(escrow_transaction_id=escrow_transaction_id, transaction_type=TYPE_REFUND_ADJUSTMENT)
        .scalar()
    )
    return -int(commission)


def recalculate_for_refund(
    escrow_transaction_id: int,
    refund_cents: int,
    original_commission_cents: int,
) -> int:
    """
    Reverse commission proportionally to a refund.

    commission_refund = round(original_commission * refund / original_gross)

    Each reversal is rounded on its own. It is capped so cumulative reversals
    never exceed the original commission.

    Returns the NEGATIVE adjustment (0 when nothing could be computed) so the
    caller can add it straight to running totals.
    """
    require_non_negative_cents(refund_cents, "refund_cents")

    escrow = db.session.get(EscrowTransaction, escrow_transaction_id)
    if escrow is None:
        raise NotFoundError(f"Escrow transaction {escrow_transaction_id} not found")

    original = get_initial_commission_transaction(escrow_transaction_id)
    if original is None:
        current_app.logger.warning(
            "No initial commission transaction found for escrow %s, skipping commission reversal",
            escrow_transaction_id,
        )
        return 0

    if original.gross_cents <= 0:
        current_app.logger.warning(
            "Original gross amount is %s for escrow %s, cannot compute refund ratio",
            original.gross_cents, escrow_transaction_id,
        )
        return 0

    remaining_commission = max(original_commission_cents - _reversed_so_far(escrow_transaction_id), 0)
    commission_refund = min(
        prorate(original_commission_cents, refund_cents, original.gross_cents),
        remaining_commission,
    )

    record_commission_transaction(
        escrow_transaction_id=escrow_transaction_id,
        store_id=escrow.store_id,
        category_id=original.category_id,
        transaction_type=TYPE_REFUND_ADJUSTMENT,
        gross_cents=refund_cents,
        commission_cents=-commission_refund,
        rate_bps=original.commission_rate_bps,
        fixed_cents=0,
        source=original.source,
        notes=f"Refund of {refund_cents} of {original.gross_cents} cents",
    )

    current_app.logger.info(
        "Reversed %s cents commission on escrow %s for refund of %s cents",
        commission_refund, escrow_transaction_id, refund_cents,
    )
    return -commission_refund


def reinstate_refund_adjustment(escrow_transaction_id: int, refund_cents: int, adjustment_cents: int, notes: str) -> int:
    """
    Cancel out an earlier refund adjustment whose refund was abandoned.

    Appends a REFUND_ADJUSTMENT with negated gross and commission; prior rows
    stay untouched. Returns the positive amount added back to commission.
    """
    if adjustment_cents == 0:
        return 0

    original = get_initial_commission_transaction(escrow_transaction_id)
    escrow = db.session.get(EscrowTransaction, escrow_transaction_id)
    record_commission_transaction(
        escrow_transaction_id=escrow_transaction_id,
        store_id=escrow.store_id,
        category_id=original.category_id if original is not None else None,
        transaction_type=TYPE_REFUND_ADJUSTMENT,
        gross_cents=-refund_cents,
        commission_cents=-adjustment_cents,
        rate_bps=original.commission_rate_bps if original is not None else 0,
        fixed_cents=0,
        source=original.source if original is not None else SOURCE_GLOBAL,
        notes=notes,
    )
    return -adjustment_cents


# =============================================================================
# QUERIES
# =============================================================================

def get_commission_transactions_by_store(
    store_id: int,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
) -> list[CommissionTransaction]:
    query = db.session.query(CommissionTransaction).filter_by(store_id=store_id)
    if from_date is not None:
        query = query.filter(CommissionTransaction.created_at >= from_date)
    if to_date is not None:
        query = query.filter(CommissionTransaction.created_at <= to_date)
    return query.order_by(CommissionTransaction.created_at.desc(), CommissionTransaction.id.desc()).all()


def get_commission_transactions_by_escrow(escrow_transaction_id: int) -> list[CommissionTransaction]:
    return (
        db.session.query(CommissionTransaction)
        .filter_by(escrow_transaction_id=escrow_transaction_id)
        .order_by(CommissionTransaction.created_at.asc(), CommissionTransaction.id.asc())
        .all()
    )


def get_total_commission(from_date: datetime, to_date: datetime) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(CommissionTransaction.commission_cents), 0))
        .filter(CommissionTransaction.created_at >= from_date)
        .filter(CommissionTransaction.created_at <= to_date)
        .scalar()
    )
    return int(total)


# =============================================================================
# RULE MAINTENANCE
# =============================================================================

def _validate_rule(rate_bps: int | None, fixed_cents: int | None) -> None:
    if rate_bps is not None and (not isinstance(rate_bps, int) or rate_bps < 0 or rate_bps > 10_000):
        raise ValidationError("Commission rate must be between 0 and 10000 basis points")
    if fixed_cents is not None:
        require_non_negative_cents(fixed_cents, "fixed_commission_cents")


def set_global_commission(rate_bps: int, fixed_cents: int = 0) -> CommissionConfig:
    """Activate a new global config; previous rows are deactivated, not deleted."""
    _validate_rule(rate_bps, fixed_cents)

    def _op():
        db.session.query(CommissionConfig).filter(CommissionConfig.is_active.is_(True)).update(
            {"is_active": False}, synchronize_session="fetch"
        )
        config = CommissionConfig(
            commission_rate_bps=rate_bps,
            fixed_commission_cents=fixed_cents,
            is_active=True,
            created_at=utcnow(),
        )
        db.session.add(config)
        db.session.flush()
        current_app.logger.info("Global commission set to %s bps + %s cents", rate_bps, fixed_cents)
        return config

    return run_in_transaction(_op)


def set_store_commission_override(store_id: int, rate_bps: int | None, fixed_cents: int | None) -> Store:
    """Pass None for both values to clear the override."""
    _validate_rule(rate_bps, fixed_cents)

    def _op():
        store = db.session.get(Store, store_id)
        if store is None:
            raise NotFoundError(f"Store {store_id} not found")
        store.commission_rate_bps = rate_bps
        store.fixed_commission_cents = fixed_cents
        current_app.logger.info(
            "Store %s commission override set to %s bps + %s cents", store_id, rate_bps, fixed_cents
        )
        return store

    return run_in_transaction(_op)


def set_category_commission_override(category_id: int, rate_bps: int | None, fixed_cents: int | None) -> Category:
    _validate_rule(rate_bps, fixed_cents)

    def _op():
        category = db.session.get(Category, category_id)
        if category is None:
            raise NotFoundError(f"Category {category_id} not found")
        category.commission_rate_bps = rate_bps
        category.fixed_commission_cents = fixed_cents
        current_app.logger.info(
            "Category %s commission override set to %s bps + %s cents", category_id, rate_bps, fixed_cents
        )
        return category

    return run_in_transaction(_op)
