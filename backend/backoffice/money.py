"""
Cent arithmetic helpers.

All amounts are integer cents and all rates are basis points (1% = 100 bps).
Rounding is half away from zero to whole cents, which is what ROUND_HALF_UP
means for Decimal.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

BPS_DIVISOR = Decimal(10_000)


def round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def apply_rate_bps(amount_cents: int, rate_bps: int) -> int:
    """round(amount * rate) for a basis-point rate."""
    return round_cents(Decimal(amount_cents) * Decimal(rate_bps) / BPS_DIVISOR)


def prorate(amount_cents: int, part_cents: int, whole_cents: int) -> int:
    """round(amount * part / whole). Caller guarantees whole > 0."""
    return round_cents(Decimal(amount_cents) * Decimal(part_cents) / Decimal(whole_cents))


def bps_to_percentage(rate_bps: int | None) -> str | None:
    """Render basis points as a percentage string ("12.50") for exports."""
    if rate_bps is None:
        return None
    return str((Decimal(rate_bps) / Decimal(100)).quantize(Decimal("0.01")))
