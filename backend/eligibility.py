# eligibility.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Optional, Sequence

from faucet_settings import ClaimTier

# 8 fractional digits, like the amount columns.
AMOUNT_QUANT = Decimal("0.00000001")
UNITS_PER_TOKEN = 10 ** 8

REASON_BALANCE = "balance exceeds limit"
REASON_ACTIVITY = "insufficient activity"
REASON_POOL = "pool exhausted"


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    amount: Decimal
    reason: Optional[str] = None


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(AMOUNT_QUANT, rounding=ROUND_DOWN)


def to_units(amount: Decimal) -> int:
    """Decimal token amount -> integer base units (10^-8)."""
    return int(quantize(amount) * UNITS_PER_TOKEN)


def from_units(units: int) -> Decimal:
    return quantize(Decimal(int(units or 0)) / UNITS_PER_TOKEN)


def fmt_amount(amount: Decimal) -> str:
    return f"{quantize(amount):.8f}"


def tier_amount(transaction_count: int, tiers: Sequence[ClaimTier]) -> Decimal:
    """
    Base claim amount for a transaction count (half-open brackets).

    Returns 0 below the first threshold. Tiers are sorted ascending, so the
    last threshold <= count wins.
    """
    amount = Decimal("0")
    for tier in tiers:
        if transaction_count >= tier.threshold:
            amount = tier.amount
        else:
            break
    return amount


def cap_to_pool(amount: Decimal, daily_limit: Decimal, distributed: Decimal) -> Decimal:
    remaining = max(daily_limit - distributed, Decimal("0"))
    return quantize(min(amount, remaining))


def check_activity_and_balance(
    transaction_count: int,
    wallet_balance: Decimal,
    tiers: Sequence[ClaimTier],
    balance_ceiling: Decimal,
) -> Optional[str]:
    """First two policy rules; returns the rejection reason or None."""
    if Decimal(wallet_balance) > balance_ceiling:
        return REASON_BALANCE
    if transaction_count < tiers[0].threshold:
        return REASON_ACTIVITY
    return None


def evaluate(
    transaction_count: int,
    wallet_balance: Decimal,
    tiers: Sequence[ClaimTier],
    balance_ceiling: Decimal,
    daily_limit: Decimal,
    distributed: Decimal,
) -> EligibilityResult:
    """Apply the full policy table against a pool snapshot. No I/O."""
    reason = check_activity_and_balance(transaction_count, wallet_balance, tiers, balance_ceiling)
    if reason:
        return EligibilityResult(eligible=False, amount=Decimal("0"), reason=reason)

    awarded = cap_to_pool(tier_amount(transaction_count, tiers), daily_limit, distributed)
    if awarded <= 0:
        return EligibilityResult(eligible=False, amount=Decimal("0"), reason=REASON_POOL)
    return EligibilityResult(eligible=True, amount=awarded)
