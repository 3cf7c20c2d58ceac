from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List, Mapping, Optional, Tuple

# Wrapped-native mint; FOGO testnet reuses the Solana native mint address.
DEFAULT_SPL_FOGO_MINT = "So11111111111111111111111111111111111111112"

# (threshold, amount) pairs, ascending. The first threshold is the activity floor.
DEFAULT_CLAIM_TIERS = "50:0.2,160:0.5,400:1.0,1000:1.5,1500:2.0,3000:3.0"


@dataclass(frozen=True)
class ClaimTier:
    threshold: int
    amount: Decimal


@dataclass(frozen=True)
class FaucetSettings:
    """
    Snapshot of the faucet configuration.

    Built by load_settings() from the environment on every request so that
    pool limit / bonus rate changes apply without a restart. Tests construct
    it directly.
    """
    db_path: str = "faucet.db"
    daily_pool_limit: Decimal = Decimal("300")
    initial_balance: Decimal = Decimal("1000000")
    balance_ceiling: Decimal = Decimal("10")
    tiers: Tuple[ClaimTier, ...] = field(default_factory=lambda: parse_tiers(DEFAULT_CLAIM_TIERS))
    cooldown_sec: int = 24 * 60 * 60
    bonus_rate: Decimal = Decimal("1")
    bonus_token_mint: str = ""
    spl_fogo_mint: str = DEFAULT_SPL_FOGO_MINT
    rpc_url: str = "https://testnet.fogo.io"
    private_key: str = ""
    rpc_timeout_sec: float = 10.0
    eligibility_timeout_sec: float = 12.0
    eligibility_workers: int = 16
    transfer_confirm_timeout_sec: float = 45.0
    finalize_retries: int = 3
    stuck_claim_after_sec: int = 300
    settlement_poll_sec: int = 30
    cors_origins: Tuple[str, ...] = ("*",)

    @property
    def min_transaction_count(self) -> int:
        return self.tiers[0].threshold

    @property
    def bonus_enabled(self) -> bool:
        return bool(self.bonus_token_mint)


def parse_tiers(raw: str) -> Tuple[ClaimTier, ...]:
    """
    Parse "50:0.2,160:0.5,..." into a sorted tier tuple.

    Thresholds must be strictly ascending and amounts positive and
    non-decreasing, otherwise the table is rejected.
    """
    tiers: List[ClaimTier] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        if ":" not in part:
            raise ValueError(f"bad tier entry '{part}' (expected threshold:amount)")
        t, a = part.split(":", 1)
        try:
            tier = ClaimTier(threshold=int(t.strip()), amount=Decimal(a.strip()))
        except (ValueError, InvalidOperation):
            raise ValueError(f"bad tier entry '{part}'")
        if tier.threshold < 0 or tier.amount <= 0:
            raise ValueError(f"bad tier entry '{part}'")
        tiers.append(tier)

    if not tiers:
        raise ValueError("CLAIM_TIERS must contain at least one tier")
    for prev, cur in zip(tiers, tiers[1:]):
        if cur.threshold <= prev.threshold:
            raise ValueError("CLAIM_TIERS thresholds must be strictly ascending")
        if cur.amount < prev.amount:
            raise ValueError("CLAIM_TIERS amounts must not decrease")
    return tuple(tiers)


def _decimal_env(env: Mapping[str, str], key: str, default: str, positive: bool = True) -> Decimal:
    raw = (env.get(key) or default).strip()
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise ValueError(f"{key} must be a number (got '{raw}')")
    if positive and value <= 0:
        raise ValueError(f"{key} must be a positive number")
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> FaucetSettings:
    """Read the faucet configuration from the environment (re-read on each call)."""
    env = os.environ if env is None else env

    origins = tuple(o.strip() for o in (env.get("CORS_ORIGINS") or "*").split(",") if o.strip())
    rpc_url = (env.get("FOGO_RPC_URL") or env.get("SOLANA_RPC_URL") or "https://testnet.fogo.io").strip()

    return FaucetSettings(
        db_path=(env.get("FAUCET_DB") or "faucet.db").strip(),
        daily_pool_limit=_decimal_env(env, "DAILY_POOL_LIMIT", "300"),
        initial_balance=_decimal_env(env, "FAUCET_INITIAL_BALANCE", "1000000", positive=False),
        balance_ceiling=_decimal_env(env, "BALANCE_CEILING", "10"),
        tiers=parse_tiers(env.get("CLAIM_TIERS") or DEFAULT_CLAIM_TIERS),
        cooldown_sec=int(env.get("COOLDOWN_SEC", "86400")),
        bonus_rate=_decimal_env(env, "FOGO_TO_BONUS", "1"),
        bonus_token_mint=(env.get("BONUS_TOKEN_MINT") or "").strip(),
        spl_fogo_mint=(env.get("SPL_FOGO_MINT") or DEFAULT_SPL_FOGO_MINT).strip(),
        rpc_url=rpc_url,
        private_key=(env.get("PRIVATE_KEY") or "").strip(),
        rpc_timeout_sec=float(env.get("RPC_TIMEOUT_SEC", "10")),
        eligibility_timeout_sec=float(env.get("ELIGIBILITY_TIMEOUT_SEC", "12")),
        eligibility_workers=max(1, int(env.get("ELIGIBILITY_WORKERS", "16"))),
        transfer_confirm_timeout_sec=float(env.get("TRANSFER_CONFIRM_TIMEOUT_SEC", "45")),
        finalize_retries=max(1, int(env.get("FINALIZE_RETRIES", "3"))),
        stuck_claim_after_sec=int(env.get("STUCK_CLAIM_AFTER_SEC", "300")),
        settlement_poll_sec=max(1, int(env.get("SETTLEMENT_POLL_SEC", "30"))),
        cors_origins=origins or ("*",),
    )
