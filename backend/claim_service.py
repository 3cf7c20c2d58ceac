# claim_service.py
"""
Claim orchestration: chain reads -> reservation -> transfer -> finalize,
followed by the optional bonus transfer.

The service owns no state. Every step that changes the ledger goes through
claim_store, each on its own short-lived connection from db_func.
"""
from __future__ import annotations

import logging
import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from functools import lru_cache
from typing import Callable, Optional

from chain_gateway import DualBalance, RpcUnavailable, TransferFailed, is_valid_address
from claim_store import (
    FinalizeResult,
    cooldown_reset_time,
    finalize_bonus_claim,
    finalize_claim,
    now_unix,
    pool_snapshot,
    record_bonus_submission,
    record_claim_submission,
    reserve_bonus_claim,
    reserve_claim,
)
from eligibility import evaluate, fmt_amount
from faucet_errors import (
    ChainUnavailableError,
    FaucetError,
    FinalizeError,
    IneligibleError,
    TransferFailedError,
    ValidationError,
)
from faucet_settings import FaucetSettings

log = logging.getLogger(__name__)

BONUS_QUANT = Decimal("0.01")

BUSY_REASON = "Network is busy - please try again in a few minutes"
COOLDOWN_REASON = "Daily limit reached. Please wait 24 hours between claims."
INACTIVE_REASON = "Faucet is currently inactive"


@lru_cache(maxsize=None)
def eligibility_executor(workers: int) -> ThreadPoolExecutor:
    """
    Shared pool for eligibility chain reads, one per configured size.

    A timed-out preview keeps its worker until the RPC calls return (up to
    rpc_timeout_sec each), so at most `workers` slow wallets are in flight;
    later previews queue and may report "network busy".
    """
    return ThreadPoolExecutor(max_workers=workers, thread_name_prefix="eligibility")


@dataclass(frozen=True)
class BonusQuote:
    bonus_amount: Decimal
    conversion_rate: Decimal


def calculate_bonus(fogo_amount: Decimal, rate: Decimal) -> BonusQuote:
    """bonus = fogo * rate, rounded down to 2 decimals."""
    bonus = (Decimal(fogo_amount) * Decimal(rate)).quantize(BONUS_QUANT, rounding=ROUND_DOWN)
    return BonusQuote(bonus_amount=bonus, conversion_rate=Decimal(rate))


@dataclass
class ClaimOutcome:
    claim_id: int
    amount: Decimal
    remaining: Decimal
    transaction_hash: Optional[str]
    success: bool
    bonus_claim_id: Optional[int] = None
    bonus_amount: Optional[Decimal] = None
    bonus_transaction_hash: Optional[str] = None
    bonus_success: bool = False
    message: str = "Claim processed successfully"


@dataclass(frozen=True)
class EligibilityReport:
    eligible: bool
    reason: Optional[str] = None
    reset_time: Optional[int] = None
    txn_count: int = 0
    proposed_amount: Decimal = Decimal("0")
    balance_exceeded: bool = False
    remaining_pool: Optional[Decimal] = None
    # None means the chain could not be read in time
    native_fogo: Optional[Decimal] = None
    spl_fogo: Optional[Decimal] = None
    total_fogo: Optional[Decimal] = None
    exceeded_type: Optional[str] = None


def balance_exceeded_reason(dual: DualBalance, ceiling: Decimal) -> str:
    kind = "native FOGO" if dual.exceeded_type == "native" else "SPL FOGO"
    return f"Wallet {kind} balance exceeds {ceiling.normalize():f} tokens"


class ClaimService:
    def __init__(self, settings: FaucetSettings, gateway, db_func: Callable[[], sqlite3.Connection]):
        self.settings = settings
        self.gateway = gateway
        self.db_func = db_func
        # seconds; multiplied by the attempt number between finalize retries
        self.retry_backoff = 0.5

    # ---------------------------
    # helpers
    # ---------------------------
    @staticmethod
    def require_valid_address(wallet_address: str) -> None:
        if not is_valid_address(wallet_address or ""):
            raise ValidationError("Invalid wallet address format")

    def _read_chain(self, wallet_address: str):
        count = self.gateway.get_transaction_count(wallet_address)
        dual = self.gateway.check_dual_balance(wallet_address, self.settings.balance_ceiling)
        return count, dual

    def wallet_balances(self, wallet_address: str) -> DualBalance:
        self.require_valid_address(wallet_address)
        try:
            return self.gateway.check_dual_balance(wallet_address, self.settings.balance_ceiling)
        except RpcUnavailable as e:
            log.warning("[rpc] balance lookup failed for %s: %s", wallet_address, e)
            raise ChainUnavailableError("Unable to verify FOGO token balances - blockchain RPC unavailable")

    # ---------------------------
    # eligibility (read only)
    # ---------------------------
    def check_eligibility(self, wallet_address: str) -> EligibilityReport:
        """
        Non-binding preview of a claim.

        Bounded by eligibility_timeout_sec. A slow or failing chain yields
        eligible=False with the "network busy" reason rather than an error.
        """
        self.require_valid_address(wallet_address)
        pool = eligibility_executor(self.settings.eligibility_workers)
        future = pool.submit(self._evaluate_wallet, wallet_address)
        try:
            return future.result(timeout=self.settings.eligibility_timeout_sec)
        except FutureTimeout:
            log.warning("[eligibility] %s timed out after %ss", wallet_address, self.settings.eligibility_timeout_sec)
        except RpcUnavailable as e:
            log.warning("[eligibility] chain read failed for %s: %s", wallet_address, e)
        return EligibilityReport(eligible=False, reason=BUSY_REASON)

    def _evaluate_wallet(self, wallet_address: str) -> EligibilityReport:
        s = self.settings
        count, dual = self._read_chain(wallet_address)
        balances = dict(native_fogo=dual.native_amount, spl_fogo=dual.secondary_amount, total_fogo=dual.total)

        con = self.db_func()
        try:
            snap = pool_snapshot(con, s)
            remaining = snap.remaining

            if not snap.is_active:
                return EligibilityReport(eligible=False, reason=INACTIVE_REASON, txn_count=count,
                                         remaining_pool=remaining, **balances)

            if not dual.eligible:
                return EligibilityReport(
                    eligible=False,
                    reason=balance_exceeded_reason(dual, s.balance_ceiling),
                    txn_count=count,
                    balance_exceeded=True,
                    remaining_pool=remaining,
                    exceeded_type=dual.exceeded_type,
                    **balances,
                )

            result = evaluate(count, dual.native_amount, s.tiers, s.balance_ceiling,
                              s.daily_pool_limit, snap.daily_distributed)
            if not result.eligible:
                return EligibilityReport(eligible=False, reason=result.reason, txn_count=count,
                                         remaining_pool=remaining, **balances)

            reset_at = cooldown_reset_time(con, wallet_address, s.cooldown_sec, now_unix())
            if reset_at is not None:
                return EligibilityReport(eligible=False, reason=COOLDOWN_REASON, reset_time=reset_at,
                                         txn_count=count, proposed_amount=result.amount,
                                         remaining_pool=remaining, **balances)

            return EligibilityReport(eligible=True, txn_count=count, proposed_amount=result.amount,
                                     remaining_pool=remaining, **balances)
        finally:
            con.close()

    # ---------------------------
    # claim
    # ---------------------------
    def claim(self, wallet_address: str) -> ClaimOutcome:
        self.require_valid_address(wallet_address)
        s = self.settings

        try:
            count, dual = self._read_chain(wallet_address)
        except RpcUnavailable as e:
            log.warning("[claim] chain read failed for %s: %s", wallet_address, e)
            raise ChainUnavailableError("Unable to verify wallet - blockchain RPC unavailable")

        if not dual.eligible:
            raise IneligibleError(balance_exceeded_reason(dual, s.balance_ceiling))

        con = self.db_func()
        try:
            reserved = reserve_claim(con, wallet_address, count, dual.native_amount, s)
        finally:
            con.close()
        claim = reserved.claim

        tx_hash: Optional[str] = None
        success = False
        try:
            tx_hash = self.gateway.transfer(
                wallet_address,
                claim.amount,
                on_submitted=lambda sig: self._record_submission(record_claim_submission, claim.id, sig),
            )
            success = True
        except TransferFailed as e:
            tx_hash = e.signature
            log.error("[claim] transfer failed claim=%s wallet=%s: %s", claim.id, wallet_address, e)
        except Exception:
            log.exception("[claim] transfer raised claim=%s wallet=%s", claim.id, wallet_address)

        self._finalize_with_retry(
            "claim",
            claim.id,
            lambda con: finalize_claim(con, claim.id, success, tx_hash, s),
        )

        if not success:
            raise TransferFailedError(claim.id, fmt_amount(claim.amount))

        outcome = ClaimOutcome(
            claim_id=claim.id,
            amount=claim.amount,
            remaining=reserved.remaining_pool,
            transaction_hash=tx_hash,
            success=True,
        )
        log.info("[claim] claim=%s wallet=%s amount=%s tx=%s", claim.id, wallet_address, claim.amount, tx_hash)

        if s.bonus_enabled:
            self._run_bonus(outcome, wallet_address)
        return outcome

    def _record_submission(self, record, row_id: int, signature: str) -> None:
        try:
            con = self.db_func()
            try:
                record(con, row_id, signature)
            finally:
                con.close()
        except sqlite3.Error as e:
            # settlement recovery loses the signature; the sync path still finalizes
            log.warning("[claim] could not record signature for id=%s: %s", row_id, e)

    def _finalize_with_retry(
        self,
        kind: str,
        row_id: int,
        apply: Callable[[sqlite3.Connection], FinalizeResult],
    ) -> FinalizeResult:
        last_error: Optional[BaseException] = None
        attempts = self.settings.finalize_retries
        for attempt in range(1, attempts + 1):
            try:
                con = self.db_func()
                try:
                    return apply(con)
                finally:
                    con.close()
            except sqlite3.Error as e:
                last_error = e
                log.warning("[finalize] %s=%s attempt %s/%s failed: %s", kind, row_id, attempt, attempts, e)
            if attempt < attempts:
                time.sleep(self.retry_backoff * attempt)

        log.critical("[finalize] %s=%s still pending after %s attempts, needs reconciliation: %s",
                     kind, row_id, attempts, last_error)
        raise FinalizeError(row_id, last_error)

    # ---------------------------
    # bonus
    # ---------------------------
    def _run_bonus(self, outcome: ClaimOutcome, wallet_address: str) -> None:
        """Bonus transfer for a settled claim. Failures only touch the bonus fields."""
        s = self.settings
        quote = calculate_bonus(outcome.amount, s.bonus_rate)
        outcome.bonus_amount = quote.bonus_amount
        if quote.bonus_amount <= 0:
            log.info("[bonus] claim=%s bonus rounds to 0, skipped", outcome.claim_id)
            return

        try:
            con = self.db_func()
            try:
                bonus = reserve_bonus_claim(
                    con, wallet_address, outcome.amount, quote.bonus_amount, quote.conversion_rate, outcome.claim_id
                )
            finally:
                con.close()
        except (FaucetError, sqlite3.Error) as e:
            log.error("[bonus] reserve failed for claim=%s: %s", outcome.claim_id, e)
            return
        outcome.bonus_claim_id = bonus.id

        tx_hash: Optional[str] = None
        success = False
        try:
            tx_hash = self.gateway.transfer_bonus(
                wallet_address,
                quote.bonus_amount,
                on_submitted=lambda sig: self._record_submission(record_bonus_submission, bonus.id, sig),
            )
            success = True
        except TransferFailed as e:
            tx_hash = e.signature
            log.error("[bonus] transfer failed bonus_claim=%s: %s", bonus.id, e)
        except Exception:
            log.exception("[bonus] transfer raised bonus_claim=%s", bonus.id)

        try:
            self._finalize_with_retry(
                "bonus_claim",
                bonus.id,
                lambda con: finalize_bonus_claim(con, bonus.id, success, tx_hash),
            )
        except FinalizeError:
            return

        outcome.bonus_success = success
        outcome.bonus_transaction_hash = tx_hash
        log.info("[bonus] bonus_claim=%s claim=%s amount=%s success=%s",
                 bonus.id, outcome.claim_id, quote.bonus_amount, success)
