# faucet.py
import sqlite3
from decimal import Decimal
from typing import Callable, Optional

from fastapi import APIRouter

from chain_gateway import SolanaGateway
from claim_models import ClaimOut, EligibilityOut, WalletBalancesOut, WalletIn
from claim_service import ClaimService, EligibilityReport
from eligibility import fmt_amount
from faucet_settings import FaucetSettings
from stats import STATS_CACHE_KEY, STATUS_CACHE_KEY
from stats_store import fmt_bonus, iso_utc
from ttl_cache import TTLCache

UNKNOWN = "Unknown"


def _amount_or_unknown(value: Optional[Decimal]) -> str:
    return UNKNOWN if value is None else fmt_amount(value)


def eligibility_out(report: EligibilityReport) -> EligibilityOut:
    return EligibilityOut(
        eligible=report.eligible,
        reason=report.reason,
        resetTime=iso_utc(report.reset_time),
        txnCount=report.txn_count,
        proposedAmount=fmt_amount(report.proposed_amount),
        balanceExceeded=report.balance_exceeded,
        remainingPool=None if report.remaining_pool is None else fmt_amount(report.remaining_pool),
        nativeFogo=_amount_or_unknown(report.native_fogo),
        splFogo=_amount_or_unknown(report.spl_fogo),
        totalFogo=_amount_or_unknown(report.total_fogo),
        exceededType=report.exceeded_type,
    )


def create_faucet_router(
    db_func: Callable[[], sqlite3.Connection],
    settings_func: Callable[[], FaucetSettings],
    gateway_func: Callable[[FaucetSettings], SolanaGateway],
    cache: TTLCache,
) -> APIRouter:
    router = APIRouter()

    def service() -> ClaimService:
        # settings are re-read per request; pool limit / bonus rate changes apply live
        settings = settings_func()
        return ClaimService(settings, gateway_func(settings), db_func)

    @router.post("/faucet/claim", response_model=ClaimOut)
    def faucet_claim(data: WalletIn):
        try:
            outcome = service().claim(data.walletAddress)
        finally:
            # pool / totals changed (or a compensation ran)
            cache.invalidate(STATUS_CACHE_KEY, STATS_CACHE_KEY)

        return ClaimOut(
            claimId=outcome.claim_id,
            amount=fmt_amount(outcome.amount),
            bonusClaimId=outcome.bonus_claim_id,
            bonusAmount=None if outcome.bonus_amount is None else fmt_bonus(outcome.bonus_amount),
            remaining=fmt_amount(outcome.remaining),
            transactionHash=outcome.transaction_hash,
            bonusTransactionHash=outcome.bonus_transaction_hash,
            success=outcome.success,
            bonusSuccess=outcome.bonus_success,
            message=outcome.message,
        )

    @router.post("/faucet/check-eligibility", response_model=EligibilityOut)
    def faucet_check_eligibility(data: WalletIn):
        return eligibility_out(service().check_eligibility(data.walletAddress))

    @router.post("/wallet/balances", response_model=WalletBalancesOut)
    def wallet_balances(data: WalletIn):
        dual = service().wallet_balances(data.walletAddress)
        return WalletBalancesOut(
            walletAddress=data.walletAddress,
            nativeFogo=fmt_amount(dual.native_amount),
            splFogo=fmt_amount(dual.secondary_amount),
            totalFogo=fmt_amount(dual.total),
            eligible=dual.eligible,
            exceededType=dual.exceeded_type,
        )

    return router
