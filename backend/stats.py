# stats.py
import logging
import sqlite3
from typing import Callable, List

from fastapi import APIRouter

from chain_gateway import RpcUnavailable, SolanaGateway, TransferFailed
from claim_models import (
    ActivityOut,
    BonusStatsOut,
    ChartPointOut,
    FaucetStatusOut,
    LeaderboardEntryOut,
    RecentClaimOut,
    StatsOut,
)
from claim_store import now_unix, pool_snapshot
from eligibility import fmt_amount
from faucet_settings import FaucetSettings
from stats_store import (
    bonus_distribution_stats,
    claim_stats,
    fmt_bonus,
    iso_utc,
    leaderboard,
    recent_activity,
    recent_claims,
    total_bonus_distributed,
    total_claims,
    total_distributed,
    total_users,
)
from ttl_cache import TTLCache

log = logging.getLogger(__name__)

STATUS_CACHE_KEY = "faucet-status"
STATS_CACHE_KEY = "general-stats"
STATUS_TTL_SEC = 3
STATS_TTL_SEC = 10

REFILL_INTERVAL_SEC = 24 * 60 * 60


def create_stats_router(
    db_func: Callable[[], sqlite3.Connection],
    settings_func: Callable[[], FaucetSettings],
    gateway_func: Callable[[FaucetSettings], SolanaGateway],
    cache: TTLCache,
) -> APIRouter:
    router = APIRouter()

    @router.get("/faucet/status", response_model=FaucetStatusOut)
    def faucet_status():
        cached = cache.get(STATUS_CACHE_KEY)
        if cached is not None:
            return cached

        settings = settings_func()
        con = db_func()
        try:
            snap = pool_snapshot(con, settings)
            claims = total_claims(con)
            users = total_users(con)
            distributed = total_distributed(con)
        finally:
            con.close()

        balance = snap.balance
        try:
            balance = gateway_func(settings).get_faucet_balance()
        except (RpcUnavailable, TransferFailed) as e:
            log.warning("[status] on-chain faucet balance unavailable, using ledger balance: %s", e)

        out = FaucetStatusOut(
            balance=fmt_amount(balance),
            dailyLimit=fmt_amount(snap.daily_limit),
            dailyDistributed=fmt_amount(snap.daily_distributed),
            remainingToday=fmt_amount(snap.remaining),
            isActive=snap.is_active,
            lastRefill=iso_utc(snap.last_refill),
            nextRefill=iso_utc(snap.last_refill + REFILL_INTERVAL_SEC),
            totalClaims=claims,
            totalUsers=users,
            totalDistributed=fmt_amount(distributed),
            bonusEnabled=settings.bonus_enabled,
            minTransactionCount=settings.min_transaction_count,
        )
        cache.set(STATUS_CACHE_KEY, out, STATUS_TTL_SEC)
        return out

    @router.get("/stats", response_model=StatsOut)
    def general_stats():
        cached = cache.get(STATS_CACHE_KEY)
        if cached is not None:
            return cached

        con = db_func()
        try:
            out = StatsOut(
                totalClaims=total_claims(con),
                totalUsers=total_users(con),
                totalDistributed=fmt_amount(total_distributed(con)),
                totalBonusDistributed=fmt_bonus(total_bonus_distributed(con)),
                lastUpdated=iso_utc(now_unix()),
            )
        finally:
            con.close()
        cache.set(STATS_CACHE_KEY, out, STATS_TTL_SEC)
        return out

    @router.get("/claims/recent", response_model=List[RecentClaimOut])
    def claims_recent(limit: int = 20):
        con = db_func()
        try:
            return recent_claims(con, limit=limit)
        finally:
            con.close()

    @router.get("/activity/recent", response_model=List[ActivityOut])
    def activity_recent(limit: int = 20):
        con = db_func()
        try:
            return recent_activity(con, limit=limit)
        finally:
            con.close()

    @router.get("/leaderboard", response_model=List[LeaderboardEntryOut])
    def leaderboard_list(limit: int = 10):
        con = db_func()
        try:
            return leaderboard(con, limit=limit)
        finally:
            con.close()

    @router.get("/stats/chart", response_model=List[ChartPointOut])
    def stats_chart(days: int = 7):
        con = db_func()
        try:
            return claim_stats(con, days=days)
        finally:
            con.close()

    @router.get("/bonus/stats", response_model=BonusStatsOut)
    def bonus_stats():
        settings = settings_func()
        con = db_func()
        try:
            stats = bonus_distribution_stats(con)
            distributed = total_bonus_distributed(con)
        finally:
            con.close()

        return BonusStatsOut(
            totalBonusDistributed=fmt_bonus(distributed),
            totalBonusClaims=stats["total_bonus_claims"] if stats else 0,
            lastUpdated=iso_utc(stats["last_updated"]) if stats else None,
            conversionRate=str(settings.bonus_rate),
            bonusTokenMint=settings.bonus_token_mint,
        )

    return router
