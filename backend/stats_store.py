# stats_store.py
"""Read-only aggregation over the claim tables for the dashboard endpoints."""
import sqlite3
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from eligibility import fmt_amount, from_units


def _clamp_limit(limit: int, default: int, maximum: int = 100) -> int:
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        return default
    if limit < 1:
        return default
    if limit > maximum:
        return maximum
    return limit


def iso_utc(ts: Optional[int]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat().replace("+00:00", "Z")


def time_ago(ts: int, now: Optional[int] = None) -> str:
    now = int(time.time()) if now is None else now
    diff = max(0, now - int(ts))
    if diff < 60:
        return f"{diff} seconds ago"
    if diff < 3600:
        n, unit = diff // 60, "minute"
    elif diff < 86400:
        n, unit = diff // 3600, "hour"
    else:
        n, unit = diff // 86400, "day"
    return f"{n} {unit}{'' if n == 1 else 's'} ago"


def fmt_bonus(amount: Decimal) -> str:
    return f"{amount:.2f}"


# ---------------------------
# Totals (successful claims only)
# ---------------------------
def total_claims(con: sqlite3.Connection) -> int:
    row = con.execute("SELECT COUNT(*) FROM claims WHERE status='success'").fetchone()
    return int(row[0] or 0)


def total_users(con: sqlite3.Connection) -> int:
    row = con.execute("SELECT COUNT(DISTINCT lower(wallet_address)) FROM claims WHERE status='success'").fetchone()
    return int(row[0] or 0)


def total_distributed(con: sqlite3.Connection) -> Decimal:
    row = con.execute("SELECT COALESCE(SUM(amount_units), 0) FROM claims WHERE status='success'").fetchone()
    return from_units(row[0])


def total_bonus_distributed(con: sqlite3.Connection) -> Decimal:
    row = con.execute(
        "SELECT COALESCE(SUM(bonus_amount_units), 0) FROM bonus_claims WHERE status='success'"
    ).fetchone()
    return from_units(row[0])


def bonus_distribution_stats(con: sqlite3.Connection) -> Optional[Dict[str, Any]]:
    row = con.execute(
        "SELECT total_bonus_claims, total_bonus_distributed_units, last_updated FROM bonus_distribution_stats WHERE id=1"
    ).fetchone()
    if row is None:
        return None
    return dict(
        total_bonus_claims=int(row[0] or 0),
        total_bonus_distributed=from_units(row[1]),
        last_updated=row[2],
    )


# ---------------------------
# Lists
# ---------------------------
def recent_claims(con: sqlite3.Connection, limit: int = 20, now: Optional[int] = None) -> List[Dict[str, Any]]:
    limit = _clamp_limit(limit, 20)
    rows = con.execute(
        """
        SELECT id, wallet_address, amount_units, status, transaction_hash, created_at
        FROM claims
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()
    out: List[Dict[str, Any]] = []
    for r in rows:
        out.append(
            dict(
                id=int(r[0]),
                walletAddress=str(r[1]),
                amount=fmt_amount(from_units(r[2])),
                status=str(r[3]),
                transactionHash=r[4],
                timestamp=iso_utc(r[5]),
                timeAgo=time_ago(r[5], now),
            )
        )
    return out


def recent_activity(con: sqlite3.Connection, limit: int = 20, now: Optional[int] = None) -> List[Dict[str, Any]]:
    """Claims and bonus payouts interleaved, newest first."""
    limit = _clamp_limit(limit, 20)
    rows = con.execute(
        """
        SELECT id, 'claim' AS type, wallet_address, amount_units, status, transaction_hash, created_at
        FROM claims
        UNION ALL
        SELECT id, 'bonus' AS type, wallet_address, bonus_amount_units, status, transaction_hash, created_at
        FROM bonus_claims
        ORDER BY created_at DESC, type DESC, id DESC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()
    out: List[Dict[str, Any]] = []
    for r in rows:
        amount = from_units(r[3])
        out.append(
            dict(
                id=int(r[0]),
                type=str(r[1]),
                walletAddress=str(r[2]),
                amount=fmt_bonus(amount) if r[1] == "bonus" else fmt_amount(amount),
                status=str(r[4]),
                transactionHash=r[5],
                timestamp=iso_utc(r[6]),
                timeAgo=time_ago(r[6], now),
            )
        )
    return out


def leaderboard(con: sqlite3.Connection, limit: int = 10, now: Optional[int] = None) -> List[Dict[str, Any]]:
    limit = _clamp_limit(limit, 10)
    rows = con.execute(
        """
        SELECT MAX(c.wallet_address) AS wallet_address,
               COUNT(*) AS claims,
               SUM(c.amount_units) AS total_units,
               MAX(c.created_at) AS last_claim,
               (SELECT COUNT(*) FROM bonus_claims b
                 WHERE lower(b.wallet_address) = lower(c.wallet_address) AND b.status = 'success') AS bonus_claims,
               (SELECT COALESCE(SUM(b.bonus_amount_units), 0) FROM bonus_claims b
                 WHERE lower(b.wallet_address) = lower(c.wallet_address) AND b.status = 'success') AS bonus_units
        FROM claims c
        WHERE c.status = 'success'
        GROUP BY lower(c.wallet_address)
        ORDER BY claims DESC, total_units DESC, last_claim DESC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()
    out: List[Dict[str, Any]] = []
    for rank, r in enumerate(rows, start=1):
        out.append(
            dict(
                rank=rank,
                walletAddress=str(r["wallet_address"]),
                claims=int(r["claims"]),
                totalAmount=fmt_amount(from_units(r["total_units"])),
                lastClaim=iso_utc(r["last_claim"]),
                lastClaimAgo=time_ago(r["last_claim"], now),
                bonusClaims=int(r["bonus_claims"] or 0),
                totalBonusAmount=fmt_bonus(from_units(r["bonus_units"])),
            )
        )
    return out


def claim_stats(con: sqlite3.Connection, days: int = 7, now: Optional[int] = None) -> List[Dict[str, Any]]:
    """Per UTC day claim and distinct-user counts, oldest first, zero-filled."""
    now = int(time.time()) if now is None else now
    days = _clamp_limit(days, 7, maximum=90)
    day_keys = [time.strftime("%Y-%m-%d", time.gmtime(now - i * 86400)) for i in range(days - 1, -1, -1)]

    rows = con.execute(
        """
        SELECT date(created_at, 'unixepoch') AS day,
               COUNT(*) AS claims,
               COUNT(DISTINCT lower(wallet_address)) AS users
        FROM claims
        WHERE date(created_at, 'unixepoch') >= ?
        GROUP BY day
        """,
        (day_keys[0],),
    ).fetchall()
    by_day = {str(r["day"]): r for r in rows}

    out: List[Dict[str, Any]] = []
    for key in day_keys:
        r = by_day.get(key)
        out.append(dict(date=key, claims=int(r["claims"]) if r else 0, users=int(r["users"]) if r else 0))
    return out
