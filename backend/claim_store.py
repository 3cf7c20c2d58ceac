# claim_store.py
"""
Durable state for the faucet: claims, the pool singleton, rate limits and
bonus claims.

Every mutating operation runs as one BEGIN IMMEDIATE transaction. That takes
SQLite's write lock up front, so concurrent reservations (from any number of
worker processes) are serialized on the pool row, and the partial unique index
on pending claims rejects a second pending claim for the same wallet.

Amounts are stored as integer base units (10^-8 token) so sums stay exact.
"""
from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from eligibility import (
    check_activity_and_balance,
    from_units,
    tier_amount,
    to_units,
)
from faucet_errors import (
    CooldownActiveError,
    FaucetInactiveError,
    IneligibleError,
    InsufficientFaucetBalanceError,
    PendingClaimExistsError,
    PoolExhaustedError,
)
from faucet_settings import FaucetSettings

log = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


def now_unix() -> int:
    return int(time.time())


def day_key(ts: Optional[int] = None) -> str:
    # UTC day key YYYY-MM-DD; compares correctly as a string
    ts = now_unix() if ts is None else ts
    return time.strftime("%Y-%m-%d", time.gmtime(ts))


# ---------------------------
# Connection / schema
# ---------------------------
def connect(path: str) -> sqlite3.Connection:
    con = sqlite3.connect(path, timeout=30, isolation_level=None)  # autocommit, explicit BEGIN
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA journal_mode=WAL;")
    con.execute("PRAGMA synchronous=NORMAL;")
    con.execute("PRAGMA busy_timeout=30000;")
    return con


def init_db(con: sqlite3.Connection) -> None:
    con.execute("""
    CREATE TABLE IF NOT EXISTS claims (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      wallet_address TEXT NOT NULL,
      amount_units INTEGER NOT NULL,
      status TEXT NOT NULL CHECK (status IN ('pending', 'success', 'failed')),
      transaction_hash TEXT,
      created_at INTEGER NOT NULL,
      updated_at INTEGER NOT NULL
    );
    """)
    # One pending claim per wallet, case-insensitive.
    con.execute("""
    CREATE UNIQUE INDEX IF NOT EXISTS uq_claims_pending_wallet
      ON claims(lower(wallet_address)) WHERE status = 'pending';
    """)
    con.execute("CREATE INDEX IF NOT EXISTS idx_claims_status_created ON claims(status, created_at);")
    con.execute("CREATE INDEX IF NOT EXISTS idx_claims_created ON claims(created_at);")

    con.execute("""
    CREATE TABLE IF NOT EXISTS faucet_config (
      id INTEGER PRIMARY KEY CHECK (id = 1),
      balance_units INTEGER NOT NULL CHECK (balance_units >= 0),
      daily_limit_units INTEGER NOT NULL,
      daily_distributed_units INTEGER NOT NULL DEFAULT 0,
      daily_reset_date TEXT NOT NULL,
      is_active INTEGER NOT NULL DEFAULT 1,
      last_refill INTEGER NOT NULL,
      updated_at INTEGER NOT NULL
    );
    """)

    con.execute("""
    CREATE TABLE IF NOT EXISTS rate_limits (
      wallet_address TEXT PRIMARY KEY,
      last_claim INTEGER NOT NULL,
      claim_count INTEGER NOT NULL DEFAULT 1,
      reset_date INTEGER NOT NULL
    );
    """)

    con.execute("""
    CREATE TABLE IF NOT EXISTS bonus_claims (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      wallet_address TEXT NOT NULL,
      fogo_amount_units INTEGER NOT NULL,
      bonus_amount_units INTEGER NOT NULL,
      conversion_rate TEXT NOT NULL,
      status TEXT NOT NULL CHECK (status IN ('pending', 'success', 'failed')),
      transaction_hash TEXT,
      related_claim_id INTEGER NOT NULL UNIQUE REFERENCES claims(id),
      created_at INTEGER NOT NULL,
      updated_at INTEGER NOT NULL
    );
    """)
    con.execute("CREATE INDEX IF NOT EXISTS idx_bonus_claims_status_created ON bonus_claims(status, created_at);")

    con.execute("""
    CREATE TABLE IF NOT EXISTS bonus_distribution_stats (
      id INTEGER PRIMARY KEY CHECK (id = 1),
      total_bonus_claims INTEGER NOT NULL DEFAULT 0,
      total_bonus_distributed_units INTEGER NOT NULL DEFAULT 0,
      last_updated INTEGER
    );
    """)


def _rollback(con: sqlite3.Connection) -> None:
    try:
        con.execute("ROLLBACK;")
    except sqlite3.Error:
        # no transaction open (e.g. BEGIN itself failed)
        pass


# ---------------------------
# Records
# ---------------------------
@dataclass(frozen=True)
class Claim:
    id: int
    wallet_address: str
    amount: Decimal
    status: str
    transaction_hash: Optional[str]
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Claim":
        return cls(
            id=int(row["id"]),
            wallet_address=str(row["wallet_address"]),
            amount=from_units(row["amount_units"]),
            status=str(row["status"]),
            transaction_hash=row["transaction_hash"],
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )


@dataclass(frozen=True)
class BonusClaim:
    id: int
    wallet_address: str
    fogo_amount: Decimal
    bonus_amount: Decimal
    conversion_rate: str
    status: str
    transaction_hash: Optional[str]
    related_claim_id: int
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "BonusClaim":
        return cls(
            id=int(row["id"]),
            wallet_address=str(row["wallet_address"]),
            fogo_amount=from_units(row["fogo_amount_units"]),
            bonus_amount=from_units(row["bonus_amount_units"]),
            conversion_rate=str(row["conversion_rate"]),
            status=str(row["status"]),
            transaction_hash=row["transaction_hash"],
            related_claim_id=int(row["related_claim_id"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )


@dataclass(frozen=True)
class PoolSnapshot:
    balance: Decimal
    daily_limit: Decimal
    daily_distributed: Decimal
    daily_reset_date: str
    is_active: bool
    last_refill: int
    updated_at: int

    @property
    def remaining(self) -> Decimal:
        return max(self.daily_limit - self.daily_distributed, Decimal("0"))


@dataclass(frozen=True)
class ReserveResult:
    claim: Claim
    remaining_pool: Decimal


@dataclass(frozen=True)
class FinalizeResult:
    # False when the claim was already final (or missing): idempotent no-op
    applied: bool


# ---------------------------
# Pool singleton
# ---------------------------
def _ensure_pool_row(con: sqlite3.Connection, settings: FaucetSettings, ts: int) -> None:
    con.execute(
        """
        INSERT OR IGNORE INTO faucet_config(id, balance_units, daily_limit_units, daily_distributed_units,
                                            daily_reset_date, is_active, last_refill, updated_at)
        VALUES(1,?,?,0,?,1,?,?)
        """,
        (to_units(settings.initial_balance), to_units(settings.daily_pool_limit), day_key(ts), ts, ts),
    )


def _load_pool_row(con: sqlite3.Connection) -> sqlite3.Row:
    return con.execute(
        """
        SELECT balance_units, daily_limit_units, daily_distributed_units, daily_reset_date,
               is_active, last_refill, updated_at
        FROM faucet_config WHERE id=1
        """
    ).fetchone()


def pool_snapshot(con: sqlite3.Connection, settings: FaucetSettings, now: Optional[int] = None) -> PoolSnapshot:
    """
    Current pool view, creating the singleton row if needed.

    Applies the UTC day rollover to the returned figures without writing it;
    the next reservation persists the reset.
    """
    ts = now_unix() if now is None else now
    _ensure_pool_row(con, settings, ts)
    row = _load_pool_row(con)
    distributed = 0 if row["daily_reset_date"] < day_key(ts) else int(row["daily_distributed_units"])
    return PoolSnapshot(
        balance=from_units(row["balance_units"]),
        daily_limit=settings.daily_pool_limit,
        daily_distributed=from_units(distributed),
        daily_reset_date=str(row["daily_reset_date"]),
        is_active=bool(row["is_active"]),
        last_refill=int(row["last_refill"]),
        updated_at=int(row["updated_at"]),
    )


def set_faucet_active(con: sqlite3.Connection, settings: FaucetSettings, active: bool) -> None:
    ts = now_unix()
    _ensure_pool_row(con, settings, ts)
    con.execute("UPDATE faucet_config SET is_active=?, updated_at=? WHERE id=1", (1 if active else 0, ts))


# ---------------------------
# Rate limits
# ---------------------------
def get_rate_limit(con: sqlite3.Connection, wallet_address: str) -> Optional[sqlite3.Row]:
    return con.execute(
        "SELECT wallet_address, last_claim, claim_count, reset_date FROM rate_limits WHERE wallet_address=?",
        (wallet_address.lower(),),
    ).fetchone()


def cooldown_reset_time(con: sqlite3.Connection, wallet_address: str, cooldown_sec: int, ts: int) -> Optional[int]:
    """Unix time the wallet may claim again, or None if it is not cooling down."""
    row = get_rate_limit(con, wallet_address)
    if row is None:
        return None
    reset_at = int(row["last_claim"]) + cooldown_sec
    return reset_at if reset_at > ts else None


def _touch_rate_limit(con: sqlite3.Connection, wallet_address: str, cooldown_sec: int, ts: int) -> None:
    con.execute(
        """
        INSERT INTO rate_limits(wallet_address, last_claim, claim_count, reset_date)
        VALUES(?,?,1,?)
        ON CONFLICT(wallet_address) DO UPDATE SET
          claim_count = CASE WHEN rate_limits.last_claim + ? <= excluded.last_claim
                             THEN 1 ELSE rate_limits.claim_count + 1 END,
          last_claim = excluded.last_claim,
          reset_date = excluded.reset_date
        """,
        (wallet_address.lower(), ts, ts + cooldown_sec, cooldown_sec),
    )


# ---------------------------
# Claims
# ---------------------------
def get_claim(con: sqlite3.Connection, claim_id: int) -> Optional[Claim]:
    row = con.execute("SELECT * FROM claims WHERE id=?", (claim_id,)).fetchone()
    return Claim.from_row(row) if row else None


def reserve_claim(
    con: sqlite3.Connection,
    wallet_address: str,
    transaction_count: int,
    wallet_balance: Decimal,
    settings: FaucetSettings,
    now: Optional[int] = None,
) -> ReserveResult:
    """
    Atomically deduct pool capacity and create a pending claim.

    Raises IneligibleError / PoolExhaustedError / FaucetInactiveError /
    CooldownActiveError / InsufficientFaucetBalanceError /
    PendingClaimExistsError. On any error nothing is written.
    """
    ts = now_unix() if now is None else now
    today = day_key(ts)

    con.execute("BEGIN IMMEDIATE;")
    try:
        # policy rules are re-applied under the write lock
        reason = check_activity_and_balance(
            transaction_count, wallet_balance, settings.tiers, settings.balance_ceiling
        )
        if reason:
            raise IneligibleError(reason)

        _ensure_pool_row(con, settings, ts)
        pool = _load_pool_row(con)
        if not pool["is_active"]:
            raise FaucetInactiveError()

        reset_at = cooldown_reset_time(con, wallet_address, settings.cooldown_sec, ts)
        if reset_at is not None:
            raise CooldownActiveError(reset_time=reset_at)

        day_rolled = pool["daily_reset_date"] < today
        current = 0 if day_rolled else int(pool["daily_distributed_units"])
        limit_units = to_units(settings.daily_pool_limit)
        tier_units = to_units(tier_amount(transaction_count, settings.tiers))
        awarded = min(tier_units, max(limit_units - current, 0))
        if awarded <= 0:
            raise PoolExhaustedError()
        if int(pool["balance_units"]) < awarded:
            raise InsufficientFaucetBalanceError()

        con.execute(
            """
            UPDATE faucet_config
            SET daily_distributed_units = ?,
                daily_reset_date = ?,
                daily_limit_units = ?,
                balance_units = balance_units - ?,
                updated_at = ?
            WHERE id = 1
            """,
            (current + awarded, today if day_rolled else pool["daily_reset_date"], limit_units, awarded, ts),
        )

        try:
            cur = con.execute(
                """
                INSERT INTO claims(wallet_address, amount_units, status, transaction_hash, created_at, updated_at)
                VALUES(?,?,?,?,?,?)
                """,
                (wallet_address, awarded, STATUS_PENDING, None, ts, ts),
            )
        except sqlite3.IntegrityError:
            raise PendingClaimExistsError()

        claim_id = int(cur.lastrowid)
        con.execute("COMMIT;")
    except BaseException:
        _rollback(con)
        raise

    claim = Claim(
        id=claim_id,
        wallet_address=wallet_address,
        amount=from_units(awarded),
        status=STATUS_PENDING,
        transaction_hash=None,
        created_at=ts,
        updated_at=ts,
    )
    log.info("[reserve] claim=%s wallet=%s amount=%s remaining=%s",
             claim_id, wallet_address, claim.amount, from_units(limit_units - current - awarded))
    return ReserveResult(claim=claim, remaining_pool=from_units(limit_units - current - awarded))


def record_claim_submission(con: sqlite3.Connection, claim_id: int, tx_hash: str) -> bool:
    """Remember the broadcast signature of a still-pending claim (for settlement recovery)."""
    cur = con.execute(
        "UPDATE claims SET transaction_hash=?, updated_at=? WHERE id=? AND status='pending'",
        (tx_hash, now_unix(), claim_id),
    )
    return cur.rowcount > 0


def finalize_claim(
    con: sqlite3.Connection,
    claim_id: int,
    success: bool,
    tx_hash: Optional[str],
    settings: FaucetSettings,
    now: Optional[int] = None,
) -> FinalizeResult:
    """
    Move a pending claim to success/failed and apply the consequences.

    success -> rate limit upsert. failure -> pool compensation (balance and
    the day's distributed amount are given back). Only a pending claim is
    touched, so repeated calls are harmless.
    """
    ts = now_unix() if now is None else now
    status = STATUS_SUCCESS if success else STATUS_FAILED

    con.execute("BEGIN IMMEDIATE;")
    try:
        cur = con.execute(
            """
            UPDATE claims
            SET status=?, transaction_hash=COALESCE(?, transaction_hash), updated_at=?
            WHERE id=? AND status='pending'
            """,
            (status, tx_hash, ts, claim_id),
        )
        if cur.rowcount == 0:
            con.execute("COMMIT;")
            return FinalizeResult(applied=False)

        row = con.execute(
            "SELECT wallet_address, amount_units, created_at FROM claims WHERE id=?",
            (claim_id,),
        ).fetchone()
        wallet_address = str(row["wallet_address"])
        amount_units = int(row["amount_units"])

        if success:
            _touch_rate_limit(con, wallet_address, settings.cooldown_sec, ts)
        else:
            _ensure_pool_row(con, settings, ts)
            # Capacity only goes back to the day it was taken from.
            con.execute(
                """
                UPDATE faucet_config
                SET balance_units = balance_units + ?,
                    daily_distributed_units = CASE WHEN daily_reset_date = ?
                                                   THEN MAX(daily_distributed_units - ?, 0)
                                                   ELSE daily_distributed_units END,
                    updated_at = ?
                WHERE id = 1
                """,
                (amount_units, day_key(int(row["created_at"])), amount_units, ts),
            )

        con.execute("COMMIT;")
    except BaseException:
        _rollback(con)
        raise

    log.info("[finalize] claim=%s status=%s tx=%s", claim_id, status, tx_hash)
    return FinalizeResult(applied=True)


def list_stuck_claims(con: sqlite3.Connection, older_than: int, limit: int = 50) -> List[Claim]:
    rows = con.execute(
        "SELECT * FROM claims WHERE status='pending' AND created_at <= ? ORDER BY id ASC LIMIT ?",
        (older_than, limit),
    ).fetchall()
    return [Claim.from_row(r) for r in rows]


# ---------------------------
# Bonus claims
# ---------------------------
def get_bonus_claim(con: sqlite3.Connection, bonus_claim_id: int) -> Optional[BonusClaim]:
    row = con.execute("SELECT * FROM bonus_claims WHERE id=?", (bonus_claim_id,)).fetchone()
    return BonusClaim.from_row(row) if row else None


def reserve_bonus_claim(
    con: sqlite3.Connection,
    wallet_address: str,
    fogo_amount: Decimal,
    bonus_amount: Decimal,
    conversion_rate: Decimal,
    related_claim_id: int,
    now: Optional[int] = None,
) -> BonusClaim:
    """Create the pending bonus row for a primary claim. Not capacity-limited."""
    ts = now_unix() if now is None else now
    con.execute("BEGIN IMMEDIATE;")
    try:
        try:
            cur = con.execute(
                """
                INSERT INTO bonus_claims(wallet_address, fogo_amount_units, bonus_amount_units, conversion_rate,
                                         status, transaction_hash, related_claim_id, created_at, updated_at)
                VALUES(?,?,?,?,?,?,?,?,?)
                """,
                (wallet_address, to_units(fogo_amount), to_units(bonus_amount), str(conversion_rate),
                 STATUS_PENDING, None, related_claim_id, ts, ts),
            )
        except sqlite3.IntegrityError:
            raise PendingClaimExistsError(f"bonus claim already exists for claim {related_claim_id}")
        bonus_id = int(cur.lastrowid)
        con.execute("COMMIT;")
    except BaseException:
        _rollback(con)
        raise

    return BonusClaim(
        id=bonus_id,
        wallet_address=wallet_address,
        fogo_amount=from_units(to_units(fogo_amount)),
        bonus_amount=from_units(to_units(bonus_amount)),
        conversion_rate=str(conversion_rate),
        status=STATUS_PENDING,
        transaction_hash=None,
        related_claim_id=related_claim_id,
        created_at=ts,
        updated_at=ts,
    )


def record_bonus_submission(con: sqlite3.Connection, bonus_claim_id: int, tx_hash: str) -> bool:
    cur = con.execute(
        "UPDATE bonus_claims SET transaction_hash=?, updated_at=? WHERE id=? AND status='pending'",
        (tx_hash, now_unix(), bonus_claim_id),
    )
    return cur.rowcount > 0


def finalize_bonus_claim(
    con: sqlite3.Connection,
    bonus_claim_id: int,
    success: bool,
    tx_hash: Optional[str],
    now: Optional[int] = None,
) -> FinalizeResult:
    ts = now_unix() if now is None else now
    status = STATUS_SUCCESS if success else STATUS_FAILED

    con.execute("BEGIN IMMEDIATE;")
    try:
        cur = con.execute(
            """
            UPDATE bonus_claims
            SET status=?, transaction_hash=COALESCE(?, transaction_hash), updated_at=?
            WHERE id=? AND status='pending'
            """,
            (status, tx_hash, ts, bonus_claim_id),
        )
        if cur.rowcount == 0:
            con.execute("COMMIT;")
            return FinalizeResult(applied=False)

        if success:
            row = con.execute(
                "SELECT bonus_amount_units FROM bonus_claims WHERE id=?", (bonus_claim_id,)
            ).fetchone()
            con.execute("INSERT OR IGNORE INTO bonus_distribution_stats(id) VALUES(1)")
            con.execute(
                """
                UPDATE bonus_distribution_stats
                SET total_bonus_claims = total_bonus_claims + 1,
                    total_bonus_distributed_units = total_bonus_distributed_units + ?,
                    last_updated = ?
                WHERE id = 1
                """,
                (int(row["bonus_amount_units"]), ts),
            )

        con.execute("COMMIT;")
    except BaseException:
        _rollback(con)
        raise

    log.info("[finalize] bonus_claim=%s status=%s tx=%s", bonus_claim_id, status, tx_hash)
    return FinalizeResult(applied=True)


def list_stuck_bonus_claims(con: sqlite3.Connection, older_than: int, limit: int = 50) -> List[BonusClaim]:
    rows = con.execute(
        "SELECT * FROM bonus_claims WHERE status='pending' AND created_at <= ? ORDER BY id ASC LIMIT ?",
        (older_than, limit),
    ).fetchall()
    return [BonusClaim.from_row(r) for r in rows]
