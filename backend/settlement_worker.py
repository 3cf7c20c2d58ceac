#!/usr/bin/env python3
"""
Settlement recovery worker for the FOGO faucet.

- Finds claims / bonus claims still 'pending' after STUCK_CLAIM_AFTER_SEC
  (the API process died or gave up between reserve and finalize).
- Resolves each one from chain state using the signature recorded at submit:
    confirmed signature        -> success
    failed / unknown / missing -> failed (pool capacity is given back)
- Finalizes through claim_store, which only touches pending rows, so running
  next to the API is safe.
"""
import logging
import os
import sqlite3
import time
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

from chain_gateway import RpcUnavailable, SolanaGateway
from claim_store import (
    connect,
    finalize_bonus_claim,
    finalize_claim,
    init_db,
    list_stuck_bonus_claims,
    list_stuck_claims,
    now_unix,
)
from faucet_settings import FaucetSettings, load_settings

# -------------------------
# Env
# -------------------------
BACKEND_DIR = Path(__file__).resolve().parent
load_dotenv(BACKEND_DIR / ".env")

log = logging.getLogger("settlement_worker")


def resolve_outcome(gateway, tx_hash: Optional[str]) -> bool:
    """Final outcome of a stuck transfer. Raises RpcUnavailable if the chain can't say."""
    if not tx_hash:
        return False
    return gateway.get_signature_status(tx_hash) == "confirmed"


def run_once(
    con: sqlite3.Connection,
    gateway,
    settings: FaucetSettings,
    now: Optional[int] = None,
) -> Dict[str, int]:
    """One sweep over stuck claims and bonus claims. Returns per-outcome counts."""
    ts = now_unix() if now is None else now
    cutoff = ts - settings.stuck_claim_after_sec
    counts = {"success": 0, "failed": 0, "skipped": 0}

    for claim in list_stuck_claims(con, cutoff):
        try:
            ok = resolve_outcome(gateway, claim.transaction_hash)
        except RpcUnavailable as e:
            log.warning("[worker] claim=%s status lookup failed, retry next sweep: %s", claim.id, e)
            counts["skipped"] += 1
            continue
        result = finalize_claim(con, claim.id, ok, claim.transaction_hash, settings, now=ts)
        if result.applied:
            counts["success" if ok else "failed"] += 1
            log.info("[worker] claim=%s wallet=%s amount=%s -> %s tx=%s",
                     claim.id, claim.wallet_address, claim.amount, "success" if ok else "failed",
                     claim.transaction_hash)

    for bonus in list_stuck_bonus_claims(con, cutoff):
        try:
            ok = resolve_outcome(gateway, bonus.transaction_hash)
        except RpcUnavailable as e:
            log.warning("[worker] bonus_claim=%s status lookup failed, retry next sweep: %s", bonus.id, e)
            counts["skipped"] += 1
            continue
        result = finalize_bonus_claim(con, bonus.id, ok, bonus.transaction_hash, now=ts)
        if result.applied:
            counts["success" if ok else "failed"] += 1
            log.info("[worker] bonus_claim=%s claim=%s -> %s tx=%s",
                     bonus.id, bonus.related_claim_id, "success" if ok else "failed", bonus.transaction_hash)

    return counts


def main() -> None:
    logging.basicConfig(
        level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = load_settings()
    gateway = SolanaGateway(settings)

    log.info("[worker] settlement worker started")
    log.info("  db=%s", settings.db_path)
    log.info("  rpc_url=%s", settings.rpc_url)
    log.info("  stuck after %ss, polling every %ss", settings.stuck_claim_after_sec, settings.settlement_poll_sec)

    while True:
        con = connect(settings.db_path)
        try:
            init_db(con)
            counts = run_once(con, gateway, settings)
            if counts["success"] or counts["failed"] or counts["skipped"]:
                log.info("[worker] sweep done: %s", counts)
        except sqlite3.Error as e:
            log.error("[worker] sweep failed: %s", e)
        finally:
            con.close()
        time.sleep(settings.settlement_poll_sec)


if __name__ == "__main__":
    main()
