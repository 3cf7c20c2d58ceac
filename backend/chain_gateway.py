# chain_gateway.py
"""
FOGO (Solana-compatible) chain access for the faucet.

Reads go straight to the JSON-RPC endpoint with requests; transactions are
built and signed locally with solders and submitted via sendTransaction.

Two failure types leave this module:
  - RpcUnavailable: a read could not be answered (caller must not reserve)
  - TransferFailed: a transfer was not confirmed (caller finalizes as failed)
"""
from __future__ import annotations

import base64
import json
import logging
import re
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Any, Callable, Dict, List, Optional

import requests
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer as system_transfer
from solders.transaction import Transaction

from faucet_settings import FaucetSettings

log = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")

LAMPORTS_PER_FOGO = Decimal(10 ** 9)
SIGNATURE_SCAN_LIMIT = 1000

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdzUsd4Yh3ZX7MrSmUMa7jvKPUZ5Q9dy8Y")

# spl-token instruction tags
_TRANSFER_CHECKED = 12
_ATA_CREATE_IDEMPOTENT = 1

OnSubmitted = Callable[[str], None]


class RpcUnavailable(RuntimeError):
    pass


class TransferFailed(RuntimeError):
    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature


@dataclass(frozen=True)
class DualBalance:
    eligible: bool
    native_amount: Decimal
    secondary_amount: Decimal
    total: Decimal
    exceeded_type: Optional[str] = None  # "native" | "spl"


def is_valid_address(address: str) -> bool:
    return bool(address) and bool(ADDRESS_RE.match(address))


def load_keypair(raw: str) -> Keypair:
    """Faucet key as base58 or as a JSON array of 64 byte values."""
    raw = (raw or "").strip()
    if raw.startswith("["):
        values = json.loads(raw)
        if not isinstance(values, list) or len(values) != 64:
            raise ValueError("PRIVATE_KEY array must contain 64 numbers")
        return Keypair.from_bytes(bytes(int(v) for v in values))
    return Keypair.from_base58_string(raw)


def associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    ata, _bump = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return ata


def create_ata_idempotent_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey, token_program: Pubkey) -> Instruction:
    ata = associated_token_address(owner, mint, token_program)
    accounts = [
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(ata, is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=False, is_writable=False),
        AccountMeta(mint, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(token_program, is_signer=False, is_writable=False),
    ]
    return Instruction(ASSOCIATED_TOKEN_PROGRAM_ID, bytes([_ATA_CREATE_IDEMPOTENT]), accounts)


def transfer_checked_ix(
    source: Pubkey,
    mint: Pubkey,
    dest: Pubkey,
    owner: Pubkey,
    amount: int,
    decimals: int,
    token_program: Pubkey,
) -> Instruction:
    data = bytes([_TRANSFER_CHECKED]) + int(amount).to_bytes(8, "little") + bytes([decimals])
    accounts = [
        AccountMeta(source, is_signer=False, is_writable=True),
        AccountMeta(mint, is_signer=False, is_writable=False),
        AccountMeta(dest, is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=True, is_writable=False),
    ]
    return Instruction(token_program, data, accounts)


class SolanaGateway:
    def __init__(self, settings: FaucetSettings):
        self.rpc_url = settings.rpc_url
        self.timeout = settings.rpc_timeout_sec
        self.confirm_timeout = settings.transfer_confirm_timeout_sec
        self.spl_fogo_mint = settings.spl_fogo_mint
        self.bonus_token_mint = settings.bonus_token_mint
        self._private_key = settings.private_key
        self._keypair: Optional[Keypair] = None
        self._mint_info: Dict[str, Dict[str, Any]] = {}

    # ---------------------------
    # JSON-RPC
    # ---------------------------
    def rpc_call(self, method: str, params: list) -> Any:
        """
        Call the RPC endpoint; JSON-RPC errors and transport failures both
        surface as RpcUnavailable with the node's message.
        """
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            r = requests.post(self.rpc_url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise RpcUnavailable(f"rpc {method} failed: {e}")

        try:
            j = r.json()
        except ValueError:
            raise RpcUnavailable(f"rpc {method} http {r.status_code}: {(r.text or '').strip()[:300]}")

        if isinstance(j, dict) and j.get("error"):
            err = j.get("error")
            if isinstance(err, dict):
                raise RpcUnavailable(f"rpc error {err.get('code')}: {err.get('message')}")
            raise RpcUnavailable(f"rpc error: {err}")
        if r.status_code >= 400 or not isinstance(j, dict):
            raise RpcUnavailable(f"rpc {method} http {r.status_code}: {(r.text or '').strip()[:300]}")
        return j.get("result")

    # ---------------------------
    # Reads
    # ---------------------------
    def get_transaction_count(self, address: str) -> int:
        """Recent signature count (capped at 1000), used as the activity signal."""
        result = self.rpc_call("getSignaturesForAddress", [address, {"limit": SIGNATURE_SCAN_LIMIT}])
        return len(result or [])

    def get_wallet_balance(self, address: str) -> Decimal:
        result = self.rpc_call("getBalance", [address, {"commitment": "confirmed"}])
        lamports = int((result or {}).get("value") or 0)
        return Decimal(lamports) / LAMPORTS_PER_FOGO

    def get_token_balance(self, address: str, mint: str) -> Decimal:
        result = self.rpc_call(
            "getTokenAccountsByOwner",
            [address, {"mint": mint}, {"encoding": "jsonParsed", "commitment": "confirmed"}],
        )
        total = Decimal("0")
        for acc in (result or {}).get("value") or []:
            try:
                info = acc["account"]["data"]["parsed"]["info"]["tokenAmount"]
                total += Decimal(str(info.get("uiAmountString") or "0"))
            except (KeyError, TypeError):
                log.warning("[rpc] unparsed token account for %s: %s", address, acc.get("pubkey"))
        return total

    def check_dual_balance(self, address: str, ceiling: Decimal) -> DualBalance:
        """Native FOGO and SPL FOGO must each stay at or under the ceiling."""
        native = self.get_wallet_balance(address)
        spl = self.get_token_balance(address, self.spl_fogo_mint) if self.spl_fogo_mint else Decimal("0")

        exceeded: Optional[str] = None
        if native > ceiling:
            exceeded = "native"
        elif spl > ceiling:
            exceeded = "spl"
        return DualBalance(
            eligible=exceeded is None,
            native_amount=native,
            secondary_amount=spl,
            total=native + spl,
            exceeded_type=exceeded,
        )

    def get_signature_status(self, signature: str) -> Optional[str]:
        """'confirmed', 'failed', or None while unknown / not yet confirmed."""
        result = self.rpc_call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        values = (result or {}).get("value") or [None]
        status = values[0]
        if not status:
            return None
        if status.get("err"):
            return "failed"
        if status.get("confirmationStatus") in ("confirmed", "finalized"):
            return "confirmed"
        return None

    @property
    def keypair(self) -> Keypair:
        if self._keypair is None:
            if not self._private_key:
                raise TransferFailed("faucet keypair not configured (PRIVATE_KEY)")
            try:
                self._keypair = load_keypair(self._private_key)
            except ValueError as e:
                raise TransferFailed(f"invalid PRIVATE_KEY: {e}")
        return self._keypair

    @property
    def faucet_address(self) -> str:
        return str(self.keypair.pubkey())

    def get_faucet_balance(self) -> Decimal:
        return self.get_wallet_balance(self.faucet_address)

    def health_check(self) -> Dict[str, Any]:
        try:
            self.rpc_call("getHealth", [])
            self.get_faucet_balance()
            return {"isReady": True}
        except (RpcUnavailable, TransferFailed) as e:
            return {"isReady": False, "error": str(e)}

    # ---------------------------
    # Transfers
    # ---------------------------
    def transfer(self, address: str, amount: Decimal, on_submitted: Optional[OnSubmitted] = None) -> str:
        """Send native FOGO and wait for confirmation. Returns the signature."""
        lamports = int((Decimal(amount) * LAMPORTS_PER_FOGO).to_integral_value(rounding=ROUND_DOWN))
        if lamports <= 0:
            raise TransferFailed(f"amount must be > 0 (got {amount})")

        kp = self.keypair
        try:
            to = Pubkey.from_string(address)
        except ValueError:
            raise TransferFailed(f"invalid recipient {address}")

        ix = system_transfer(TransferParams(from_pubkey=kp.pubkey(), to_pubkey=to, lamports=lamports))
        sig = self._send_and_confirm([ix], on_submitted)
        log.info("[rpc] sent %s FOGO to %s tx=%s", amount, address, sig)
        return sig

    def transfer_bonus(self, address: str, amount: Decimal, on_submitted: Optional[OnSubmitted] = None) -> str:
        """SPL transfer of the bonus token; creates the recipient's token account if missing."""
        if not self.bonus_token_mint:
            raise TransferFailed("bonus token mint not configured")

        kp = self.keypair
        try:
            owner = Pubkey.from_string(address)
            mint = Pubkey.from_string(self.bonus_token_mint)
        except ValueError as e:
            raise TransferFailed(f"invalid bonus transfer address: {e}")

        try:
            info = self._load_mint_info(self.bonus_token_mint)
        except RpcUnavailable as e:
            raise TransferFailed(str(e))
        decimals = int(info["decimals"])
        token_program = info["program"]
        base_units = int((Decimal(amount) * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))
        if base_units <= 0:
            raise TransferFailed(f"bonus amount must be > 0 (got {amount})")

        source = associated_token_address(kp.pubkey(), mint, token_program)
        dest = associated_token_address(owner, mint, token_program)
        ixs = [
            create_ata_idempotent_ix(kp.pubkey(), owner, mint, token_program),
            transfer_checked_ix(source, mint, dest, kp.pubkey(), base_units, decimals, token_program),
        ]
        sig = self._send_and_confirm(ixs, on_submitted)
        log.info("[rpc] sent %s bonus to %s tx=%s", amount, address, sig)
        return sig

    def _load_mint_info(self, mint: str) -> Dict[str, Any]:
        cached = self._mint_info.get(mint)
        if cached:
            return cached
        supply = self.rpc_call("getTokenSupply", [mint])
        account = self.rpc_call("getAccountInfo", [mint, {"encoding": "base64"}])
        owner = ((account or {}).get("value") or {}).get("owner")
        info = {
            "decimals": int(((supply or {}).get("value") or {}).get("decimals") or 0),
            "program": Pubkey.from_string(owner) if owner else TOKEN_PROGRAM_ID,
        }
        self._mint_info[mint] = info
        return info

    def _send_and_confirm(self, instructions: List[Instruction], on_submitted: Optional[OnSubmitted]) -> str:
        kp = self.keypair
        try:
            latest = self.rpc_call("getLatestBlockhash", [{"commitment": "confirmed"}])
            blockhash = Hash.from_string(latest["value"]["blockhash"])
            tx = Transaction([kp], Message(instructions, kp.pubkey()), blockhash)
            encoded = base64.b64encode(bytes(tx)).decode("ascii")
            sig = self.rpc_call(
                "sendTransaction",
                [encoded, {"encoding": "base64", "preflightCommitment": "confirmed"}],
            )
        except (RpcUnavailable, KeyError, TypeError) as e:
            raise TransferFailed(f"submit failed: {e}")

        sig = str(sig or tx.signatures[0])
        if on_submitted is not None:
            # the transaction is already broadcast; callback errors must not read as a failed transfer
            try:
                on_submitted(sig)
            except Exception:
                log.exception("[rpc] on_submitted callback failed tx=%s", sig)
        self._wait_confirmed(sig)
        return sig

    def _wait_confirmed(self, signature: str) -> None:
        deadline = time.monotonic() + self.confirm_timeout
        while True:
            try:
                status = self.get_signature_status(signature)
            except RpcUnavailable as e:
                log.warning("[rpc] status poll failed for %s: %s", signature, e)
                status = None
            if status == "confirmed":
                return
            if status == "failed":
                raise TransferFailed(f"transaction {signature} failed on chain", signature=signature)
            if time.monotonic() >= deadline:
                raise TransferFailed(f"transaction {signature} not confirmed in {self.confirm_timeout:.0f}s",
                                     signature=signature)
            time.sleep(1.0)
