import time
from dataclasses import replace
from decimal import Decimal

import pytest

from chain_gateway import DualBalance, RpcUnavailable, TransferFailed
from claim_store import connect, init_db
from faucet_settings import FaucetSettings

# 2025-06-15 15:06:40 UTC
T0 = 1750000000

WALLET_A = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
WALLET_B = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
WALLET_C = "ATokenGPvbdzUsd4Yh3ZX7MrSmUMa7jvKPUZ5Q9dy8Y"


class FakeGateway:
    """In-memory chain: fixed reads, scripted transfer outcomes."""

    def __init__(self, tx_count=200, native=Decimal("1"), spl=Decimal("0")):
        self.tx_count = tx_count
        self.native = Decimal(native)
        self.spl = Decimal(spl)
        self.fail_reads = False
        self.read_delay = 0.0
        self.fail_transfer = False
        self.fail_bonus = False
        self.transfers = []
        self.bonus_transfers = []
        self.statuses = {}
        self.faucet_balance = Decimal("123.45")

    def get_transaction_count(self, address):
        if self.read_delay:
            time.sleep(self.read_delay)
        if self.fail_reads:
            raise RpcUnavailable("rpc down")
        return self.tx_count

    def check_dual_balance(self, address, ceiling):
        if self.fail_reads:
            raise RpcUnavailable("rpc down")
        exceeded = None
        if self.native > ceiling:
            exceeded = "native"
        elif self.spl > ceiling:
            exceeded = "spl"
        return DualBalance(
            eligible=exceeded is None,
            native_amount=self.native,
            secondary_amount=self.spl,
            total=self.native + self.spl,
            exceeded_type=exceeded,
        )

    def transfer(self, address, amount, on_submitted=None):
        sig = f"sig{len(self.transfers) + 1}"
        self.transfers.append((address, amount))
        if on_submitted:
            on_submitted(sig)
        if self.fail_transfer:
            raise TransferFailed("transaction failed on chain", signature=sig)
        return sig

    def transfer_bonus(self, address, amount, on_submitted=None):
        sig = f"bonus-sig{len(self.bonus_transfers) + 1}"
        self.bonus_transfers.append((address, amount))
        if on_submitted:
            on_submitted(sig)
        if self.fail_bonus:
            raise TransferFailed("bonus transfer failed", signature=sig)
        return sig

    def get_signature_status(self, signature):
        status = self.statuses.get(signature)
        if isinstance(status, Exception):
            raise status
        return status

    def get_faucet_balance(self):
        return self.faucet_balance

    def health_check(self):
        return {"isReady": True}


@pytest.fixture
def settings(tmp_path):
    return FaucetSettings(
        db_path=str(tmp_path / "faucet.db"),
        finalize_retries=2,
        eligibility_timeout_sec=2.0,
    )


@pytest.fixture
def bonus_settings(settings):
    return replace(settings, bonus_token_mint="BonusMint1111111111111111111111111111111111", bonus_rate=Decimal("2.5"))


@pytest.fixture
def db_func(settings):
    con = connect(settings.db_path)
    init_db(con)
    con.close()
    return lambda: connect(settings.db_path)


@pytest.fixture
def con(db_func):
    c = db_func()
    yield c
    c.close()


@pytest.fixture
def gateway():
    return FakeGateway()
