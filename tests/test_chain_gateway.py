import base64
import json
from dataclasses import replace
from decimal import Decimal
from unittest import mock

import pytest
import requests
from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction import Transaction

import chain_gateway
from chain_gateway import (
    RpcUnavailable,
    SolanaGateway,
    TransferFailed,
    is_valid_address,
    load_keypair,
    transfer_checked_ix,
)
from conftest import WALLET_A


def rpc_response(result=None, error=None, status=200):
    body = {"jsonrpc": "2.0", "id": 1}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    resp = mock.Mock()
    resp.status_code = status
    resp.json.return_value = body
    resp.text = json.dumps(body)
    return resp


def sent_methods(post):
    return [c.kwargs["json"]["method"] for c in post.call_args_list]


@pytest.fixture
def keypair():
    return Keypair()


@pytest.fixture
def gw(settings, keypair):
    return SolanaGateway(replace(settings, private_key=str(keypair), transfer_confirm_timeout_sec=5))


def test_address_validation():
    assert is_valid_address(WALLET_A)
    assert is_valid_address("11111111111111111111111111111111")
    assert not is_valid_address("0x52908400098527886E0F7030069857D2E4169EE7")
    assert not is_valid_address("short")
    assert not is_valid_address("")


def test_load_keypair_formats(keypair):
    assert load_keypair(str(keypair)).pubkey() == keypair.pubkey()
    as_json = json.dumps(list(bytes(keypair)))
    assert load_keypair(as_json).pubkey() == keypair.pubkey()
    with pytest.raises(ValueError):
        load_keypair("[1, 2, 3]")


def test_transaction_count(gw):
    with mock.patch.object(chain_gateway.requests, "post", return_value=rpc_response([{}, {}, {}])) as post:
        assert gw.get_transaction_count(WALLET_A) == 3
    params = post.call_args.kwargs["json"]["params"]
    assert params == [WALLET_A, {"limit": 1000}]


def test_wallet_balance_in_fogo(gw):
    with mock.patch.object(chain_gateway.requests, "post", return_value=rpc_response({"value": 2500000000})):
        assert gw.get_wallet_balance(WALLET_A) == Decimal("2.5")


def test_dual_balance_flags_spl(gw):
    token_accounts = {
        "value": [
            {"pubkey": "acc1", "account": {"data": {"parsed": {"info": {"tokenAmount": {"uiAmountString": "6"}}}}}},
            {"pubkey": "acc2", "account": {"data": {"parsed": {"info": {"tokenAmount": {"uiAmountString": "5.5"}}}}}},
        ]
    }
    responses = [rpc_response({"value": 1000000000}), rpc_response(token_accounts)]
    with mock.patch.object(chain_gateway.requests, "post", side_effect=responses) as post:
        dual = gw.check_dual_balance(WALLET_A, Decimal("10"))

    assert sent_methods(post) == ["getBalance", "getTokenAccountsByOwner"]
    assert not dual.eligible
    assert dual.exceeded_type == "spl"
    assert dual.native_amount == Decimal("1")
    assert dual.secondary_amount == Decimal("11.5")
    assert dual.total == Decimal("12.5")


def test_rpc_error_raises_unavailable(gw):
    err = rpc_response(error={"code": -32005, "message": "Node is behind"}, status=500)
    with mock.patch.object(chain_gateway.requests, "post", return_value=err):
        with pytest.raises(RpcUnavailable, match="Node is behind"):
            gw.get_transaction_count(WALLET_A)

    with mock.patch.object(chain_gateway.requests, "post", side_effect=requests.ConnectionError("refused")):
        with pytest.raises(RpcUnavailable):
            gw.get_wallet_balance(WALLET_A)


@pytest.mark.parametrize(
    "value,expected",
    [
        ([{"err": None, "confirmationStatus": "finalized"}], "confirmed"),
        ([{"err": None, "confirmationStatus": "confirmed"}], "confirmed"),
        ([{"err": None, "confirmationStatus": "processed"}], None),
        ([{"err": {"InstructionError": [0, "Custom"]}, "confirmationStatus": "confirmed"}], "failed"),
        ([None], None),
    ],
)
def test_signature_status(gw, value, expected):
    with mock.patch.object(chain_gateway.requests, "post", return_value=rpc_response({"value": value})):
        assert gw.get_signature_status("sig") == expected


def test_transfer_submits_and_confirms(gw, keypair):
    recipient = str(Keypair().pubkey())
    responses = [
        rpc_response({"value": {"blockhash": str(Hash.default()), "lastValidBlockHeight": 10}}),
        rpc_response("SIGNATURE"),
        rpc_response({"value": [{"err": None, "confirmationStatus": "confirmed"}]}),
    ]
    seen = []
    with mock.patch.object(chain_gateway.requests, "post", side_effect=responses) as post:
        sig = gw.transfer(recipient, Decimal("0.5"), on_submitted=seen.append)

    assert sig == "SIGNATURE"
    assert seen == ["SIGNATURE"]
    assert sent_methods(post) == ["getLatestBlockhash", "sendTransaction", "getSignatureStatuses"]

    encoded = post.call_args_list[1].kwargs["json"]["params"][0]
    tx = Transaction.from_bytes(base64.b64decode(encoded))
    assert tx.message.account_keys[0] == keypair.pubkey()
    assert str(tx.message.account_keys[1]) == recipient


def test_transfer_failed_on_chain(gw):
    recipient = str(Keypair().pubkey())
    responses = [
        rpc_response({"value": {"blockhash": str(Hash.default()), "lastValidBlockHeight": 10}}),
        rpc_response("SIG2"),
        rpc_response({"value": [{"err": {"InsufficientFundsForRent": {}}, "confirmationStatus": "processed"}]}),
    ]
    with mock.patch.object(chain_gateway.requests, "post", side_effect=responses):
        with pytest.raises(TransferFailed) as exc:
            gw.transfer(recipient, Decimal("1"))
    assert exc.value.signature == "SIG2"


def test_transfer_submit_error(gw):
    with mock.patch.object(chain_gateway.requests, "post", side_effect=requests.Timeout("slow")):
        with pytest.raises(TransferFailed):
            gw.transfer(str(Keypair().pubkey()), Decimal("1"))


def test_transfer_requires_key(settings):
    gw = SolanaGateway(settings)
    with pytest.raises(TransferFailed, match="PRIVATE_KEY"):
        gw.transfer(WALLET_A, Decimal("1"))


def test_bonus_transfer_builds_ata_and_transfer_checked(gw, settings, keypair):
    mint = str(Keypair().pubkey())
    gw.bonus_token_mint = mint
    recipient = str(Keypair().pubkey())
    responses = [
        rpc_response({"value": {"amount": "1000", "decimals": 6, "uiAmountString": "0.001"}}),
        rpc_response({"value": {"owner": str(chain_gateway.TOKEN_PROGRAM_ID), "data": ["", "base64"]}}),
        rpc_response({"value": {"blockhash": str(Hash.default()), "lastValidBlockHeight": 10}}),
        rpc_response("BONUSSIG"),
        rpc_response({"value": [{"err": None, "confirmationStatus": "finalized"}]}),
    ]
    with mock.patch.object(chain_gateway.requests, "post", side_effect=responses) as post:
        assert gw.transfer_bonus(recipient, Decimal("1.25")) == "BONUSSIG"

    assert sent_methods(post) == [
        "getTokenSupply", "getAccountInfo", "getLatestBlockhash", "sendTransaction", "getSignatureStatuses",
    ]
    tx = Transaction.from_bytes(base64.b64decode(post.call_args_list[3].kwargs["json"]["params"][0]))
    assert len(tx.message.instructions) == 2
    data = bytes(tx.message.instructions[1].data)
    assert data[0] == 12
    assert int.from_bytes(data[1:9], "little") == 1250000
    assert data[9] == 6


def test_transfer_checked_layout():
    a, b, c, d = (Keypair().pubkey() for _ in range(4))
    ix = transfer_checked_ix(a, b, c, d, 42, 9, chain_gateway.TOKEN_PROGRAM_ID)
    assert bytes(ix.data) == bytes([12]) + (42).to_bytes(8, "little") + bytes([9])
    assert [m.is_signer for m in ix.accounts] == [False, False, False, True]


def test_health_check(gw):
    responses = [rpc_response("ok"), rpc_response({"value": 5})]
    with mock.patch.object(chain_gateway.requests, "post", side_effect=responses):
        assert gw.health_check() == {"isReady": True}
    with mock.patch.object(chain_gateway.requests, "post", side_effect=requests.ConnectionError("down")):
        assert gw.health_check()["isReady"] is False


def test_transfer_survives_failing_submit_callback(gw):
    recipient = str(Keypair().pubkey())
    responses = [
        rpc_response({"value": {"blockhash": str(Hash.default()), "lastValidBlockHeight": 10}}),
        rpc_response("SIG3"),
        rpc_response({"value": [{"err": None, "confirmationStatus": "confirmed"}]}),
    ]

    def broken_callback(sig):
        raise RuntimeError("database is locked")

    with mock.patch.object(chain_gateway.requests, "post", side_effect=responses):
        assert gw.transfer(recipient, Decimal("1"), on_submitted=broken_callback) == "SIG3"
