from decimal import Decimal

import pytest

from eligibility import (
    REASON_ACTIVITY,
    REASON_BALANCE,
    REASON_POOL,
    evaluate,
    fmt_amount,
    from_units,
    tier_amount,
    to_units,
)
from faucet_settings import FaucetSettings, load_settings, parse_tiers

TIERS = FaucetSettings().tiers
CEILING = Decimal("10")
LIMIT = Decimal("300")


@pytest.mark.parametrize(
    "count,expected",
    [
        (0, "0"),
        (49, "0"),
        (50, "0.2"),
        (159, "0.2"),
        (160, "0.5"),
        (399, "0.5"),
        (400, "1.0"),
        (999, "1.0"),
        (1000, "1.5"),
        (1499, "1.5"),
        (1500, "2.0"),
        (2999, "2.0"),
        (3000, "3.0"),
        (250000, "3.0"),
    ],
)
def test_tier_brackets(count, expected):
    assert tier_amount(count, TIERS) == Decimal(expected)


def test_tier_amount_is_monotonic():
    prev = Decimal("0")
    for count in range(0, 5000, 7):
        cur = tier_amount(count, TIERS)
        assert cur >= prev
        prev = cur


def test_balance_ceiling_is_inclusive():
    assert evaluate(450, Decimal("10"), TIERS, CEILING, LIMIT, Decimal("0")).eligible
    res = evaluate(450, Decimal("10.00000001"), TIERS, CEILING, LIMIT, Decimal("0"))
    assert not res.eligible
    assert res.reason == REASON_BALANCE
    assert res.amount == 0


def test_balance_rule_checked_before_activity():
    res = evaluate(3, Decimal("50"), TIERS, CEILING, LIMIT, Decimal("0"))
    assert res.reason == REASON_BALANCE


def test_insufficient_activity():
    res = evaluate(49, Decimal("0"), TIERS, CEILING, LIMIT, Decimal("0"))
    assert not res.eligible
    assert res.reason == REASON_ACTIVITY


def test_happy_path_amount():
    res = evaluate(450, Decimal("2"), TIERS, CEILING, LIMIT, Decimal("0"))
    assert res.eligible
    assert res.amount == Decimal("1.0")


def test_award_capped_by_remaining_pool():
    res = evaluate(3000, Decimal("0"), TIERS, CEILING, LIMIT, Decimal("299.6"))
    assert res.eligible
    assert res.amount == Decimal("0.4")


def test_pool_exhausted():
    res = evaluate(3000, Decimal("0"), TIERS, CEILING, LIMIT, Decimal("300"))
    assert not res.eligible
    assert res.reason == REASON_POOL


def test_units_conversion():
    assert to_units(Decimal("0.2")) == 20000000
    assert to_units(Decimal("0.123456789")) == 12345678
    assert from_units(150000000) == Decimal("1.5")
    assert fmt_amount(Decimal("0.5")) == "0.50000000"


def test_parse_tiers_rejects_bad_tables():
    with pytest.raises(ValueError):
        parse_tiers("160:0.5,50:0.2")
    with pytest.raises(ValueError):
        parse_tiers("50:1.0,160:0.5")
    with pytest.raises(ValueError):
        parse_tiers("50-0.2")
    with pytest.raises(ValueError):
        parse_tiers("")


def test_parse_tiers_custom():
    tiers = parse_tiers(" 10:0.1 , 20:0.3 ")
    assert [t.threshold for t in tiers] == [10, 20]
    assert tiers[1].amount == Decimal("0.3")


def test_load_settings_defaults():
    s = load_settings({})
    assert s.daily_pool_limit == Decimal("300")
    assert s.min_transaction_count == 50
    assert s.cooldown_sec == 86400
    assert not s.bonus_enabled
    assert s.cors_origins == ("*",)


def test_load_settings_overrides():
    s = load_settings({
        "DAILY_POOL_LIMIT": "50",
        "BONUS_TOKEN_MINT": "Mint111",
        "FOGO_TO_BONUS": "0.5",
        "CORS_ORIGINS": "https://a.example, https://b.example",
        "SOLANA_RPC_URL": "http://localhost:8899",
    })
    assert s.daily_pool_limit == Decimal("50")
    assert s.bonus_enabled
    assert s.bonus_rate == Decimal("0.5")
    assert s.cors_origins == ("https://a.example", "https://b.example")
    assert s.rpc_url == "http://localhost:8899"


@pytest.mark.parametrize("key,value", [("DAILY_POOL_LIMIT", "0"), ("FOGO_TO_BONUS", "-1"), ("BALANCE_CEILING", "abc")])
def test_load_settings_rejects_invalid(key, value):
    with pytest.raises(ValueError):
        load_settings({key: value})


def test_balance_of_fifteen_is_ineligible():
    res = evaluate(450, Decimal("15"), TIERS, CEILING, LIMIT, Decimal("0"))
    assert not res.eligible
    assert res.reason == REASON_BALANCE


def test_load_settings_eligibility_workers():
    assert load_settings({}).eligibility_workers == 16
    assert load_settings({"ELIGIBILITY_WORKERS": "4"}).eligibility_workers == 4
    assert load_settings({"ELIGIBILITY_WORKERS": "0"}).eligibility_workers == 1
