"""Tests for server/payments.py -- stub and simulated wallet backends."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest
from decimal import Decimal

from server.payments import (
    MAX_AMOUNT, MAX_RAW, PaymentBackend, SimBackend, StubBackend,
    format_amount, from_raw, to_raw, RAW_PER_UNIT,
)


# --- amount helpers ---

def test_to_raw_and_back():
    assert to_raw("1") == RAW_PER_UNIT
    assert to_raw("0.3") == 3 * RAW_PER_UNIT // 10
    assert from_raw(to_raw("0.123456")) == Decimal("0.123456")


@pytest.mark.parametrize("value,expected", [
    ("1.0", "1"),
    ("100", "100"),
    ("0.30", "0.3"),
    (Decimal("2.50"), "2.5"),
    ("0", "0"),
    (Decimal("1E+2"), "100"),
])
def test_format_amount(value, expected):
    assert format_amount(value) == expected


def test_full_precision_is_not_rounded():
    amount = "0.123456789012345678901234567891"
    assert to_raw(amount) == 123456789012345678901234567891
    assert format_amount(amount) == amount
    assert format_amount(from_raw(to_raw(amount))) == amount
    assert format_amount("340282366.920938463463374607431768211455") == "340282366.920938463463374607431768211455"


def test_max_amount_is_max_raw():
    assert to_raw(MAX_AMOUNT) == MAX_RAW


def test_backend_is_abstract():
    with pytest.raises(TypeError):
        PaymentBackend()


# --- StubBackend ---

def test_stub_records_calls():
    stub = StubBackend()
    assert stub.create_custody_account(3) == "stub_custody_3"
    assert stub.collect(3, "buyer", "1.5") == "stub_collect_1"
    assert stub.send(3, "seller", "1.5") == "stub_hash_1"
    assert stub.collects == [{"deal_id": 3, "from": "buyer", "amount": "1.5"}]
    assert stub.sends == [{"deal_id": 3, "to": "seller", "amount": "1.5"}]
    assert stub.get_balance(3) == "0"


def test_stub_balance_tracks_collect_minus_send():
    stub = StubBackend()
    stub.create_custody_account(0)
    stub.collect(0, "buyer", "2")
    assert stub.get_balance(0) == "2"


# --- SimBackend ---

@pytest.fixture
def sim():
    backend = SimBackend(seed="bb" * 32)
    yield backend
    backend.close()


def test_custody_account_is_deterministic(sim):
    a = sim.create_custody_account(0)
    assert a.startswith("sim_custody_")
    assert sim.create_custody_account(0) == a
    assert sim.create_custody_account(1) != a
    assert SimBackend(seed="bb" * 32).create_custody_account(0) == a


def test_fund_and_collect(sim):
    sim.fund("buyer", "5")
    sim.create_custody_account(0)
    tx = sim.collect(0, "buyer", "1.25")
    assert len(tx) == 64
    assert sim.get_account_balance("buyer") == "3.75"
    assert sim.get_balance(0) == "1.25"


def test_collect_insufficient_balance(sim):
    sim.fund("buyer", "1")
    sim.create_custody_account(0)
    with pytest.raises(ValueError, match="Insufficient balance"):
        sim.collect(0, "buyer", "2")
    assert sim.get_account_balance("buyer") == "1"
    assert sim.get_balance(0) == "0"


def test_send_from_custody(sim):
    sim.fund("buyer", "1")
    sim.create_custody_account(7)
    sim.collect(7, "buyer", "1")
    sim.send(7, "seller", "1")
    assert sim.get_account_balance("seller") == "1"
    assert sim.get_balance(7) == "0"


def test_send_more_than_custody(sim):
    sim.fund("buyer", "1")
    sim.create_custody_account(0)
    sim.collect(0, "buyer", "1")
    with pytest.raises(ValueError, match="Insufficient balance"):
        sim.send(0, "seller", "1.5")
    assert sim.get_balance(0) == "1"


def test_send_zero_rejected(sim):
    sim.create_custody_account(0)
    with pytest.raises(ValueError, match="non-positive"):
        sim.send(0, "seller", "0")


def test_send_without_custody_account(sim):
    with pytest.raises(ValueError, match="No custody account"):
        sim.send(42, "seller", "1")


def test_unknown_custody_balance_is_zero(sim):
    assert sim.get_balance(42) == "0"


def test_transaction_log(sim):
    sim.fund("buyer", "2")
    sim.create_custody_account(0)
    sim.collect(0, "buyer", "2")
    sim.send(0, "seller", "2")
    all_txs = sim.get_transactions()
    assert [t["tx_type"] for t in all_txs] == ["fund", "collect", "send"]
    deal_txs = sim.get_transactions(0)
    assert [t["tx_type"] for t in deal_txs] == ["collect", "send"]
    assert len({t["hash"] for t in all_txs}) == 3
