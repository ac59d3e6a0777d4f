"""Tests for the in-memory wallet ledger."""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from mbalit_dispatch import config
from mbalit_dispatch.wallet import InMemoryWallet


def test_credit_updates_balance_and_history(wallet, clock):
    wallet.credit("C1", 100.0, "Pickup J1", reference="J1")
    clock.advance(60)
    wallet.credit("C1", 50.0, "Pickup J2", reference="J2")

    assert wallet.balance("C1") == 150.0
    newest, oldest = wallet.transactions("C1")
    assert newest.reference == "J2"
    assert newest.balance_after == 150.0
    assert oldest.balance_after == 100.0
    assert newest.created_at > oldest.created_at
    assert newest.kind == "credit"


def test_unknown_collector_has_empty_wallet():
    wallet = InMemoryWallet()
    assert wallet.balance("C9") == 0.0
    assert wallet.transactions("C9") == []


@pytest.mark.parametrize("amount", [0, -10.0])
def test_non_positive_credit_rejected(wallet, amount):
    with pytest.raises(ValueError):
        wallet.credit("C1", amount, "bad")
    assert wallet.balance("C1") == 0.0


def test_transactions_limit(wallet):
    for i in range(5):
        wallet.credit("C1", 10.0, f"Pickup J{i}")
    assert len(wallet.transactions("C1", limit=3)) == 3


def test_withdraw_records_negative_line(wallet, clock):
    wallet.credit("C1", 300.0, "Pickup J1", reference="J1")
    clock.advance(60)

    line = wallet.withdraw("C1", 120.0, "wave", "+2207001234")

    assert wallet.balance("C1") == 180.0
    assert line.kind == "withdraw"
    assert line.amount == -120.0
    assert line.balance_after == 180.0
    assert line.description == "Withdrawal to wave (+2207001234)"
    assert line.payment_method == "wave"
    assert line.phone_number == "+2207001234"
    assert line.reference
    assert line.created_at == clock.now
    assert wallet.transactions("C1")[0] == line


def test_withdraw_whole_balance(wallet):
    wallet.credit("C1", 75.0, "Pickup J1")
    wallet.withdraw("C1", 75.0, "afrimoney", "+2203001234")
    assert wallet.balance("C1") == 0.0


def test_withdraw_without_wallet_rejected(wallet):
    with pytest.raises(ValueError, match="not found"):
        wallet.withdraw("C9", 100.0, "wave", "+2207001234")
    assert wallet.transactions("C9") == []


def test_withdraw_more_than_balance_rejected(wallet):
    wallet.credit("C1", 100.0, "Pickup J1")

    with pytest.raises(ValueError, match="Insufficient balance"):
        wallet.withdraw("C1", 100.01, "wave", "+2207001234")

    assert wallet.balance("C1") == 100.0
    assert len(wallet.transactions("C1")) == 1


@pytest.mark.parametrize("amount", [49.99, 10.0, 0.0])
def test_withdraw_below_minimum_rejected(wallet, amount):
    wallet.credit("C1", 500.0, "Pickup J1")

    with pytest.raises(ValueError, match="Minimum withdrawal"):
        wallet.withdraw("C1", amount, "wave", "+2207001234")

    assert wallet.balance("C1") == 500.0
    assert config.MIN_WITHDRAWAL_AMOUNT == 50.0


def test_concurrent_withdrawals_never_overdraw(wallet):
    wallet.credit("C1", 200.0, "Pickup J1")
    barrier = threading.Barrier(6)

    def withdraw(_):
        barrier.wait()
        try:
            wallet.withdraw("C1", 50.0, "wave", "+2207001234")
            return True
        except ValueError:
            return False

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(withdraw, range(6)))

    assert results.count(True) == 4
    assert wallet.balance("C1") == 0.0
