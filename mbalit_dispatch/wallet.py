# mbalit-dispatch/mbalit_dispatch/wallet.py
"""Collector wallet: credited when a pickup completes, drained by withdrawals."""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from . import config, utils

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WalletTransaction:
    """
    One ledger line. `balance_after` is the running balance.

    Withdrawals are stored with a negative `amount` and kind "withdraw".
    """
    collector_id: str
    amount: float
    description: str
    balance_after: float
    created_at: datetime
    reference: Optional[str] = None
    kind: str = "credit"
    payment_method: Optional[str] = None
    phone_number: Optional[str] = None


class Wallet(ABC):
    """Persistence contract for collector earnings."""

    @abstractmethod
    def credit(
        self,
        collector_id: str,
        amount: float,
        description: str,
        reference: Optional[str] = None,
    ) -> None:
        """Add `amount` to the collector's balance."""

    @abstractmethod
    def withdraw(
        self,
        collector_id: str,
        amount: float,
        method: str,
        phone: str,
    ) -> WalletTransaction:
        """
        Pay `amount` out of the collector's balance to a mobile-money account.

        Returns:
            The withdrawal ledger line; its `reference` is the transaction id

        Raises:
            ValueError: No wallet yet, amount above the balance, or amount
                below config.MIN_WITHDRAWAL_AMOUNT
        """

    @abstractmethod
    def balance(self, collector_id: str) -> float:
        """Current balance, 0 for a collector with no wallet yet."""

    @abstractmethod
    def transactions(self, collector_id: str, limit: int = 20) -> List[WalletTransaction]:
        """Most recent transactions first."""


class InMemoryWallet(Wallet):
    """Thread-safe in-memory wallet ledger in config.CURRENCY."""

    def __init__(self, clock: Callable[[], datetime] = utils.utc_now) -> None:
        self._clock = clock
        self._balances: Dict[str, float] = {}
        self._ledger: Dict[str, List[WalletTransaction]] = {}
        self._lock = threading.Lock()

    def credit(
        self,
        collector_id: str,
        amount: float,
        description: str,
        reference: Optional[str] = None,
    ) -> None:
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")
        with self._lock:
            new_balance = self._balances.get(collector_id, 0.0) + amount
            self._balances[collector_id] = new_balance
            self._ledger.setdefault(collector_id, []).append(WalletTransaction(
                collector_id=collector_id,
                amount=amount,
                description=description,
                balance_after=new_balance,
                created_at=self._clock(),
                reference=reference,
            ))
        logger.info(f"Credited {config.CURRENCY} {amount:.2f} to {collector_id} ({description})")

    def withdraw(
        self,
        collector_id: str,
        amount: float,
        method: str,
        phone: str,
    ) -> WalletTransaction:
        with self._lock:
            if collector_id not in self._balances:
                raise ValueError(f"Wallet not found for {collector_id}")
            current = self._balances[collector_id]
            if amount > current:
                raise ValueError(
                    f"Insufficient balance: {collector_id} has {config.CURRENCY} {current:.2f}, "
                    f"asked for {amount:.2f}"
                )
            if amount < config.MIN_WITHDRAWAL_AMOUNT:
                raise ValueError(
                    f"Minimum withdrawal is {config.MIN_WITHDRAWAL_AMOUNT:.0f} {config.CURRENCY}"
                )

            new_balance = current - amount
            self._balances[collector_id] = new_balance
            transaction = WalletTransaction(
                collector_id=collector_id,
                amount=-amount,
                description=f"Withdrawal to {method} ({phone})",
                balance_after=new_balance,
                created_at=self._clock(),
                reference=uuid.uuid4().hex,
                kind="withdraw",
                payment_method=method,
                phone_number=phone,
            )
            self._ledger[collector_id].append(transaction)

        logger.info(f"Withdrew {config.CURRENCY} {amount:.2f} from {collector_id} via {method}")
        return transaction

    def balance(self, collector_id: str) -> float:
        with self._lock:
            return self._balances.get(collector_id, 0.0)

    def transactions(self, collector_id: str, limit: int = 20) -> List[WalletTransaction]:
        with self._lock:
            ledger = list(self._ledger.get(collector_id, []))
        return list(reversed(ledger))[:limit]
