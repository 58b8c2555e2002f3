from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from finance_engine.common.shutdown import SHUTDOWN_EVENT
from finance_engine.ledger.models import (
    Direction,
    PayoutRecord,
    PayoutStatus,
    TransactionType,
    UserWallet,
    WalletTransaction,
)
from finance_engine.persistence.memory_store import InMemoryFinanceStore

FIXED_NOW = datetime(2025, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


def ts(year: int, month: int, day: int = 1, hour: int = 12) -> datetime:
    return datetime(year, month, day, hour, 0, 0, tzinfo=timezone.utc)


def make_tx(
    tx_id: str,
    user_id: str,
    tx_type: Optional[str],
    direction: str,
    amount: int,
    created_at: datetime,
    *,
    source: Optional[str] = None,
    meta: Optional[dict[str, Any]] = None,
) -> WalletTransaction:
    raw = tx_type or ""
    return WalletTransaction(
        id=tx_id,
        user_id=user_id,
        type=TransactionType.parse(raw),
        raw_type=raw,
        direction=Direction(direction),
        amount=amount,
        created_at=created_at,
        source=source,
        meta=meta or {},
    )


def make_payout(
    payout_id: str,
    user_id: str,
    tokens: int,
    *,
    status: PayoutStatus = PayoutStatus.PAID,
    created_at: datetime,
    processed_at: Optional[datetime] = None,
    currency: str = "PLN",
    amount_fiat: Optional[float] = None,
) -> PayoutRecord:
    return PayoutRecord(
        id=payout_id,
        user_id=user_id,
        tokens_requested=tokens,
        amount_fiat=amount_fiat if amount_fiat is not None else round(tokens * 0.04, 2),
        currency=currency,
        status=status,
        created_at=created_at,
        processed_at=processed_at,
    )


class FixedClock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store() -> InMemoryFinanceStore:
    return InMemoryFinanceStore()


@pytest.fixture
def wallet():
    def _make(user_id: str, balance: int) -> UserWallet:
        return UserWallet(user_id=user_id, tokens_balance=balance)

    return _make


@pytest.fixture(autouse=True)
def _reset_shutdown_event():
    SHUTDOWN_EVENT.clear()
    yield
    SHUTDOWN_EVENT.clear()
