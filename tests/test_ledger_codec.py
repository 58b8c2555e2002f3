from __future__ import annotations

from datetime import datetime, timezone

from finance_engine.ledger.codec import (
    coerce_timestamp,
    payout_from_doc,
    wallet_from_doc,
    wallet_transaction_from_doc,
)
from finance_engine.ledger.models import Direction, PayoutStatus, TransactionType


def test_transaction_doc_with_mixed_field_names():
    tx = wallet_transaction_from_doc(
        "tx1",
        {
            "user_id": "u1",
            "type": "chat_spend",
            "direction": "credit",
            "tokens": 50,
            "created_at": "2025-01-05T10:00:00Z",
            "metadata": {"originalTransactionId": "tx0"},
        },
    )
    assert tx is not None
    assert tx.user_id == "u1"
    assert tx.type == TransactionType.CHAT_SPEND
    assert tx.direction == Direction.IN
    assert tx.amount == 50
    assert tx.created_at == datetime(2025, 1, 5, 10, tzinfo=timezone.utc)
    assert tx.original_transaction_id == "tx0"


def test_unknown_type_is_preserved_as_raw_type():
    tx = wallet_transaction_from_doc(
        "tx2", {"userId": "u1", "type": "gift", "direction": "IN", "amount": 5, "createdAt": 1736071200, "source": "live"}
    )
    assert tx is not None
    assert tx.type is None
    assert tx.raw_type == "gift"
    assert tx.source == "live"


def test_malformed_docs_are_skipped():
    assert wallet_transaction_from_doc("t", {"userId": "u", "direction": "IN", "amount": 5}) is None
    assert (
        wallet_transaction_from_doc(
            "t", {"userId": "u", "direction": "IN", "amount": -5, "createdAt": "2025-01-01T00:00:00+00:00"}
        )
        is None
    )
    assert (
        wallet_transaction_from_doc(
            "t", {"userId": "u", "direction": "SIDEWAYS", "amount": 5, "createdAt": "2025-01-01T00:00:00+00:00"}
        )
        is None
    )
    assert (
        wallet_transaction_from_doc(
            "t", {"userId": "u", "direction": "IN", "amount": 2.5, "createdAt": "2025-01-01T00:00:00+00:00"}
        )
        is None
    )


def test_coerce_timestamp_variants():
    assert coerce_timestamp(None) is None
    assert coerce_timestamp("not-a-date") is None
    assert coerce_timestamp(True) is None
    assert coerce_timestamp(1_736_071_200_000) == coerce_timestamp(1_736_071_200)
    naive = coerce_timestamp(datetime(2025, 1, 1))
    assert naive is not None and naive.tzinfo is not None


def test_out_of_range_epoch_is_skipped_not_raised():
    assert coerce_timestamp(1e20) is None
    assert coerce_timestamp(float("inf")) is None
    assert coerce_timestamp(float("nan")) is None
    assert wallet_transaction_from_doc("t", {"userId": "u", "direction": "IN", "amount": 5, "createdAt": 1e20}) is None


def test_wallet_and_payout_docs():
    w = wallet_from_doc("u1", {"tokensBalance": 120, "lifetimeEarned": 50})
    assert w.tokens_balance == 120 and w.lifetime_earned == 50 and w.lifetime_purchased == 0

    p = payout_from_doc(
        "p1",
        {
            "userId": "u1",
            "tokensRequested": 30,
            "amountFiatGross": "1.20",
            "currency": "pln",
            "status": "paid",
            "createdAt": "2025-01-10T00:00:00Z",
            "processedAt": "2025-01-12T00:00:00Z",
        },
    )
    assert p is not None
    assert p.status == PayoutStatus.PAID
    assert p.currency == "PLN"
    assert p.amount_fiat == 1.2
    assert p.is_paid

    assert payout_from_doc("p2", {"userId": "u1", "status": "PAID"}) is None
