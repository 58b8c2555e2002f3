from __future__ import annotations

import pytest

from finance_engine.ledger.classifier import Kind, classify_transaction
from finance_engine.ledger.models import Direction, SourceCategory
from tests.conftest import make_tx, ts


@pytest.mark.parametrize(
    "tx_type,category",
    [
        ("chat-spend", SourceCategory.CHAT),
        ("call-spend", SourceCategory.CALLS),
        ("calendar-booking", SourceCategory.CALENDAR),
        ("event-ticket", SourceCategory.EVENTS),
    ],
)
def test_monetized_types_credit_is_earning_and_debit_is_spend(tx_type, category):
    earn = classify_transaction(make_tx("t1", "creator", tx_type, "IN", 100, ts(2025, 1)))
    spend = classify_transaction(make_tx("t2", "payer", tx_type, "OUT", 100, ts(2025, 1)))

    assert earn.kind == Kind.EARNING
    assert earn.category == category
    assert earn.is_creator_earning
    assert spend.kind == Kind.SPEND
    assert spend.category == category
    assert not spend.is_creator_earning


def test_refund_types_keep_direction():
    clawback = classify_transaction(make_tx("r1", "creator", "calendar-refund", "OUT", 40, ts(2025, 1)))
    returned = classify_transaction(make_tx("r2", "payer", "event-refund", "IN", 40, ts(2025, 1)))

    assert clawback.kind == Kind.REFUND and clawback.category == SourceCategory.CALENDAR
    assert clawback.is_creator_refund
    assert returned.kind == Kind.REFUND and returned.category == SourceCategory.EVENTS
    assert returned.direction == Direction.IN
    assert not returned.is_creator_refund


def test_purchase_and_payout():
    assert classify_transaction(make_tx("p", "u", "purchase", "IN", 100, ts(2025, 1))).kind == Kind.PURCHASE
    assert classify_transaction(make_tx("w", "u", "payout", "OUT", 30, ts(2025, 1))).kind == Kind.PAYOUT


def test_other_type_positive_credit_is_other_earning():
    c = classify_transaction(make_tx("o", "u", "other", "IN", 5, ts(2025, 1)))
    assert c.kind == Kind.EARNING and c.category == SourceCategory.OTHER

    assert classify_transaction(make_tx("o2", "u", "other", "OUT", 5, ts(2025, 1))).kind == Kind.UNCLASSIFIED
    assert classify_transaction(make_tx("o3", "u", "other", "IN", 0, ts(2025, 1))).kind == Kind.UNCLASSIFIED


def test_unknown_type_with_hint_uses_substring_match_on_source():
    c = classify_transaction(make_tx("x1", "u", "minute", "IN", 10, ts(2025, 1), source="video_call"))
    assert c.kind == Kind.EARNING and c.category == SourceCategory.CALLS

    c = classify_transaction(make_tx("x2", "u", "tip", "IN", 10, ts(2025, 1), source="chat"))
    assert c.kind == Kind.EARNING and c.category == SourceCategory.CHAT

    c = classify_transaction(make_tx("x3", "u", "adjustment", "OUT", 10, ts(2025, 1), source="ticket_chargeback"))
    assert c.kind == Kind.REFUND and c.category == SourceCategory.EVENTS

    c = classify_transaction(make_tx("x4", "u", "credit", "IN", 10, ts(2025, 1), source="token_topup"))
    assert c.kind == Kind.PURCHASE
    c = classify_transaction(make_tx("x5", "u", "debit", "OUT", 10, ts(2025, 1), source="withdrawal"))
    assert c.kind == Kind.PAYOUT


def test_unknown_type_string_alone_never_selects_a_bucket():
    for raw in ("video_call_minute", "ticket_chargeback", "token_topup", "withdrawal", "chat_tip"):
        c = classify_transaction(make_tx("x", "u", raw, "IN", 10, ts(2025, 1)))
        assert c.kind == Kind.UNCLASSIFIED, raw


def test_unknown_type_with_unmatched_hint_is_other_earning_only_for_positive_credit():
    c = classify_transaction(make_tx("y1", "u", "gift", "IN", 10, ts(2025, 1), source="profile"))
    assert c.kind == Kind.EARNING and c.category == SourceCategory.OTHER

    c = classify_transaction(make_tx("y2", "u", "gift", "OUT", 10, ts(2025, 1), source="profile"))
    assert c.kind == Kind.UNCLASSIFIED


def test_unknown_type_without_hint_is_unclassified():
    assert classify_transaction(make_tx("z1", "u", "mystery", "IN", 10, ts(2025, 1))).kind == Kind.UNCLASSIFIED
    assert classify_transaction(make_tx("z2", "u", None, "IN", 10, ts(2025, 1))).kind == Kind.UNCLASSIFIED


def test_type_parsing_accepts_snake_case_and_case_variants():
    c = classify_transaction(make_tx("s1", "u", "CHAT_SPEND", "IN", 10, ts(2025, 1)))
    assert c.kind == Kind.EARNING and c.category == SourceCategory.CHAT
