from __future__ import annotations

"""
Transaction classification.

Maps a wallet transaction to a semantic bucket. Upstream producers are
heterogeneous, so this never raises: anything that cannot be placed lands in
UNCLASSIFIED and is excluded from every financial bucket.

Order of resolution:
1. exact match on the known `type` enum
2. unknown type and no `source` hint -> UNCLASSIFIED
3. substring match on the `source` hint only
4. unknown type with an unmatched hint -> EARNING(other) for positive IN, else UNCLASSIFIED
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .models import Direction, SourceCategory, TransactionType, WalletTransaction

logger = logging.getLogger(__name__)


class Kind(str, Enum):
    EARNING = "earning"
    REFUND = "refund"
    PURCHASE = "purchase"
    PAYOUT = "payout"
    SPEND = "spend"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True, slots=True)
class Classification:
    kind: Kind
    category: Optional[SourceCategory] = None
    direction: Direction = Direction.IN

    @property
    def is_creator_earning(self) -> bool:
        return self.kind == Kind.EARNING

    @property
    def is_creator_refund(self) -> bool:
        """Refund clawed back from the creator (reduces their earnings)."""
        return self.kind == Kind.REFUND and self.direction == Direction.OUT


UNCLASSIFIED = Classification(kind=Kind.UNCLASSIFIED)

_MONETIZED_TYPES: dict[TransactionType, SourceCategory] = {
    TransactionType.CHAT_SPEND: SourceCategory.CHAT,
    TransactionType.CALL_SPEND: SourceCategory.CALLS,
    TransactionType.CALENDAR_BOOKING: SourceCategory.CALENDAR,
    TransactionType.EVENT_TICKET: SourceCategory.EVENTS,
}

_REFUND_TYPES: dict[TransactionType, SourceCategory] = {
    TransactionType.CALENDAR_REFUND: SourceCategory.CALENDAR,
    TransactionType.EVENT_REFUND: SourceCategory.EVENTS,
}

# First match wins; keep the more specific tokens first.
_CATEGORY_HINTS: tuple[tuple[str, SourceCategory], ...] = (
    ("calendar", SourceCategory.CALENDAR),
    ("booking", SourceCategory.CALENDAR),
    ("meeting", SourceCategory.CALENDAR),
    ("event", SourceCategory.EVENTS),
    ("ticket", SourceCategory.EVENTS),
    ("call", SourceCategory.CALLS),
    ("video", SourceCategory.CALLS),
    ("voice", SourceCategory.CALLS),
    ("chat", SourceCategory.CHAT),
    ("message", SourceCategory.CHAT),
)
_REFUND_HINTS = ("refund", "chargeback", "reversal")
_PAYOUT_HINTS = ("payout", "withdraw")
_PURCHASE_HINTS = ("purchase", "topup", "top-up", "top_up")


def _category_from_hint(text: str) -> Optional[SourceCategory]:
    for needle, cat in _CATEGORY_HINTS:
        if needle in text:
            return cat
    return None


def _earning_or_spend(category: SourceCategory, direction: Direction) -> Classification:
    if direction == Direction.IN:
        return Classification(kind=Kind.EARNING, category=category, direction=direction)
    return Classification(kind=Kind.SPEND, category=category, direction=direction)


def _classify_known(tx: WalletTransaction) -> Classification:
    t = tx.type
    if t == TransactionType.PURCHASE:
        return Classification(kind=Kind.PURCHASE, direction=tx.direction)
    if t == TransactionType.PAYOUT:
        return Classification(kind=Kind.PAYOUT, direction=tx.direction)
    if t in _MONETIZED_TYPES:
        return _earning_or_spend(_MONETIZED_TYPES[t], tx.direction)
    if t in _REFUND_TYPES:
        return Classification(kind=Kind.REFUND, category=_REFUND_TYPES[t], direction=tx.direction)
    # TransactionType.OTHER
    if tx.direction == Direction.IN and tx.amount > 0:
        return Classification(kind=Kind.EARNING, category=SourceCategory.OTHER, direction=tx.direction)
    return UNCLASSIFIED


def _classify_by_hint(tx: WalletTransaction) -> Classification:
    text = (tx.source or "").strip().lower()
    if not text:
        return UNCLASSIFIED

    if any(h in text for h in _REFUND_HINTS):
        cat = _category_from_hint(text) or SourceCategory.OTHER
        return Classification(kind=Kind.REFUND, category=cat, direction=tx.direction)
    if any(h in text for h in _PAYOUT_HINTS):
        return Classification(kind=Kind.PAYOUT, direction=tx.direction)
    if any(h in text for h in _PURCHASE_HINTS):
        return Classification(kind=Kind.PURCHASE, direction=tx.direction)

    cat = _category_from_hint(text)
    if cat is not None:
        return _earning_or_spend(cat, tx.direction)

    if tx.direction == Direction.IN and tx.amount > 0:
        return Classification(kind=Kind.EARNING, category=SourceCategory.OTHER, direction=tx.direction)
    return UNCLASSIFIED


def classify_transaction(tx: WalletTransaction) -> Classification:
    try:
        if tx.type is not None:
            return _classify_known(tx)
        result = _classify_by_hint(tx)
    except Exception:
        logger.exception("ledger.classify_failed tx_id=%s", getattr(tx, "id", None))
        return UNCLASSIFIED

    if result.kind == Kind.UNCLASSIFIED:
        logger.debug(
            "ledger.unclassified_transaction tx_id=%s raw_type=%r source=%r direction=%s",
            tx.id,
            tx.raw_type,
            tx.source,
            tx.direction.value,
        )
    return result
