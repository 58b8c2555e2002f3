from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from finance_engine.common.periods import as_utc


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    CHAT_SPEND = "chat-spend"
    CALL_SPEND = "call-spend"
    CALENDAR_BOOKING = "calendar-booking"
    EVENT_TICKET = "event-ticket"
    CALENDAR_REFUND = "calendar-refund"
    EVENT_REFUND = "event-refund"
    PAYOUT = "payout"
    OTHER = "other"

    @classmethod
    def parse(cls, raw: Any) -> Optional["TransactionType"]:
        s = ("" if raw is None else str(raw)).strip().lower().replace("_", "-")
        for t in cls:
            if t.value == s:
                return t
        return None


class Direction(str, Enum):
    IN = "IN"
    OUT = "OUT"


class SourceCategory(str, Enum):
    CHAT = "chat"
    CALLS = "calls"
    CALENDAR = "calendar"
    EVENTS = "events"
    OTHER = "other"


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Statuses that count towards "requested" tokens for a period.
REQUESTED_PAYOUT_STATUSES: frozenset[PayoutStatus] = frozenset(
    {PayoutStatus.PENDING, PayoutStatus.PROCESSING, PayoutStatus.PAID}
)

_EMPTY_META: Mapping[str, Any] = MappingProxyType({})


@dataclass(frozen=True, slots=True)
class WalletTransaction:
    """
    Immutable, append-only wallet ledger entry (token units).

    Firestore path:
      wallet_transactions/{id}

    `type` is None when the producer wrote a type outside the known enum; the raw
    string is kept in `raw_type` so the classifier can fall back to hints.
    """

    id: str
    user_id: str
    type: Optional[TransactionType]
    direction: Direction
    amount: int
    created_at: datetime
    raw_type: str = ""
    source: Optional[str] = None
    meta: Mapping[str, Any] = field(default_factory=lambda: _EMPTY_META)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("id is required")
        if not self.user_id:
            raise ValueError("user_id is required")
        if isinstance(self.amount, bool) or not isinstance(self.amount, int) or self.amount < 0:
            raise ValueError("amount must be a non-negative integer")
        if not self.raw_type and self.type is not None:
            object.__setattr__(self, "raw_type", self.type.value)
        object.__setattr__(self, "created_at", as_utc(self.created_at))
        object.__setattr__(self, "meta", MappingProxyType(dict(self.meta or {})))

    @property
    def original_transaction_id(self) -> Optional[str]:
        v = self.meta.get("originalTransactionId") or self.meta.get("original_transaction_id")
        return str(v) if v else None

    @property
    def precomputed_split(self) -> Optional[tuple[int, int]]:
        """(creatorShare, platformShare) when the producer recorded both."""
        c = self.meta.get("creatorShare", self.meta.get("creator_share"))
        p = self.meta.get("platformShare", self.meta.get("platform_share"))
        if c is None or p is None:
            return None
        try:
            return int(c), int(p)
        except (TypeError, ValueError):
            return None


@dataclass(frozen=True, slots=True)
class UserWallet:
    user_id: str
    tokens_balance: int
    lifetime_purchased: int = 0
    lifetime_earned: int = 0
    lifetime_withdrawn: int = 0


@dataclass(frozen=True, slots=True)
class PayoutRecord:
    """
    Payout/withdrawal request owned by the payout subsystem.

    Firestore path:
      payout_requests/{id}
    """

    id: str
    user_id: str
    tokens_requested: int
    amount_fiat: float
    currency: str
    status: PayoutStatus
    created_at: datetime
    processed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "currency", (self.currency or "").strip().upper())
        object.__setattr__(self, "created_at", as_utc(self.created_at))
        if self.processed_at is not None:
            object.__setattr__(self, "processed_at", as_utc(self.processed_at))

    @property
    def is_paid(self) -> bool:
        return self.status == PayoutStatus.PAID and self.processed_at is not None
