from __future__ import annotations

"""
Mapping layer between Firestore documents and typed ledger entities.

Producers write mixed field naming (camelCase and snake_case). Everything is
normalised here; nothing downstream reads raw document dicts.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from finance_engine.common.periods import as_utc

from .models import Direction, PayoutRecord, PayoutStatus, TransactionType, UserWallet, WalletTransaction

logger = logging.getLogger(__name__)


def _first(doc: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        v = doc.get(k)
        if v is not None:
            return v
    return None


def coerce_timestamp(value: Any) -> Optional[datetime]:
    """
    Normalize timestamps to timezone-aware UTC datetimes.

    Accepts datetimes (Firestore returns DatetimeWithNanoseconds), objects with
    `.to_datetime()`, epoch seconds/millis and ISO-8601 strings.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)

    to_dt = getattr(value, "to_datetime", None)
    if callable(to_dt):
        out = to_dt()
        return as_utc(out) if isinstance(out, datetime) else None

    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Heuristic: treat very large values as epoch millis.
        seconds = float(value) / 1000.0 if float(value) > 1e12 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(s))
        except ValueError:
            return None
    return None


def _coerce_tokens(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            return None
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _coerce_direction(value: Any) -> Optional[Direction]:
    s = ("" if value is None else str(value)).strip().upper()
    if s in ("IN", "CREDIT"):
        return Direction.IN
    if s in ("OUT", "DEBIT"):
        return Direction.OUT
    return None


def wallet_transaction_from_doc(doc_id: str, doc: Mapping[str, Any]) -> Optional[WalletTransaction]:
    """
    Best-effort coercion from a Firestore dict -> WalletTransaction.

    Returns None (and logs) for docs that don't match the ledger shape.
    """
    user_id = str(_first(doc, "userId", "user_id", "uid") or "").strip()
    raw_type = str(_first(doc, "type", "transactionType") or "").strip()
    direction = _coerce_direction(_first(doc, "direction"))
    amount = _coerce_tokens(_first(doc, "amount", "tokens"))
    created_at = coerce_timestamp(_first(doc, "createdAt", "created_at", "timestamp"))

    if not (doc_id and user_id and direction is not None and created_at is not None):
        logger.warning("ledger.malformed_transaction tx_id=%s reason=missing_fields", doc_id)
        return None
    if amount is None or amount < 0:
        logger.warning("ledger.malformed_transaction tx_id=%s reason=invalid_amount", doc_id)
        return None

    meta = doc.get("meta") or doc.get("metadata") or {}
    if not isinstance(meta, Mapping):
        meta = {}
    source = _first(doc, "source") or meta.get("source")

    return WalletTransaction(
        id=str(doc_id),
        user_id=user_id,
        type=TransactionType.parse(raw_type),
        raw_type=raw_type,
        direction=direction,
        amount=amount,
        created_at=created_at,
        source=str(source) if source else None,
        meta=dict(meta),
    )


def wallet_from_doc(user_id: str, doc: Mapping[str, Any]) -> UserWallet:
    def _int(*keys: str) -> int:
        v = _coerce_tokens(_first(doc, *keys))
        return int(v or 0)

    return UserWallet(
        user_id=user_id,
        tokens_balance=_int("tokensBalance", "tokens_balance", "balance"),
        lifetime_purchased=_int("lifetimePurchased", "lifetime_purchased"),
        lifetime_earned=_int("lifetimeEarned", "lifetime_earned"),
        lifetime_withdrawn=_int("lifetimeWithdrawn", "lifetime_withdrawn"),
    )


def _coerce_payout_status(value: Any) -> Optional[PayoutStatus]:
    s = ("" if value is None else str(value)).strip().upper()
    for st in PayoutStatus:
        if st.value == s:
            return st
    return None


def payout_from_doc(doc_id: str, doc: Mapping[str, Any]) -> Optional[PayoutRecord]:
    user_id = str(_first(doc, "userId", "user_id") or "").strip()
    tokens = _coerce_tokens(_first(doc, "tokensRequested", "tokens_requested", "tokens"))
    status = _coerce_payout_status(_first(doc, "status"))
    created_at = coerce_timestamp(_first(doc, "createdAt", "created_at"))
    if not (doc_id and user_id and tokens is not None and status is not None and created_at is not None):
        logger.warning("payout.malformed_record payout_id=%s", doc_id)
        return None

    fiat = _first(doc, "amountFiatGross", "amount_fiat", "amountFiat")
    try:
        amount_fiat = float(fiat) if fiat is not None else 0.0
    except (TypeError, ValueError):
        amount_fiat = 0.0

    return PayoutRecord(
        id=str(doc_id),
        user_id=user_id,
        tokens_requested=int(tokens),
        amount_fiat=amount_fiat,
        currency=str(_first(doc, "currency") or ""),
        status=status,
        created_at=created_at,
        processed_at=coerce_timestamp(_first(doc, "processedAt", "processed_at")),
    )

