from __future__ import annotations

"""
Firestore collection naming + ID conventions for the finance engine.

Collections:
- wallet_transactions/{tx_id}                    (read-only, append-only ledger)
- payout_requests/{payout_id}                    (read-only, payout subsystem)
- wallets/{user_id}                              (read-only, cached balances)
- creator_earnings_monthly/{user_id}__{YYYY-MM}  (derived)
- platform_finance_monthly/{YYYY-MM}             (derived)
- finance_anomalies/{anomaly_id}                 (reconciler output)
- finance_aggregation_runs/{run_id}              (audit trail)

This file intentionally avoids Firestore reads/writes; it provides path helpers and deterministic IDs.
"""

import hashlib
from typing import Optional

from finance_engine.common.periods import period_key

COLLECTION_WALLET_TRANSACTIONS = "wallet_transactions"
COLLECTION_PAYOUT_REQUESTS = "payout_requests"
COLLECTION_WALLETS = "wallets"
COLLECTION_CREATOR_EARNINGS_MONTHLY = "creator_earnings_monthly"
COLLECTION_PLATFORM_FINANCE_MONTHLY = "platform_finance_monthly"
COLLECTION_FINANCE_ANOMALIES = "finance_anomalies"
COLLECTION_AGGREGATION_RUNS = "finance_aggregation_runs"


def earnings_snapshot_id(user_id: str, year: int, month: int) -> str:
    """
    Deterministic doc id for a creator's monthly snapshot.

    Example: "uid123__2025-12"
    """
    uid = str(user_id).strip()
    if not uid:
        raise ValueError("user_id is required")
    return f"{uid}__{period_key(year, month)}"


def platform_snapshot_id(year: int, month: int) -> str:
    return period_key(year, month)


def anomaly_id(anomaly_type: str, user_id: Optional[str], period: Optional[str]) -> str:
    """
    Stable id for the (type, user, period) uniqueness key.

    Writing with `create()` under this id makes duplicate detection a store-level guarantee.
    """
    raw = f"{anomaly_type}|{user_id or ''}|{period or ''}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:40]
