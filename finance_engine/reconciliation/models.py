from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from finance_engine.common.periods import as_utc
from finance_engine.persistence.schema import anomaly_id


class AnomalyType(str, Enum):
    NEGATIVE_BALANCE = "negative-balance"
    BALANCE_MISMATCH = "balance-mismatch"
    INVALID_SPLIT = "invalid-split"
    REFUND_EXCEEDS_ORIGINAL = "refund-exceeds-original"
    PAYOUT_EXCEEDS_EARNINGS = "payout-exceeds-earnings"
    REFUND_MISSING_ORIGINAL = "refund-missing-original"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AnomalyStatus(str, Enum):
    OPEN = "open"
    REVIEWED = "reviewed"
    RESOLVED = "resolved"


@dataclass(frozen=True, slots=True)
class FinanceAnomaly:
    """
    Reconciler finding awaiting human review.

    Firestore path:
      finance_anomalies/{id}   id = hash(type | user_id | period)
    """

    type: AnomalyType
    user_id: Optional[str]
    period: Optional[str]
    details: str
    severity: Severity
    created_at: datetime
    status: AnomalyStatus = AnomalyStatus.OPEN
    metadata: Mapping[str, Any] = field(default_factory=dict)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    id: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "created_at", as_utc(self.created_at))
        if not self.id:
            object.__setattr__(self, "id", anomaly_id(self.type.value, self.user_id, self.period))

    @property
    def key(self) -> tuple[str, Optional[str], Optional[str]]:
        return self.type.value, self.user_id, self.period

    def with_status(
        self, status: AnomalyStatus, *, at: datetime, by: Optional[str] = None
    ) -> "FinanceAnomaly":
        if status == AnomalyStatus.RESOLVED:
            return replace(self, status=status, resolved_at=as_utc(at), resolved_by=by)
        return replace(self, status=status)

    def to_firestore_doc(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "userId": self.user_id,
            "period": self.period,
            "details": self.details,
            "severity": self.severity.value,
            "status": self.status.value,
            "metadata": dict(self.metadata),
            "createdAt": self.created_at,
            "resolvedAt": self.resolved_at,
            "resolvedBy": self.resolved_by,
        }

    @classmethod
    def from_firestore_doc(cls, doc: Mapping[str, Any], *, doc_id: Optional[str] = None) -> "FinanceAnomaly":
        resolved_at = doc.get("resolvedAt")
        return cls(
            id=str(doc_id or doc.get("id") or ""),
            type=AnomalyType(doc["type"]),
            user_id=doc.get("userId"),
            period=doc.get("period"),
            details=str(doc.get("details") or ""),
            severity=Severity(doc["severity"]),
            status=AnomalyStatus(doc.get("status") or AnomalyStatus.OPEN.value),
            metadata=dict(doc.get("metadata") or {}),
            created_at=as_utc(doc["createdAt"]),
            resolved_at=as_utc(resolved_at) if resolved_at is not None else None,
            resolved_by=doc.get("resolvedBy"),
        )


@dataclass(frozen=True, slots=True)
class BalanceSummary:
    """Ledger-derived components of a wallet balance (full history)."""

    purchased: int = 0
    earned: int = 0
    spent: int = 0
    refunded: int = 0
    withdrawn: int = 0
    clawed_back: int = 0

    @property
    def expected_balance(self) -> int:
        return self.purchased + self.earned - self.spent + self.refunded - self.withdrawn

    @property
    def net_earned(self) -> int:
        return self.earned - self.clawed_back


@dataclass(frozen=True, slots=True)
class BalanceCheckResult:
    user_id: str
    consistent: bool
    cached_balance: int
    summary: BalanceSummary
    anomalies: tuple[FinanceAnomaly, ...] = ()

    @property
    def discrepancy(self) -> int:
        """Signed: cached - expected."""
        return self.cached_balance - self.summary.expected_balance
