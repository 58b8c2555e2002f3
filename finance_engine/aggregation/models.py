from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from finance_engine.common.periods import as_utc, period_key
from finance_engine.ledger.models import SourceCategory


def zero_by_source() -> dict[str, int]:
    return {c.value: 0 for c in SourceCategory}


def _by_source(raw: Any) -> dict[str, int]:
    out = zero_by_source()
    if isinstance(raw, Mapping):
        for k, v in raw.items():
            if k in out:
                out[k] = int(v or 0)
    return out


def content_hash(payload: Mapping[str, Any]) -> str:
    """
    Deterministic digest of a snapshot's financial content (timestamps excluded).
    """
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:32]


@dataclass(frozen=True, slots=True)
class CreatorEarningsMonthly:
    """
    Firestore doc payload for:
      creator_earnings_monthly/{user_id}__{YYYY-MM}

    Invariants:
    - creator_share + platform_share == net_earned
    - net_earned == sum(earned_by_source) - sum(refunded_by_source)
    """

    user_id: str
    year: int
    month: int
    earned_by_source: dict[str, int]
    refunded_by_source: dict[str, int]
    earned_tokens: int
    refunded_tokens: int
    net_earned: int
    creator_share: int
    platform_share: int
    payout_requested_tokens: int
    payout_paid_tokens: int
    payout_fiat_paid: float
    payout_currency: str
    transaction_count: int
    unclassified_count: int
    unclassified_types: dict[str, int]
    split_table_version: str
    generated_at: datetime
    updated_at: datetime

    @property
    def period(self) -> str:
        return period_key(self.year, self.month)

    def financial_payload(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "year": self.year,
            "month": self.month,
            "period": self.period,
            "earnedBySource": dict(self.earned_by_source),
            "refundedBySource": dict(self.refunded_by_source),
            "earnedTokens": self.earned_tokens,
            "refundedTokens": self.refunded_tokens,
            "netEarned": self.net_earned,
            "creatorShare": self.creator_share,
            "platformShare": self.platform_share,
            "payoutRequestedTokens": self.payout_requested_tokens,
            "payoutPaidTokens": self.payout_paid_tokens,
            "payoutFiatPaid": float(self.payout_fiat_paid),
            "payoutCurrency": self.payout_currency,
            "transactionCount": self.transaction_count,
            "diagnostics": {
                "unclassifiedCount": self.unclassified_count,
                "unclassifiedTypes": dict(self.unclassified_types),
            },
            "splitTableVersion": self.split_table_version,
        }

    @property
    def content_hash(self) -> str:
        return content_hash(self.financial_payload())

    def to_firestore_doc(self) -> dict[str, Any]:
        doc = self.financial_payload()
        doc["contentHash"] = self.content_hash
        doc["generatedAt"] = as_utc(self.generated_at)
        doc["updatedAt"] = as_utc(self.updated_at)
        return doc

    @classmethod
    def from_firestore_doc(cls, doc: Mapping[str, Any]) -> "CreatorEarningsMonthly":
        diag = doc.get("diagnostics") or {}
        return cls(
            user_id=str(doc["userId"]),
            year=int(doc["year"]),
            month=int(doc["month"]),
            earned_by_source=_by_source(doc.get("earnedBySource")),
            refunded_by_source=_by_source(doc.get("refundedBySource")),
            earned_tokens=int(doc.get("earnedTokens") or 0),
            refunded_tokens=int(doc.get("refundedTokens") or 0),
            net_earned=int(doc.get("netEarned") or 0),
            creator_share=int(doc.get("creatorShare") or 0),
            platform_share=int(doc.get("platformShare") or 0),
            payout_requested_tokens=int(doc.get("payoutRequestedTokens") or 0),
            payout_paid_tokens=int(doc.get("payoutPaidTokens") or 0),
            payout_fiat_paid=float(doc.get("payoutFiatPaid") or 0.0),
            payout_currency=str(doc.get("payoutCurrency") or ""),
            transaction_count=int(doc.get("transactionCount") or 0),
            unclassified_count=int(diag.get("unclassifiedCount") or 0),
            unclassified_types={str(k): int(v) for k, v in (diag.get("unclassifiedTypes") or {}).items()},
            split_table_version=str(doc.get("splitTableVersion") or ""),
            generated_at=as_utc(doc["generatedAt"]),
            updated_at=as_utc(doc.get("updatedAt") or doc["generatedAt"]),
        )


@dataclass(frozen=True, slots=True)
class PlatformFinanceMonthly:
    """
    Firestore doc payload for:
      platform_finance_monthly/{YYYY-MM}

    Derived, fully recomputable cache. Liability fields are cumulative through
    the period end, every other figure is scoped to the month.
    """

    year: int
    month: int
    gmv_tokens: int
    gmv_fiat: float
    total_creator_share: int
    total_platform_share: int
    fees_by_source: dict[str, int]
    refunds_tokens: int
    net_revenue_tokens: int
    tokens_sold: int
    tokens_sold_fiat: float
    total_payout_tokens: int
    total_payout_fiat: float
    total_payout_count: int
    outstanding_creator_liability_tokens: int
    outstanding_creator_liability_fiat: float
    liability_shortfall_tokens: int
    active_creators: int
    transaction_count: int
    unclassified_count: int
    reporting_currency: str
    split_table_version: str
    generated_at: datetime

    @property
    def period(self) -> str:
        return period_key(self.year, self.month)

    def financial_payload(self) -> dict[str, Any]:
        return {
            "year": self.year,
            "month": self.month,
            "period": self.period,
            "gmvTokens": self.gmv_tokens,
            "gmvFiat": float(self.gmv_fiat),
            "totalCreatorShare": self.total_creator_share,
            "totalPlatformShare": self.total_platform_share,
            "feesBySource": dict(self.fees_by_source),
            "refundsTokens": self.refunds_tokens,
            "netRevenueTokens": self.net_revenue_tokens,
            "tokensSold": self.tokens_sold,
            "tokensSoldFiat": float(self.tokens_sold_fiat),
            "totalPayoutTokens": self.total_payout_tokens,
            "totalPayoutFiat": float(self.total_payout_fiat),
            "totalPayoutCount": self.total_payout_count,
            "outstandingCreatorLiabilityTokens": self.outstanding_creator_liability_tokens,
            "outstandingCreatorLiabilityFiat": float(self.outstanding_creator_liability_fiat),
            "liabilityShortfallTokens": self.liability_shortfall_tokens,
            "activeCreators": self.active_creators,
            "transactionCount": self.transaction_count,
            "unclassifiedCount": self.unclassified_count,
            "reportingCurrency": self.reporting_currency,
            "splitTableVersion": self.split_table_version,
        }

    @property
    def content_hash(self) -> str:
        return content_hash(self.financial_payload())

    def to_firestore_doc(self) -> dict[str, Any]:
        doc = self.financial_payload()
        doc["contentHash"] = self.content_hash
        doc["generatedAt"] = as_utc(self.generated_at)
        return doc

    @classmethod
    def from_firestore_doc(cls, doc: Mapping[str, Any]) -> "PlatformFinanceMonthly":
        fees = doc.get("feesBySource") or {}
        return cls(
            year=int(doc["year"]),
            month=int(doc["month"]),
            gmv_tokens=int(doc.get("gmvTokens") or 0),
            gmv_fiat=float(doc.get("gmvFiat") or 0.0),
            total_creator_share=int(doc.get("totalCreatorShare") or 0),
            total_platform_share=int(doc.get("totalPlatformShare") or 0),
            fees_by_source=_by_source(fees),
            refunds_tokens=int(doc.get("refundsTokens") or 0),
            net_revenue_tokens=int(doc.get("netRevenueTokens") or 0),
            tokens_sold=int(doc.get("tokensSold") or 0),
            tokens_sold_fiat=float(doc.get("tokensSoldFiat") or 0.0),
            total_payout_tokens=int(doc.get("totalPayoutTokens") or 0),
            total_payout_fiat=float(doc.get("totalPayoutFiat") or 0.0),
            total_payout_count=int(doc.get("totalPayoutCount") or 0),
            outstanding_creator_liability_tokens=int(doc.get("outstandingCreatorLiabilityTokens") or 0),
            outstanding_creator_liability_fiat=float(doc.get("outstandingCreatorLiabilityFiat") or 0.0),
            liability_shortfall_tokens=int(doc.get("liabilityShortfallTokens") or 0),
            active_creators=int(doc.get("activeCreators") or 0),
            transaction_count=int(doc.get("transactionCount") or 0),
            unclassified_count=int(doc.get("unclassifiedCount") or 0),
            reporting_currency=str(doc.get("reportingCurrency") or ""),
            split_table_version=str(doc.get("splitTableVersion") or ""),
            generated_at=as_utc(doc["generatedAt"]),
        )


class RunKind(str, Enum):
    CREATOR_EARNINGS = "creator-earnings"
    PLATFORM_ROLLUP = "platform-rollup"
    ANOMALY_DETECTION = "anomaly-detection"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class AggregationRun:
    """
    Audit trail record, one per run:
      finance_aggregation_runs/{run_id}
    """

    run_id: str
    kind: RunKind
    period: Optional[str]
    status: RunStatus
    processed: int
    failed: int
    skipped: int
    started_at: datetime
    finished_at: datetime
    forced: bool = False
    triggered_by: str = "manual"
    failures: dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    def to_firestore_doc(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "kind": self.kind.value,
            "period": self.period,
            "status": self.status.value,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "forced": self.forced,
            "triggeredBy": self.triggered_by,
            "failures": dict(self.failures),
            "error": self.error,
            "startedAt": as_utc(self.started_at),
            "finishedAt": as_utc(self.finished_at),
        }

    @classmethod
    def from_firestore_doc(cls, doc: Mapping[str, Any]) -> "AggregationRun":
        return cls(
            run_id=str(doc["runId"]),
            kind=RunKind(doc["kind"]),
            period=doc.get("period"),
            status=RunStatus(doc["status"]),
            processed=int(doc.get("processed") or 0),
            failed=int(doc.get("failed") or 0),
            skipped=int(doc.get("skipped") or 0),
            started_at=as_utc(doc["startedAt"]),
            finished_at=as_utc(doc["finishedAt"]),
            forced=bool(doc.get("forced")),
            triggered_by=str(doc.get("triggeredBy") or "manual"),
            failures={str(k): str(v) for k, v in (doc.get("failures") or {}).items()},
            error=doc.get("error"),
        )


@dataclass(frozen=True, slots=True)
class BatchResult:
    """Per-unit tally returned by batch runs instead of raising on partial failure."""

    run_id: str
    period: str
    status: RunStatus
    processed: int
    failed: int
    skipped: int
    failures: dict[str, str]

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.COMPLETED


@dataclass(frozen=True, slots=True)
class UserFinancialSummary:
    user_id: str
    year: int
    month: int
    current_month: CreatorEarningsMonthly
    lifetime_net_earned: int
    lifetime_creator_share: int
    lifetime_payout_paid_tokens: int
    wallet_balance: Optional[int]
    open_anomalies: int
