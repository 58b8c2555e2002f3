from __future__ import annotations

"""
Balance reconciler (anomaly detector).

Independently re-derives what the ledger implies and compares it with cached
state and producer-recorded figures. Findings are returned values and stored
anomalies awaiting human review; nothing here raises for a finding, and nothing
here "fixes" data.

Uniqueness: one anomaly per (type, user_id, period). Several offending
transactions found in one pass are merged into one record whose metadata lists
them. Balance checks use the detection month as the period, so a condition that
persists re-surfaces once per month.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from finance_engine.common.config import EngineSettings
from finance_engine.common.errors import WalletNotFoundError
from finance_engine.common.logging import log_event
from finance_engine.common.periods import current_month, month_period_utc, period_key, utc_now
from finance_engine.ledger.classifier import Kind, classify_transaction
from finance_engine.ledger.models import Direction, WalletTransaction
from finance_engine.persistence.interfaces import FinanceStore

from .models import AnomalyType, BalanceCheckResult, BalanceSummary, FinanceAnomaly, Severity

logger = logging.getLogger(__name__)

_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}


def summarize_ledger(transactions: Iterable[WalletTransaction]) -> BalanceSummary:
    """
    Fold a user's full history into balance components.

    expected = purchased + earned - spent + refunded - withdrawn
    """
    purchased = earned = spent = refunded = withdrawn = clawed_back = 0
    for tx in transactions:
        c = classify_transaction(tx)
        amt = tx.amount
        if c.kind == Kind.PURCHASE:
            purchased += amt if tx.direction == Direction.IN else -amt
        elif c.kind == Kind.EARNING:
            earned += amt
        elif c.kind == Kind.SPEND:
            spent += amt
        elif c.kind == Kind.REFUND:
            if tx.direction == Direction.OUT:
                spent += amt
                clawed_back += amt
            else:
                refunded += amt
        elif c.kind == Kind.PAYOUT:
            # A PAYOUT credit is a returned (failed/cancelled) withdrawal.
            withdrawn += amt if tx.direction == Direction.OUT else -amt
    return BalanceSummary(
        purchased=purchased,
        earned=earned,
        spent=spent,
        refunded=refunded,
        withdrawn=withdrawn,
        clawed_back=clawed_back,
    )


@dataclass
class _Finding:
    severity: Severity
    items: list[dict[str, Any]] = field(default_factory=list)


class _FindingSet:
    """Accumulates findings for one pass, keyed by (type, user_id, period)."""

    def __init__(self) -> None:
        self._by_key: dict[tuple[AnomalyType, Optional[str], Optional[str]], _Finding] = {}

    def add(
        self,
        anomaly_type: AnomalyType,
        *,
        user_id: Optional[str],
        period: Optional[str],
        severity: Severity,
        item: dict[str, Any],
    ) -> None:
        key = (anomaly_type, user_id, period)
        f = self._by_key.get(key)
        if f is None:
            f = self._by_key[key] = _Finding(severity=severity)
        elif _SEVERITY_RANK[severity] > _SEVERITY_RANK[f.severity]:
            f.severity = severity
        f.items.append(item)

    def build(self, *, now: datetime, describe: Callable[[AnomalyType, int], str]) -> list[FinanceAnomaly]:
        out: list[FinanceAnomaly] = []
        for (anomaly_type, user_id, period), f in sorted(
            self._by_key.items(), key=lambda kv: (kv[0][0].value, kv[0][1] or "", kv[0][2] or "")
        ):
            tx_ids = [str(i["transactionId"]) for i in f.items if i.get("transactionId")]
            out.append(
                FinanceAnomaly(
                    type=anomaly_type,
                    user_id=user_id,
                    period=period,
                    details=describe(anomaly_type, len(f.items)),
                    severity=f.severity,
                    created_at=now,
                    metadata={"transactionIds": tx_ids, "items": f.items},
                )
            )
        return out


def _describe(anomaly_type: AnomalyType, n: int) -> str:
    if anomaly_type == AnomalyType.INVALID_SPLIT:
        return f"{n} transaction(s) with recorded shares that do not sum to the amount"
    if anomaly_type == AnomalyType.REFUND_EXCEEDS_ORIGINAL:
        return f"{n} refund(s) exceeding the original transaction amount"
    if anomaly_type == AnomalyType.REFUND_MISSING_ORIGINAL:
        return f"{n} refund(s) without a resolvable original transaction"
    return f"{n} finding(s)"


class BalanceReconciler:
    def __init__(
        self,
        store: FinanceStore,
        *,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._settings = settings or EngineSettings()
        self._clock = clock or utc_now

    # ---- persistence ----

    def _persist(self, anomalies: list[FinanceAnomaly]) -> list[FinanceAnomaly]:
        stored: list[FinanceAnomaly] = []
        for a in anomalies:
            created, record = self._store.create_anomaly_if_absent(a)
            log_event(
                logger,
                "reconcile.anomaly_created" if created else "reconcile.anomaly_duplicate",
                severity="WARNING" if created else "INFO",
                anomaly_id=record.id,
                anomaly_type=record.type.value,
                user_id=record.user_id,
                period=record.period,
                anomaly_severity=record.severity.value,
            )
            stored.append(record)
        return stored

    # ---- balance ----

    def check_user(self, user_id: str, *, persist: bool = True) -> BalanceCheckResult:
        uid = str(user_id or "").strip()
        if not uid:
            raise ValueError("user_id is required")
        wallet = self._store.get_wallet(uid)
        if wallet is None:
            raise WalletNotFoundError(uid)

        summary = summarize_ledger(self._store.iter_user_transactions(uid))
        now = self._clock()
        period = period_key(*current_month(now))
        cached = int(wallet.tokens_balance)
        discrepancy = cached - summary.expected_balance

        found: list[FinanceAnomaly] = []
        if cached < 0:
            found.append(
                FinanceAnomaly(
                    type=AnomalyType.NEGATIVE_BALANCE,
                    user_id=uid,
                    period=period,
                    details=f"cached wallet balance is negative ({cached})",
                    severity=Severity.CRITICAL,
                    created_at=now,
                    metadata={"cachedBalance": cached},
                )
            )
        if abs(discrepancy) > self._settings.balance_mismatch_threshold:
            found.append(
                FinanceAnomaly(
                    type=AnomalyType.BALANCE_MISMATCH,
                    user_id=uid,
                    period=period,
                    details=(
                        f"cached balance {cached} differs from ledger-derived {summary.expected_balance} "
                        f"by {discrepancy}"
                    ),
                    severity=(
                        Severity.HIGH if abs(discrepancy) > self._settings.high_severity_discrepancy else Severity.MEDIUM
                    ),
                    created_at=now,
                    metadata={
                        "cachedBalance": cached,
                        "expectedBalance": summary.expected_balance,
                        "discrepancy": discrepancy,
                    },
                )
            )
        if summary.withdrawn > summary.net_earned:
            found.append(
                FinanceAnomaly(
                    type=AnomalyType.PAYOUT_EXCEEDS_EARNINGS,
                    user_id=uid,
                    period=period,
                    details=f"withdrawn {summary.withdrawn} exceeds lifetime net earnings {summary.net_earned}",
                    severity=Severity.HIGH,
                    created_at=now,
                    metadata={"withdrawn": summary.withdrawn, "netEarned": summary.net_earned},
                )
            )

        anomalies = self._persist(found) if persist else found
        log_event(
            logger,
            "reconcile.user_checked",
            user_id=uid,
            cached_balance=cached,
            expected_balance=summary.expected_balance,
            discrepancy=discrepancy,
            anomalies=len(anomalies),
        )
        return BalanceCheckResult(
            user_id=uid,
            consistent=not found,
            cached_balance=cached,
            summary=summary,
            anomalies=tuple(anomalies),
        )

    # ---- splits ----

    def check_splits(
        self, year: int, month: int, *, user_id: Optional[str] = None, persist: bool = True
    ) -> list[FinanceAnomaly]:
        start, end = month_period_utc(year=year, month=month)
        period = period_key(year, month)
        tolerance = self._settings.split_tolerance_tokens
        findings = _FindingSet()
        checked = 0

        for tx in self._store.iter_transactions(start, end, user_id=user_id):
            c = classify_transaction(tx)
            if not c.is_creator_earning:
                continue
            recorded = tx.precomputed_split
            if recorded is None:
                continue
            checked += 1
            creator, platform = recorded
            if creator < 0 or platform < 0 or abs((creator + platform) - tx.amount) > tolerance:
                findings.add(
                    AnomalyType.INVALID_SPLIT,
                    user_id=tx.user_id,
                    period=period,
                    severity=Severity.MEDIUM,
                    item={
                        "transactionId": tx.id,
                        "amount": tx.amount,
                        "creatorShare": creator,
                        "platformShare": platform,
                    },
                )

        found = findings.build(now=self._clock(), describe=_describe)
        log_event(logger, "reconcile.splits_checked", period=period, user_id=user_id, checked=checked, anomalies=len(found))
        return self._persist(found) if persist else found

    # ---- refunds ----

    def check_refunds(
        self, year: int, month: int, *, user_id: Optional[str] = None, persist: bool = True
    ) -> list[FinanceAnomaly]:
        start, end = month_period_utc(year=year, month=month)
        period = period_key(year, month)
        findings = _FindingSet()
        originals: dict[str, Optional[WalletTransaction]] = {}
        # user id -> that user's refunds recorded before the period end
        history: dict[str, list[WalletTransaction]] = {}
        checked = 0

        def _original(tx_id: str) -> Optional[WalletTransaction]:
            if tx_id not in originals:
                originals[tx_id] = self._store.get_transaction(tx_id)
            return originals[tx_id]

        def _user_refunds(uid: str) -> list[WalletTransaction]:
            if uid not in history:
                history[uid] = [
                    t
                    for t in self._store.iter_user_transactions(uid)
                    if t.created_at < end and classify_transaction(t).kind == Kind.REFUND
                ]
            return history[uid]

        for tx in self._store.iter_transactions(start, end, user_id=user_id):
            if classify_transaction(tx).kind != Kind.REFUND:
                continue
            checked += 1
            orig_id = tx.original_transaction_id
            orig = _original(orig_id) if orig_id else None
            if orig is None:
                findings.add(
                    AnomalyType.REFUND_MISSING_ORIGINAL,
                    user_id=tx.user_id,
                    period=period,
                    severity=Severity.LOW,
                    item={"transactionId": tx.id, "originalTransactionId": orig_id, "amount": tx.amount},
                )
                continue

            if tx.amount > orig.amount:
                findings.add(
                    AnomalyType.REFUND_EXCEEDS_ORIGINAL,
                    user_id=tx.user_id,
                    period=period,
                    severity=Severity.HIGH,
                    item={
                        "transactionId": tx.id,
                        "originalTransactionId": orig.id,
                        "amount": tx.amount,
                        "originalAmount": orig.amount,
                    },
                )
                continue

            cumulative = sum(
                t.amount
                for t in _user_refunds(tx.user_id)
                if t.original_transaction_id == orig.id
                and t.direction == tx.direction
                and (t.created_at, t.id) <= (tx.created_at, tx.id)
            )
            if cumulative > orig.amount:
                findings.add(
                    AnomalyType.REFUND_EXCEEDS_ORIGINAL,
                    user_id=tx.user_id,
                    period=period,
                    severity=Severity.HIGH,
                    item={
                        "transactionId": tx.id,
                        "originalTransactionId": orig.id,
                        "amount": tx.amount,
                        "cumulativeRefunded": cumulative,
                        "originalAmount": orig.amount,
                    },
                )

        found = findings.build(now=self._clock(), describe=_describe)
        log_event(logger, "reconcile.refunds_checked", period=period, user_id=user_id, checked=checked, anomalies=len(found))
        return self._persist(found) if persist else found

    # ---- sweeps ----

    def check_all_wallets(self, *, persist: bool = True) -> list[FinanceAnomaly]:
        out: list[FinanceAnomaly] = []
        for uid in self._store.list_wallet_user_ids():
            try:
                out.extend(self.check_user(uid, persist=persist).anomalies)
            except WalletNotFoundError:
                logger.info("reconcile.wallet_vanished user_id=%s", uid)
        return out
