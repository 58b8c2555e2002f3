from __future__ import annotations

from typing import Optional


class FinanceEngineError(Exception):
    pass


class InvalidPeriodError(FinanceEngineError, ValueError):
    """Rejected year/month input. Always raised before any store I/O."""


class WalletNotFoundError(FinanceEngineError, LookupError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"wallet not found for user {user_id}")
        self.user_id = user_id


class StoreUnavailableError(FinanceEngineError):
    """
    The backing store is unreachable (transient errors exhausted retries).

    Fatal for a run: batches abort and surface this to the scheduler for retry.
    """


class EngineOperationError(FinanceEngineError):
    """
    Generic failure surfaced to administrative consumers.

    Details stay in the logs under `correlation_id`.
    """

    def __init__(self, operation: str, *, correlation_id: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"{operation} failed (correlation_id={correlation_id})")
        self.operation = operation
        self.correlation_id = correlation_id
        self.cause = cause
