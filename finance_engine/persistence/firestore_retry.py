from __future__ import annotations

import logging
import random
from typing import Callable, TypeVar

from google.api_core import exceptions as gexc

from finance_engine.common.errors import StoreUnavailableError
from finance_engine.common.shutdown import SHUTDOWN_EVENT, install_signal_handlers_once

T = TypeVar("T")
logger = logging.getLogger(__name__)

TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    gexc.Aborted,
    gexc.DeadlineExceeded,
    gexc.InternalServerError,
    gexc.ResourceExhausted,
    gexc.ServiceUnavailable,
    gexc.TooManyRequests,
)


def with_firestore_retry(
    fn: Callable[[], T],
    *,
    max_attempts: int = 6,
    base_delay_s: float = 0.2,
    max_delay_s: float = 5.0,
) -> T:
    """
    Retry transient Firestore errors with exponential backoff + full jitter.

    Non-transient errors propagate unchanged. Transient errors that exhaust the
    attempts (or hit a shutdown request mid-backoff) become `StoreUnavailableError`.
    """
    install_signal_handlers_once()
    attempt = 0
    while True:
        try:
            return fn()
        except TRANSIENT_EXCEPTIONS as e:
            if attempt >= (max_attempts - 1):
                raise StoreUnavailableError(f"firestore unavailable after {attempt + 1} attempts: {e}") from e

            sleep_s = min(max_delay_s, base_delay_s * (2**attempt))
            logger.info("firestore_retry iteration=%d sleep_s=%.3f", attempt + 1, float(sleep_s))
            if SHUTDOWN_EVENT.is_set():
                raise StoreUnavailableError("shutdown requested during firestore retry") from e
            SHUTDOWN_EVENT.wait(timeout=float(random.random() * float(sleep_s)))
            attempt += 1
