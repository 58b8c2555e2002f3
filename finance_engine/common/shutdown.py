from __future__ import annotations

"""
Cooperative cancellation for batch runs.

- A shared `threading.Event` is set on SIGTERM/SIGINT (best-effort).
- Batch loops check the event *between* units of work (users), never mid-scan,
  so an interrupted run leaves already-written snapshots intact.

Custom previous signal handlers are chained. Default handlers are not: the
batch finishes its in-flight users, records the run as cancelled and exits.
"""

import signal
import threading
from types import FrameType
from typing import Any, Callable

SHUTDOWN_EVENT = threading.Event()

_INSTALLED = False
_LOCK = threading.Lock()


def request_shutdown() -> None:
    """
    Programmatically request cancellation (idempotent).
    """
    SHUTDOWN_EVENT.set()


def _wrap_handler(prev: Any) -> Callable[[int, FrameType | None], Any]:
    def _handler(signum: int, frame: FrameType | None) -> Any:
        request_shutdown()

        if prev in (signal.SIG_IGN, signal.SIG_DFL, None):
            # Default handlers are replaced by cancellation; the job exits after the current user.
            return None
        if callable(prev):
            return prev(signum, frame)
        return None

    return _handler


def install_signal_handlers_once() -> None:
    """
    Best-effort SIGTERM/SIGINT -> set `SHUTDOWN_EVENT`.
    """
    global _INSTALLED
    if _INSTALLED:
        return
    # Signal handlers can only be installed from the main thread.
    if threading.current_thread() is not threading.main_thread():
        return
    with _LOCK:
        if _INSTALLED:
            return
        for s in (signal.SIGTERM, signal.SIGINT):
            prev = signal.getsignal(s)
            signal.signal(s, _wrap_handler(prev))
        _INSTALLED = True
