from __future__ import annotations

import logging
import signal
import threading
from typing import Any, Dict, Iterable, Optional

from .ledger import QuotaLedger
from .logging_utils import log_event

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class CancellationToken:
    """Run-level stop flag shared by the guard, the controller and its workers."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    def cancel(self, reason: str) -> bool:
        """Cancel the token. Returns False if it was already cancelled."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


class LifecycleGuard:
    """Turns host termination signals into cancellation plus a ledger flush.

    Use as a context manager around a crawl. Signal handlers are installed on
    enter and the previous handlers restored on exit. The first delivery
    cancels the token; later ones are ignored. The controller drains
    in-flight work and then calls ``persist``.
    """

    def __init__(
        self,
        ledger: QuotaLedger,
        token: Optional[CancellationToken] = None,
        signals: Iterable[int] = DEFAULT_SIGNALS,
    ) -> None:
        self._ledger = ledger
        self.token = token or CancellationToken()
        self._signals = tuple(signals)
        self._previous: Dict[int, Any] = {}
        self._persist_lock = threading.Lock()

    def __enter__(self) -> "LifecycleGuard":
        self.install()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.uninstall()
        if self.interrupted:
            self.persist()

    def install(self) -> None:
        for signum in self._signals:
            try:
                self._previous[signum] = signal.signal(signum, self._handle_signal)
            except ValueError:
                # signal.signal only works in the main thread
                log_event(
                    logger,
                    logging.WARNING,
                    "signal_handler_unavailable",
                    signal=signal.Signals(signum).name,
                    thread=threading.current_thread().name,
                )

    def uninstall(self) -> None:
        while self._previous:
            signum, handler = self._previous.popitem()
            signal.signal(signum, handler)

    def _handle_signal(self, signum: int, frame: Any) -> None:
        self.trigger(signal.Signals(signum).name)

    def trigger(self, reason: str) -> None:
        """Request a graceful stop, e.g. on migration. Safe to call repeatedly."""
        if self.token.cancel(reason):
            log_event(logger, logging.WARNING, "termination_signal", reason=reason)
        else:
            log_event(logger, logging.DEBUG, "termination_signal_ignored", reason=reason)

    @property
    def interrupted(self) -> bool:
        return self.token.cancelled

    def persist(self) -> None:
        """Synchronously flush the ledger."""
        with self._persist_lock:
            self._ledger.flush()
