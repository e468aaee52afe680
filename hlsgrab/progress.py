"""Progress and cancellation channel shared between a job and its observers."""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from hlsgrab.errors import Cancelled


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressSnapshot:
    fraction: float
    status: str
    cancelled: bool

    def to_dict(self) -> dict:
        return {
            "fraction": self.fraction,
            "percent": round(self.fraction * 100, 1),
            "status": self.status,
            "cancelled": self.cancelled,
        }


Listener = Callable[[ProgressSnapshot], None]


class ProgressChannel:
    """Thread-safe progress fraction, status text and cancellation flag.

    The job is the only writer of fraction and status; any number of observers
    may read snapshots or subscribe. The fraction never decreases and the
    cancellation flag is never cleared once set.
    """

    def __init__(self, status: str = "Preparing download...") -> None:
        self._lock = threading.Lock()
        self._fraction = 0.0
        self._status = status
        self._cancelled = threading.Event()
        self._listeners: List[Listener] = []

    @property
    def fraction(self) -> float:
        with self._lock:
            return self._fraction

    @property
    def status(self) -> str:
        with self._lock:
            return self._status

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return ProgressSnapshot(self._fraction, self._status, self._cancelled.is_set())

    def update(self, fraction: Optional[float] = None, status: Optional[str] = None) -> None:
        with self._lock:
            if fraction is not None:
                self._fraction = max(self._fraction, min(1.0, max(0.0, fraction)))
            if status is not None:
                self._status = status
            snap = ProgressSnapshot(self._fraction, self._status, self._cancelled.is_set())
            listeners = list(self._listeners)
        for listener in listeners:
            listener(snap)

    def span(self, lo: float, hi: float) -> Callable[[float], None]:
        """Return a reporter mapping a phase-local 0..1 fraction into [lo, hi]."""

        def report(local: float) -> None:
            local = min(1.0, max(0.0, local))
            self.update(fraction=lo + (hi - lo) * local)

        return report

    def cancel(self) -> None:
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        log.info("Cancellation requested")
        self.update(status="Cancelling download...")

    def check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise Cancelled()

    def wait_cancelled(self, timeout: float) -> bool:
        return self._cancelled.wait(timeout)
