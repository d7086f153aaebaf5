"""
Cancellation signal for sync runs.
"""
from __future__ import annotations
import threading
import time
from typing import Optional


class CancelToken:
    """
    Caller-controlled stop signal with an optional deadline.

    Checked before each table and each batch; work already in flight is
    allowed to finish.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None when there is none."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())
