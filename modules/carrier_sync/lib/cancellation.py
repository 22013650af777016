from __future__ import annotations

import threading
import time

from .models import SyncCancelled


class CancelToken:
    """
    Cooperative cancellation for a single job.

    Fires when either the shared `event` is set (runner timeout, operator stop)
    or the optional deadline passes. Checked before every item and honoured
    inside the rate-limit sleep.
    """

    def __init__(self, deadline_seconds: float | None = None, event: threading.Event | None = None) -> None:
        self._event = event or threading.Event()
        self._deadline = time.monotonic() + float(deadline_seconds) if deadline_seconds else None

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def cancel(self) -> None:
        self._event.set()

    def remaining(self) -> float | None:
        """Seconds until the deadline, or None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SyncCancelled("cancelled by caller")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise SyncCancelled("deadline exceeded")

    def wait(self, seconds: float) -> None:
        """
        Sleep up to `seconds`, waking early on cancellation.
        Raises SyncCancelled if the token fires before or during the wait.
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        remaining = self.remaining()
        timeout = seconds if remaining is None else min(seconds, remaining)
        self._event.wait(timeout=timeout)
        self.raise_if_cancelled()
        if remaining is not None and remaining < seconds:
            # Woke at the deadline boundary.
            raise SyncCancelled("deadline exceeded")
