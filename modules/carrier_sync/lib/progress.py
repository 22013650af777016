from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from . import logging_bridge


@dataclass(frozen=True)
class ProgressEvent:
    """Emitted by the orchestrator after every item."""

    job_id: str
    current: int
    total: int
    identifier: str
    processed: int
    successful: int
    failed: int

    @property
    def percentage(self) -> int:
        return round(self.current / self.total * 100) if self.total else 100


ProgressListener = Callable[[ProgressEvent], None]


def is_due(event: ProgressEvent, every: int) -> bool:
    """True on every `every`-th item and on the last item."""
    every = max(1, int(every))
    return event.current % every == 0 or event.current == event.total


class ProgressChannel:
    """
    Fan-out of progress events to subscribers.

    The orchestrator publishes one event per item and never decides when to
    write; each subscriber applies its own cadence. A failing subscriber is
    logged and does not interrupt the batch.
    """

    def __init__(self) -> None:
        self._listeners: list[ProgressListener] = []

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def publish(self, event: ProgressEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logging_bridge.error({
                    "component": "carrier_sync.progress",
                    "op": "listener_failed",
                    "job_id": event.job_id,
                    "listener": getattr(listener, "__name__", type(listener).__name__),
                    "error": repr(e),
                })


class JobProgressRecorder:
    """Persists progress to the job row every `every` items and on the last one."""

    def __init__(self, store, job_id: str, every: int = 5) -> None:
        self._store = store
        self._job_id = job_id
        self._every = max(1, int(every))

    def __call__(self, event: ProgressEvent) -> None:
        if event.job_id != self._job_id:
            return
        if not is_due(event, self._every):
            return
        self._store.update_job(
            self._job_id,
            carriers_processed=event.processed,
            carriers_updated=event.successful,
            carriers_failed=event.failed,
            metadata={
                "progress_percentage": event.percentage,
                "current_identifier": event.identifier,
            },
        )


def callback_listener(on_progress: Callable[[int, int], None], every: int = 5) -> ProgressListener:
    """Adapt a plain on_progress(current, total) callback to the channel, at the same cadence."""

    def _listener(event: ProgressEvent) -> None:
        if is_due(event, every):
            on_progress(event.current, event.total)

    _listener.__name__ = getattr(on_progress, "__name__", "on_progress")
    return _listener
