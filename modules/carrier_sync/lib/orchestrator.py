"""
Job orchestration for registry synchronization.

Features:
  - Strictly sequential lookups with a cancellable sleep before every request
  - Job lifecycle pending -> running -> completed|failed, finalized in `finally`
  - Abort-on-outage: a SiteDown result stops the run and marks the job failed
  - Per-item failures (not found, parse failure, non-carrier, persistence) are
    counted and recorded but never fail the job
  - Progress events published per item; persistence cadence lives in the recorder
  - Dependency injection for testability (`client`, `store`)
"""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import Any

from . import classifier, discovery, logging_bridge, quality, staleness
from .cancellation import CancelToken
from .mapper import map_snapshot
from .models import (
    JOB_COMPLETED,
    JOB_FAILED,
    TRACKED_CHANGE_FIELDS,
    CarrierRecord,
    DiscoveryAttempt,
    Found,
    LookupResult,
    NotFound,
    ParseFailure,
    PersistenceError,
    RegistrySession,
    RegistryUnavailable,
    SiteDown,
    SyncCancelled,
    canonicalize,
)
from .progress import JobProgressRecorder, ProgressChannel, ProgressEvent, callback_listener
from .utils import to_iso

SYNC_JOB_TYPES: dict[str, int | None] = {
    # job type -> multiplier applied to `limit` for the stale worklist (None: unverified manual records)
    "daily": 1,
    "weekly": 3,
    "new-carriers": None,
}
NOTHING_TO_SYNC = "No carriers found needing sync"
SITE_DOWN_MESSAGE = "Registry is currently unavailable. Please try again later."
MAX_RECORDED_CHANGES = 50


# =============================================================================
# RESULT TYPES
# =============================================================================
@dataclass
class ItemOutcome:
    identifier: str
    accepted: bool
    record: CarrierRecord | None = None
    error: str | None = None
    changes: dict[str, list[Any]] | None = None


@dataclass
class Tally:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    accepted: list[CarrierRecord] = field(default_factory=list)
    attempts: list[DiscoveryAttempt] = field(default_factory=list)
    changes: dict[str, dict[str, list[Any]]] = field(default_factory=dict)

    def add(self, outcome: ItemOutcome) -> None:
        self.processed += 1
        self.attempts.append(
            DiscoveryAttempt(
                identifier=outcome.identifier,
                accepted=outcome.accepted,
                record=outcome.record if outcome.accepted else None,
                error=outcome.error,
            )
        )
        if outcome.accepted:
            self.successful += 1
            if outcome.record is not None:
                self.accepted.append(outcome.record)
            if outcome.changes and len(self.changes) < MAX_RECORDED_CHANGES:
                self.changes[outcome.identifier] = outcome.changes
        else:
            self.failed += 1
            if outcome.error:
                self.errors.append(outcome.error)

    @property
    def success_rate(self) -> int:
        return round(self.successful / self.processed * 100) if self.processed else 0


@dataclass
class BatchOutcome:
    job_id: str
    job_type: str
    status: str
    tally: Tally
    site_down: str | None = None
    cancelled: bool = False
    message: str | None = None

    @property
    def processed(self) -> int:
        return self.tally.processed

    @property
    def successful(self) -> int:
        return self.tally.successful

    @property
    def failed(self) -> int:
        return self.tally.failed

    @property
    def errors(self) -> list[str]:
        return self.tally.errors

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "status": self.status,
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "success_rate": self.tally.success_rate,
            "errors": list(self.errors),
            "status_code": 503 if self.site_down else 200,
        }
        if self.site_down:
            out["site_down"] = self.site_down
            out["message"] = SITE_DOWN_MESSAGE
        elif self.message:
            out["message"] = self.message
        if self.cancelled:
            out["cancelled"] = True
        return out


@dataclass
class LookupOutcome:
    """Result of an ad-hoc single lookup; returned, never raised."""

    identifier: str
    status: str
    result: LookupResult | None = None
    record: CarrierRecord | None = None
    persisted: bool = False
    from_cache: bool = False
    error: str | None = None

    _STATUS_CODES = {
        "cached": 200,
        "found": 200,
        "rejected": 422,
        "not_found": 404,
        "parse_failure": 502,
        "site_down": 503,
    }

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "identifier": self.identifier,
            "status": self.status,
            "status_code": self._STATUS_CODES.get(self.status, 500),
            "persisted": self.persisted,
            "from_cache": self.from_cache,
        }
        if self.record is not None:
            out["legal_name"] = self.record.legal_name
            out["entity_type"] = self.record.entity_type
            out["data_quality_score"] = self.record.data_quality_score
        if self.error:
            out["error"] = self.error
        if isinstance(self.result, SiteDown):
            out["site_down"] = self.result.reason
        if isinstance(self.result, ParseFailure):
            out["snippet"] = self.result.snippet
        return out


def _attempt_summary(attempt: DiscoveryAttempt) -> dict[str, Any]:
    out: dict[str, Any] = {"identifier": attempt.identifier, "accepted": attempt.accepted, "error": attempt.error}
    if attempt.accepted and attempt.record is not None:
        out["record"] = {
            "dot_number": attempt.record.dot_number,
            "legal_name": attempt.record.legal_name,
            "entity_type": attempt.record.entity_type,
        }
    return out


# =============================================================================
# ORCHESTRATOR
# =============================================================================
class JobOrchestrator:
    def __init__(
        self,
        client,
        store,
        *,
        delay_seconds: float | None = None,
        progress_every: int = 5,
        created_by: str | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.delay_seconds = client.delay_seconds if delay_seconds is None else float(delay_seconds)
        self.progress_every = max(1, int(progress_every))
        self.created_by = created_by

    # -------------------------------------------------------------------------
    # BATCH
    # -------------------------------------------------------------------------
    def run_batch(
        self,
        identifiers: Iterable[str],
        *,
        job_type: str = "batch",
        metadata: dict[str, Any] | None = None,
        on_progress: Callable[[int, int], None] | None = None,
        cancel: CancelToken | None = None,
    ) -> BatchOutcome:
        """
        Look up each identifier in order and persist accepted carriers.

        Raises InvalidIdentifier before creating a job if any identifier is
        malformed. Unexpected exceptions are re-raised after the job is failed.
        """
        cancel = cancel or CancelToken()
        worklist = [canonicalize(i) for i in identifiers]
        meta = {**(metadata or {}), "total": len(worklist)}
        if not worklist:
            meta.setdefault("message", NOTHING_TO_SYNC)

        job_id = self.store.create_job(job_type, metadata=meta, created_by=self.created_by)
        channel = self._channel(job_id, on_progress)
        tally = Tally()
        status = JOB_FAILED
        site_down: str | None = None
        cancelled = False
        t0 = time.perf_counter_ns()

        try:
            self.store.mark_running(job_id)
            self._log("batch_start", job_id=job_id, job_type=job_type, total=len(worklist))
            self._execute(job_id, worklist, len(worklist), tally, cancel, channel, site_down_counts=True)
            status = JOB_COMPLETED
        except RegistryUnavailable as exc:
            site_down = exc.reason
            self._log_site_down(job_id, exc)
        except SyncCancelled as exc:
            cancelled = True
            tally.errors.append(f"cancelled: {exc}")
        except Exception as exc:
            tally.errors.append(f"unexpected error: {exc}")
            logging_bridge.error({
                "component": "carrier_sync.orchestrator",
                "op": "batch_exception",
                "job_id": job_id,
                "error": repr(exc),
            })
            raise
        finally:
            self._finalize(job_id, status, tally, site_down=site_down, cancelled=cancelled, started_ns=t0)

        return BatchOutcome(
            job_id=job_id,
            job_type=job_type,
            status=status,
            tally=tally,
            site_down=site_down,
            cancelled=cancelled,
            message=meta.get("message"),
        )

    # -------------------------------------------------------------------------
    # SCHEDULED SYNC
    # -------------------------------------------------------------------------
    def run_sync(
        self,
        job_type: str,
        limit: int,
        *,
        force: bool = False,
        cancel: CancelToken | None = None,
    ) -> dict[str, Any]:
        """Select a worklist for the sync type and run it as one batch job."""
        if job_type not in SYNC_JOB_TYPES:
            raise ValueError(f"unknown sync job type {job_type!r}; expected one of {sorted(SYNC_JOB_TYPES)}")
        if int(limit) <= 0:
            raise ValueError("limit must be >= 1")

        multiplier = SYNC_JOB_TYPES[job_type]
        if multiplier is None:
            max_carriers = int(limit)
            worklist = self.store.list_unverified_manual(max_carriers)
        else:
            max_carriers = int(limit) * multiplier
            worklist = self.store.list_stale_carriers(max_carriers, force=force)

        outcome = self.run_batch(
            worklist,
            job_type=f"sync_{job_type}",
            metadata={"sync_type": job_type, "max_carriers": max_carriers, "force": bool(force)},
            cancel=cancel,
        )
        return outcome.to_dict()

    # -------------------------------------------------------------------------
    # DISCOVERY
    # -------------------------------------------------------------------------
    def run_discovery(
        self,
        strategy: str,
        limit: int,
        *,
        start_identifier: str | int | None = None,
        cancel: CancelToken | None = None,
        rng=None,
    ) -> dict[str, Any]:
        """
        Search for unknown identifiers until `limit` carriers are accepted or the
        attempt cap is reached. SiteDown aborts without counting the attempt.
        """
        if int(limit) <= 0:
            raise ValueError("limit must be >= 1")
        cancel = cancel or CancelToken()
        limit = int(limit)

        # Read once per run; concurrent jobs may still race (upserts converge).
        known = self.store.known_identifiers()
        max_known = max((int(k) for k in known), default=None)
        start = int(canonicalize(start_identifier)) if start_identifier not in (None, "") else None
        strat = discovery.build(strategy, max_known=max_known, start_identifier=start, rng=rng)
        plan = discovery.AttemptPlan(strat, known, limit)

        job_type = f"discovery_{strat.kind}"
        job_id = self.store.create_job(
            job_type,
            metadata={**strat.describe(), "limit": limit, "max_attempts": plan.max_attempts, "known": len(known)},
            created_by=self.created_by,
        )
        channel = self._channel(job_id, None)
        tally = Tally()
        status = JOB_FAILED
        site_down: str | None = None
        cancelled = False
        t0 = time.perf_counter_ns()

        def _until_limit():
            # Check before drawing so a satisfied run does not spend an attempt.
            candidates = iter(plan)
            while tally.successful < limit:
                candidate = next(candidates, None)
                if candidate is None:
                    return
                yield candidate

        try:
            self.store.mark_running(job_id)
            self._log("discovery_start", job_id=job_id, **strat.describe(), limit=limit)
            self._execute(job_id, _until_limit(), plan.max_attempts, tally, cancel, channel, site_down_counts=False)
            status = JOB_COMPLETED
        except RegistryUnavailable as exc:
            site_down = exc.reason
            self._log_site_down(job_id, exc)
        except SyncCancelled as exc:
            cancelled = True
            tally.errors.append(f"cancelled: {exc}")
        except Exception as exc:
            tally.errors.append(f"unexpected error: {exc}")
            logging_bridge.error({
                "component": "carrier_sync.orchestrator",
                "op": "discovery_exception",
                "job_id": job_id,
                "error": repr(exc),
            })
            raise
        finally:
            self._finalize(
                job_id,
                status,
                tally,
                site_down=site_down,
                cancelled=cancelled,
                started_ns=t0,
                extra={
                    "attempts": plan.attempts,
                    "skipped_known": plan.skipped,
                    "new_carriers": [r.dot_number for r in tally.accepted],
                },
            )

        discovered = tally.successful
        out: dict[str, Any] = {
            "job_id": job_id,
            "strategy": strat.kind,
            "status": status,
            "discovered": discovered,
            "attempts": plan.attempts,
            "failed": tally.failed,
            "success_rate": round(discovered / plan.attempts * 100) if plan.attempts else 0,
            "new_carriers": [{"dot_number": r.dot_number, "legal_name": r.legal_name} for r in tally.accepted],
            "results": [_attempt_summary(a) for a in tally.attempts],
            "status_code": 503 if site_down else 200,
        }
        if site_down:
            out["site_down"] = site_down
            out["message"] = SITE_DOWN_MESSAGE
        if cancelled:
            out["cancelled"] = True
        return out

    # -------------------------------------------------------------------------
    # AD-HOC LOOKUP
    # -------------------------------------------------------------------------
    def lookup_one(
        self,
        identifier: str,
        *,
        force: bool = False,
        persist: bool = True,
        cancel: CancelToken | None = None,
    ) -> LookupOutcome:
        """
        Single lookup for interactive callers. Serves the stored record when it
        is still fresh; otherwise queries the registry. The scraped record is
        returned even when persisting it fails.
        """
        dot = canonicalize(identifier)
        existing = self.store.get_carrier(dot)
        if existing is not None and not staleness.needs_refresh(existing, self.store.now(), force=force):
            return LookupOutcome(identifier=dot, status="cached", record=existing, from_cache=True)

        result = self.client.lookup(dot, cancel=cancel)
        if isinstance(result, SiteDown):
            return LookupOutcome(identifier=dot, status="site_down", result=result, error=result.reason)
        if isinstance(result, NotFound):
            return LookupOutcome(identifier=dot, status="not_found", result=result, error="not found in registry")
        if isinstance(result, ParseFailure):
            return LookupOutcome(identifier=dot, status="parse_failure", result=result, error=result.reason)

        record = map_snapshot(result.snapshot)
        reason = classifier.rejection_reason(record)
        if reason:
            return LookupOutcome(identifier=dot, status="rejected", result=result, record=record, error=reason)
        if not persist:
            return LookupOutcome(identifier=dot, status="found", result=result, record=record)

        try:
            stored, _changes = self._persist(record)
        except (PersistenceError, sqlite3.Error) as e:
            return LookupOutcome(
                identifier=dot, status="found", result=result, record=record, error=f"persistence failed: {e}"
            )
        return LookupOutcome(identifier=dot, status="found", result=result, record=stored, persisted=True)

    # -------------------------------------------------------------------------
    # RESCORE
    # -------------------------------------------------------------------------
    def rescore_all(self) -> dict[str, int]:
        """Recompute data_quality_score for every stored carrier."""
        now = self.store.now()
        rescored = flagged = 0
        for record in self.store.iter_carriers():
            value = quality.score(record, now)
            if value != record.data_quality_score:
                self.store.update_quality_score(record.dot_number, value)
            rescored += 1
            if value < quality.VERIFICATION_THRESHOLD:
                flagged += 1
        self._log("rescore", rescored=rescored, needs_verification=flagged)
        return {"rescored": rescored, "needs_verification": flagged}

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------
    def _channel(self, job_id: str, on_progress: Callable[[int, int], None] | None) -> ProgressChannel:
        channel = ProgressChannel()
        channel.subscribe(JobProgressRecorder(self.store, job_id, every=self.progress_every))
        if on_progress is not None:
            channel.subscribe(callback_listener(on_progress, every=self.progress_every))
        return channel

    def _execute(
        self,
        job_id: str,
        items: Iterable[str],
        total: int,
        tally: Tally,
        cancel: CancelToken,
        channel: ProgressChannel,
        *,
        site_down_counts: bool,
    ) -> None:
        session: RegistrySession | None = None
        for index, identifier in enumerate(items, start=1):
            cancel.raise_if_cancelled()
            if session is None:
                session = self.client.open_session(cancel)
            # Pace every request, including the first one after the landing page.
            self.client.sleep(self.delay_seconds, cancel)
            try:
                outcome = self._process_item(identifier, session, cancel)
            except RegistryUnavailable as exc:
                if site_down_counts:
                    tally.processed += 1
                    tally.failed += 1
                    tally.errors.append(f"{identifier}: registry unavailable ({exc.reason})")
                raise
            tally.add(outcome)
            channel.publish(
                ProgressEvent(
                    job_id=job_id,
                    current=index,
                    total=max(total, index),
                    identifier=identifier,
                    processed=tally.processed,
                    successful=tally.successful,
                    failed=tally.failed,
                )
            )

    def _process_item(self, identifier: str, session: RegistrySession, cancel: CancelToken) -> ItemOutcome:
        result = self.client.lookup(identifier, session=session, cancel=cancel)

        if isinstance(result, SiteDown):
            raise RegistryUnavailable(result.reason, identifier)
        if isinstance(result, NotFound):
            self._note_sync_error(identifier)
            return ItemOutcome(identifier, False, error=f"{identifier}: not found in registry")
        if isinstance(result, ParseFailure):
            self._note_sync_error(identifier)
            return ItemOutcome(identifier, False, error=f"{identifier}: {result.reason}")
        if not isinstance(result, Found):
            raise TypeError(f"unexpected lookup result {result!r}")

        record = map_snapshot(result.snapshot)
        reason = classifier.rejection_reason(record)
        if reason:
            return ItemOutcome(identifier, False, record=record, error=f"{identifier}: {reason}")

        try:
            stored, changes = self._persist(record)
        except (PersistenceError, sqlite3.Error) as e:
            return ItemOutcome(identifier, False, record=record, error=f"{identifier}: persistence failed: {e}")
        return ItemOutcome(identifier, True, record=stored, changes=changes)

    def _persist(self, record: CarrierRecord) -> tuple[CarrierRecord, dict[str, list[Any]]]:
        existing = self.store.get_carrier(record.dot_number)
        now = self.store.now()
        # Score the row as the upsert will write it: verified now, error counter reset.
        merged = replace(quality.merge(existing, record), last_verified=to_iso(now), sync_error_count=0)
        merged.data_quality_score = quality.score(merged, now)
        stored = self.store.upsert_carrier(merged)

        changes: dict[str, list[Any]] = {}
        if existing is not None:
            for name in TRACKED_CHANGE_FIELDS:
                old, new = getattr(existing, name), getattr(stored, name)
                if old != new:
                    changes[name] = [old, new]
        if changes:
            self._log("carrier_changed", identifier=stored.dot_number, changes=changes)
        return stored, changes

    def _note_sync_error(self, identifier: str) -> None:
        try:
            self.store.record_sync_error(identifier)
        except sqlite3.Error as e:
            logging_bridge.error({
                "component": "carrier_sync.orchestrator",
                "op": "record_sync_error",
                "identifier": identifier,
                "error": repr(e),
            })

    def _finalize(
        self,
        job_id: str,
        status: str,
        tally: Tally,
        *,
        site_down: str | None,
        cancelled: bool,
        started_ns: int,
        extra: dict[str, Any] | None = None,
    ) -> None:
        metadata: dict[str, Any] = {
            "final_stats": {
                "successful": tally.successful,
                "failed": tally.failed,
                "success_rate": tally.success_rate,
            },
            "duration_ms": int((time.perf_counter_ns() - started_ns) // 1_000_000),
        }
        if status == JOB_COMPLETED:
            metadata["progress_percentage"] = 100
        if site_down:
            metadata["site_down"] = site_down
        if cancelled:
            metadata["cancelled"] = True
        if tally.changes:
            metadata["changes"] = tally.changes
        metadata.update(extra or {})

        try:
            finalized = self.store.finalize_job(
                job_id,
                status,
                processed=tally.processed,
                updated=tally.successful,
                failed=tally.failed,
                errors=tally.errors,
                metadata=metadata,
            )
        except Exception as e:
            # Never mask the error that ended the run.
            logging_bridge.error({
                "component": "carrier_sync.orchestrator",
                "op": "finalize_failed",
                "job_id": job_id,
                "status": status,
                "error": repr(e),
            })
            return

        self._log(
            "job_finalized",
            job_id=job_id,
            status=status,
            finalized=finalized,
            processed=tally.processed,
            successful=tally.successful,
            failed=tally.failed,
            site_down=site_down,
            cancelled=cancelled,
            duration_ms=metadata["duration_ms"],
        )

    def _log_site_down(self, job_id: str, exc: RegistryUnavailable) -> None:
        logging_bridge.error({
            "component": "carrier_sync.orchestrator",
            "op": "site_down_abort",
            "job_id": job_id,
            "identifier": exc.identifier,
            "reason": exc.reason,
        })

    @staticmethod
    def _log(op: str, **fields: Any) -> None:
        logging_bridge.activity({"component": "carrier_sync.orchestrator", "op": op, **fields})
