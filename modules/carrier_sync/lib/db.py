from __future__ import annotations

import contextlib
import json
import os
import sqlite3
import uuid
from collections.abc import Callable, Iterator
from dataclasses import fields
from datetime import datetime, timedelta
from typing import Any

from . import staleness
from .logging_bridge import error as log_error
from .models import (
    DATA_SOURCE_MANUAL,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    TERMINAL_STATUSES,
    CarrierRecord,
    PersistenceError,
    SyncJob,
    canonicalize,
)
from .utils import parse_iso, to_iso, utcnow

_CARRIER_COLUMNS = tuple(f.name for f in fields(CarrierRecord))
_TUPLE_COLUMNS = frozenset({"carrier_operation", "operation_classification", "cargo_carried"})
_BOOL_COLUMNS = frozenset({"interstate_operation", "hazmat_flag", "private_property_flag"})
# Columns an upsert must never overwrite on conflict.
_INSERT_ONLY_COLUMNS = frozenset({"dot_number", "created_at"})

_JOB_COLUMNS = (
    "id",
    "job_type",
    "status",
    "carriers_processed",
    "carriers_updated",
    "carriers_failed",
    "errors",
    "metadata",
    "created_by",
    "created_at",
    "started_at",
    "completed_at",
)
_JOB_COUNTERS = ("carriers_processed", "carriers_updated", "carriers_failed")


# ---- Module helpers ---------------------------------------------------------


def init_db(sqlite_path: str) -> None:
    """
    Ensure the SQLite database and schema exist.
    Safe to call multiple times.
    """
    _ensure_dir(sqlite_path)
    with contextlib.closing(_connect(sqlite_path)) as conn:
        _apply_pragmas(conn)
        _ensure_schema(conn)


def count_rows(sqlite_path: str, table: str = "carriers") -> int:
    """Return total rows in a table; 0 if DB missing/empty."""
    if table not in {"carriers", "sync_jobs"}:
        raise ValueError(f"unknown table {table!r}")
    if not os.path.exists(sqlite_path):
        return 0
    with contextlib.closing(_connect(sqlite_path)) as conn:
        _apply_pragmas(conn)
        _ensure_schema(conn)
        (n,) = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
    return int(n or 0)


def reset_db(sqlite_path: str) -> None:
    """
    Remove the DB file entirely (for pytest fixtures).
    Safe if it doesn't exist.
    """
    for suffix in ("", "-wal", "-shm"):
        with contextlib.suppress(FileNotFoundError):
            os.remove(sqlite_path + suffix)


# ---- Store ------------------------------------------------------------------


class CarrierStore:
    """
    SQLite-backed storage collaborator for the sync engine.

    Carriers are only ever upserted keyed by dot_number; jobs move
    pending -> running -> completed|failed and are finalized at most once.
    """

    def __init__(self, sqlite_path: str, clock: Callable[[], datetime] | None = None) -> None:
        self.sqlite_path = sqlite_path
        self._clock = clock or utcnow
        init_db(sqlite_path)

    def now(self) -> datetime:
        return self._clock()

    # ---- carriers ----
    def get_carrier(self, identifier: str) -> CarrierRecord | None:
        dot = canonicalize(identifier)
        with self._session() as conn:
            row = conn.execute(
                f"SELECT {', '.join(_CARRIER_COLUMNS)} FROM carriers WHERE dot_number = ?", (dot,)
            ).fetchone()
        return _row_to_carrier(row) if row else None

    def iter_carriers(self) -> Iterator[CarrierRecord]:
        with self._session() as conn:
            rows = conn.execute(f"SELECT {', '.join(_CARRIER_COLUMNS)} FROM carriers ORDER BY dot_number").fetchall()
        for row in rows:
            yield _row_to_carrier(row)

    def upsert_carrier(self, record: CarrierRecord) -> CarrierRecord:
        """
        Insert or update a verified carrier. last_verified and updated_at are the
        write time; created_at survives updates; the sync error counter resets.
        """
        ts = to_iso(self.now())
        values = _carrier_to_row(record)
        values.update({
            "dot_number": canonicalize(record.dot_number),
            "last_verified": ts,
            "updated_at": ts,
            "created_at": ts,
            "sync_error_count": 0,
        })
        cols = list(_CARRIER_COLUMNS)
        updates = ", ".join(f"{c} = excluded.{c}" for c in cols if c not in _INSERT_ONLY_COLUMNS)
        sql = (
            f"INSERT INTO carriers ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)}) "
            f"ON CONFLICT(dot_number) DO UPDATE SET {updates}"
        )
        try:
            with self._session() as conn:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute(sql, [values[c] for c in cols])
                conn.execute("COMMIT")
        except sqlite3.Error as e:
            log_error({
                "component": "carrier_sync.db",
                "op": "upsert_carrier",
                "sqlite_path": self.sqlite_path,
                "identifier": record.dot_number,
                "error": repr(e),
            })
            raise PersistenceError(f"upsert failed for {record.dot_number}: {e}") from e
        stored = self.get_carrier(values["dot_number"])
        if stored is None:
            raise PersistenceError(f"upsert of {record.dot_number} left no row behind")
        return stored

    def insert_manual_carrier(self, record: CarrierRecord) -> bool:
        """
        Add an operator-entered carrier (never verified). Returns False when the
        identifier already exists.
        """
        ts = to_iso(self.now())
        values = _carrier_to_row(record)
        values.update({
            "dot_number": canonicalize(record.dot_number),
            "data_source": DATA_SOURCE_MANUAL,
            "last_verified": None,
            "updated_at": record.updated_at or ts,
            "created_at": record.created_at or ts,
        })
        cols = list(_CARRIER_COLUMNS)
        with self._session() as conn:
            cur = conn.execute(
                f"INSERT OR IGNORE INTO carriers ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                [values[c] for c in cols],
            )
            return cur.rowcount == 1

    def record_sync_error(self, identifier: str) -> None:
        with self._session() as conn:
            conn.execute(
                "UPDATE carriers SET sync_error_count = sync_error_count + 1 WHERE dot_number = ?",
                (canonicalize(identifier),),
            )

    def update_quality_score(self, identifier: str, score: int) -> None:
        with self._session() as conn:
            conn.execute(
                "UPDATE carriers SET data_quality_score = ? WHERE dot_number = ?",
                (int(score), canonicalize(identifier)),
            )

    def list_stale_carriers(self, limit: int, now: datetime | None = None, *, force: bool = False) -> list[str]:
        return staleness.carriers_needing_sync(self.iter_carriers(), limit, now or self.now(), force=force)

    def list_unverified_manual(self, limit: int) -> list[str]:
        """Manually entered carriers never verified against the registry, newest first."""
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT dot_number FROM carriers
                 WHERE last_verified IS NULL AND data_source = ?
                 ORDER BY created_at DESC, dot_number ASC
                 LIMIT ?
                """,
                (DATA_SOURCE_MANUAL, int(limit)),
            ).fetchall()
        return [r[0] for r in rows]

    def known_identifiers(self) -> set[str]:
        with self._session() as conn:
            return {r[0] for r in conn.execute("SELECT dot_number FROM carriers")}

    def max_identifier(self) -> int | None:
        with self._session() as conn:
            (value,) = conn.execute("SELECT MAX(CAST(dot_number AS INTEGER)) FROM carriers").fetchone()
        return int(value) if value is not None else None

    # ---- jobs ----
    def create_job(
        self,
        job_type: str,
        metadata: dict[str, Any] | None = None,
        created_by: str | None = None,
    ) -> str:
        job_id = uuid.uuid4().hex
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO sync_jobs (id, job_type, status, errors, metadata, created_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (job_id, job_type, JOB_PENDING, "[]", _dumps(metadata or {}), created_by, to_iso(self.now())),
            )
        return job_id

    def mark_running(self, job_id: str) -> bool:
        with self._session() as conn:
            cur = conn.execute(
                "UPDATE sync_jobs SET status = ?, started_at = ? WHERE id = ? AND status = ?",
                (JOB_RUNNING, to_iso(self.now()), job_id, JOB_PENDING),
            )
            return cur.rowcount == 1

    def update_job(self, job_id: str, **changes: Any) -> bool:
        """
        Apply partial updates to a job that is not yet terminal.
        Accepts the counter columns, `errors` (replaces) and `metadata` (merged).
        """
        return self._write_job(job_id, changes, status=None)

    def finalize_job(
        self,
        job_id: str,
        status: str,
        *,
        processed: int,
        updated: int,
        failed: int,
        errors: list[str],
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Move a job to its terminal state. Returns False (and changes nothing)
        when the job was already finalized.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"finalize_job requires a terminal status, got {status!r}")
        changes: dict[str, Any] = {
            "carriers_processed": processed,
            "carriers_updated": updated,
            "carriers_failed": failed,
            "errors": list(errors),
        }
        if metadata:
            changes["metadata"] = metadata
        return self._write_job(job_id, changes, status=status)

    def get_job(self, job_id: str) -> SyncJob | None:
        with self._session() as conn:
            row = conn.execute(f"SELECT {', '.join(_JOB_COLUMNS)} FROM sync_jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def recent_jobs(self, limit: int = 20) -> list[SyncJob]:
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT {', '.join(_JOB_COLUMNS)} FROM sync_jobs ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [_row_to_job(r) for r in rows]

    def fail_abandoned_jobs(self, max_age_hours: float = 6.0) -> list[str]:
        """
        Fail jobs still pending/running after `max_age_hours` (left behind by a
        crashed process). Returns the ids that were finalized.
        """
        cutoff = self.now() - timedelta(hours=max_age_hours)
        with self._session() as conn:
            rows = conn.execute(
                "SELECT id, created_at, carriers_processed, carriers_updated, carriers_failed, errors "
                "FROM sync_jobs WHERE status IN (?, ?)",
                (JOB_PENDING, JOB_RUNNING),
            ).fetchall()
        swept: list[str] = []
        for job_id, created_at, processed, updated, failed, errors in rows:
            created = parse_iso(created_at)
            if created is not None and created > cutoff:
                continue
            errs = _loads(errors, [])
            errs.append(f"abandoned: still unfinished after {max_age_hours:g}h")
            if self.finalize_job(
                job_id,
                JOB_FAILED,
                processed=processed or 0,
                updated=updated or 0,
                failed=failed or 0,
                errors=errs,
                metadata={"abandoned": True},
            ):
                swept.append(job_id)
        return swept

    # ---- internal ----
    @contextlib.contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        conn = _connect(self.sqlite_path)
        try:
            _apply_pragmas(conn)
            yield conn
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _write_job(self, job_id: str, changes: dict[str, Any], *, status: str | None) -> bool:
        allowed = set(_JOB_COUNTERS) | {"errors", "metadata"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"update_job got unknown field(s): {sorted(unknown)}")

        with self._session() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT status, metadata FROM sync_jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None or row[0] in TERMINAL_STATUSES:
                conn.execute("ROLLBACK")
                return False

            sets: list[str] = []
            params: list[Any] = []
            for col in _JOB_COUNTERS:
                if col in changes:
                    sets.append(f"{col} = ?")
                    params.append(int(changes[col]))
            if "errors" in changes:
                sets.append("errors = ?")
                params.append(_dumps(list(changes["errors"])))
            if "metadata" in changes:
                merged = _loads(row[1], {})
                merged.update(changes["metadata"] or {})
                sets.append("metadata = ?")
                params.append(_dumps(merged))
            if status is not None:
                sets.extend(["status = ?", "completed_at = ?"])
                params.extend([status, to_iso(self.now())])
            if sets:
                conn.execute(f"UPDATE sync_jobs SET {', '.join(sets)} WHERE id = ?", (*params, job_id))
            conn.execute("COMMIT")
        return True


# ---- Row mapping ------------------------------------------------------------


def _carrier_to_row(record: CarrierRecord) -> dict[str, Any]:
    row: dict[str, Any] = {}
    for name in _CARRIER_COLUMNS:
        value = getattr(record, name)
        if name in _TUPLE_COLUMNS:
            value = _dumps(list(value or ()))
        elif name in _BOOL_COLUMNS and value is not None:
            value = int(bool(value))
        row[name] = value
    return row


def _row_to_carrier(row: tuple[Any, ...]) -> CarrierRecord:
    kwargs: dict[str, Any] = {}
    for name, value in zip(_CARRIER_COLUMNS, row):
        if name in _TUPLE_COLUMNS:
            value = tuple(_loads(value, []))
        elif name in _BOOL_COLUMNS and value is not None:
            value = bool(value)
        elif name == "sync_error_count":
            value = int(value or 0)
        kwargs[name] = value
    return CarrierRecord(**kwargs)


def _row_to_job(row: tuple[Any, ...]) -> SyncJob:
    data = dict(zip(_JOB_COLUMNS, row))
    data["errors"] = _loads(data["errors"], [])
    data["metadata"] = _loads(data["metadata"], {})
    for col in _JOB_COUNTERS:
        data[col] = int(data[col] or 0)
    return SyncJob(**data)


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def _loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


# ---- Internal utilities -----------------------------------------------------


def _ensure_dir(sqlite_path: str) -> None:
    d = os.path.dirname(os.path.abspath(sqlite_path)) or "."
    os.makedirs(d, exist_ok=True)


def _connect(sqlite_path: str) -> sqlite3.Connection:
    # isolation_level=None gives autocommit mode; we'll manage transactions explicitly.
    return sqlite3.connect(sqlite_path, timeout=30.0, isolation_level=None)


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    conn.execute("PRAGMA busy_timeout=30000;")


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS carriers (
          dot_number TEXT PRIMARY KEY,
          legal_name TEXT,
          dba_name TEXT,
          physical_address TEXT,
          city TEXT,
          state TEXT,
          phone TEXT,
          mc_number TEXT,
          entity_type TEXT,
          operating_status TEXT,
          out_of_service_date TEXT,
          safety_rating TEXT,
          safety_rating_date TEXT,
          safety_review_date TEXT,
          insurance_status TEXT,
          authority_status TEXT,
          vehicle_count INTEGER,
          driver_count INTEGER,
          mcs_150_date TEXT,
          total_mileage INTEGER,
          carrier_operation TEXT NOT NULL DEFAULT '[]',
          operation_classification TEXT NOT NULL DEFAULT '[]',
          cargo_carried TEXT NOT NULL DEFAULT '[]',
          interstate_operation INTEGER,
          hazmat_flag INTEGER,
          private_property_flag INTEGER,
          data_source TEXT NOT NULL DEFAULT 'registry',
          last_verified TEXT,
          updated_at TEXT,
          created_at TEXT NOT NULL,
          data_quality_score INTEGER,
          sync_error_count INTEGER NOT NULL DEFAULT 0
        );
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_carriers_verification
          ON carriers (data_source, last_verified);
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_jobs (
          id TEXT PRIMARY KEY,
          job_type TEXT NOT NULL,
          status TEXT NOT NULL,
          carriers_processed INTEGER NOT NULL DEFAULT 0,
          carriers_updated INTEGER NOT NULL DEFAULT 0,
          carriers_failed INTEGER NOT NULL DEFAULT 0,
          errors TEXT NOT NULL DEFAULT '[]',
          metadata TEXT NOT NULL DEFAULT '{}',
          created_by TEXT,
          created_at TEXT NOT NULL,
          started_at TEXT,
          completed_at TEXT
        );
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_sync_jobs_created
          ON sync_jobs (created_at);
        """
    )
