# tests/test_carrier_store.py
import sqlite3

import pytest

from modules.carrier_sync.lib.db import CarrierStore, count_rows, init_db, reset_db
from modules.carrier_sync.lib.models import CarrierRecord, PersistenceError


def _carrier(dot="1174814", **kw):
    kw.setdefault("legal_name", "ACME TRUCKING LLC")
    return CarrierRecord(dot_number=dot, **kw)


def test_init_and_reset_db(tmp_path):
    dbp = str(tmp_path / "c.db")
    reset_db(dbp)
    init_db(dbp)
    init_db(dbp)  # idempotent
    assert count_rows(dbp) == 0
    assert count_rows(dbp, "sync_jobs") == 0
    reset_db(dbp)
    assert count_rows(dbp) == 0
    with pytest.raises(ValueError):
        count_rows(dbp, "sqlite_master")


def test_upsert_is_idempotent_and_keeps_created_at(store, clock, db_path):
    first = store.upsert_carrier(_carrier(carrier_operation=("Interstate",), hazmat_flag=False))
    assert first.created_at == "2025-01-01T00:00:00Z"
    assert first.last_verified == first.updated_at == first.created_at
    assert first.carrier_operation == ("Interstate",)
    assert first.hazmat_flag is False

    clock.advance(days=3)
    second = store.upsert_carrier(_carrier(legal_name="ACME TRUCKING INC"))
    assert count_rows(db_path) == 1
    assert second.legal_name == "ACME TRUCKING INC"
    assert second.created_at == first.created_at
    assert second.last_verified == "2025-01-04T00:00:00Z"
    assert second.carrier_operation == ()


def test_upsert_resets_sync_error_count(store):
    store.upsert_carrier(_carrier())
    store.record_sync_error("1174814")
    store.record_sync_error("1174814")
    assert store.get_carrier("1174814").sync_error_count == 2
    assert store.upsert_carrier(_carrier()).sync_error_count == 0


def test_record_sync_error_ignores_unknown_carrier(store, db_path):
    store.record_sync_error("7654321")
    assert count_rows(db_path) == 0


def test_upsert_wraps_sqlite_errors(store, monkeypatch):
    def _boom(self):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(CarrierStore, "_session", _boom)
    with pytest.raises(PersistenceError):
        store.upsert_carrier(_carrier())


def test_upsert_raises_when_row_cannot_be_read_back(store, monkeypatch):
    monkeypatch.setattr(store, "get_carrier", lambda identifier: None)
    with pytest.raises(PersistenceError, match="left no row"):
        store.upsert_carrier(_carrier())


def test_insert_manual_and_list_unverified(store, clock):
    assert store.insert_manual_carrier(_carrier("1000001"))
    clock.advance(hours=1)
    assert store.insert_manual_carrier(_carrier("1000002"))
    assert not store.insert_manual_carrier(_carrier("1000002"))
    store.upsert_carrier(_carrier("1000003"))

    manual = store.get_carrier("1000001")
    assert manual.data_source == "manual"
    assert manual.last_verified is None
    assert store.list_unverified_manual(10) == ["1000002", "1000001"]
    assert store.list_unverified_manual(1) == ["1000002"]


def test_list_stale_carriers_uses_store_clock(store, clock):
    store.upsert_carrier(_carrier("1000001"))
    clock.advance(hours=100)
    store.upsert_carrier(_carrier("1000002"))
    clock.advance(hours=100)
    # 1000001 is 200h old, 1000002 only 100h
    assert store.list_stale_carriers(10) == ["1000001"]
    assert store.list_stale_carriers(10, force=True) == ["1000001", "1000002"]


def test_known_and_max_identifier(store):
    assert store.max_identifier() is None
    store.upsert_carrier(_carrier("999999"))
    store.upsert_carrier(_carrier("1000005"))
    assert store.known_identifiers() == {"999999", "1000005"}
    assert store.max_identifier() == 1000005


def test_quality_score_update(store):
    store.upsert_carrier(_carrier())
    store.update_quality_score("1174814", 87)
    assert store.get_carrier("1174814").data_quality_score == 87


# ---------------------------------------------------------------------
# jobs
# ---------------------------------------------------------------------
def test_job_lifecycle_and_single_finalize(store, clock):
    job_id = store.create_job("batch", metadata={"total": 2}, created_by="ops")
    job = store.get_job(job_id)
    assert (job.status, job.created_by, job.metadata) == ("pending", "ops", {"total": 2})

    assert store.mark_running(job_id)
    assert not store.mark_running(job_id)
    assert store.update_job(job_id, carriers_processed=1, metadata={"progress_percentage": 50})

    clock.advance(minutes=2)
    assert store.finalize_job(
        job_id, "completed", processed=2, updated=1, failed=1, errors=["9999999: not found in registry"]
    )
    job = store.get_job(job_id)
    assert job.status == "completed"
    assert (job.carriers_processed, job.carriers_updated, job.carriers_failed) == (2, 1, 1)
    assert job.errors == ["9999999: not found in registry"]
    assert job.metadata == {"total": 2, "progress_percentage": 50}
    assert job.completed_at == "2025-01-01T00:02:00Z"

    # terminal jobs are frozen
    assert not store.finalize_job(job_id, "failed", processed=0, updated=0, failed=0, errors=[])
    assert not store.update_job(job_id, carriers_processed=99)
    assert store.get_job(job_id).status == "completed"


def test_finalize_requires_terminal_status(store):
    job_id = store.create_job("batch")
    with pytest.raises(ValueError):
        store.finalize_job(job_id, "running", processed=0, updated=0, failed=0, errors=[])


def test_update_job_rejects_unknown_fields(store):
    job_id = store.create_job("batch")
    with pytest.raises(ValueError):
        store.update_job(job_id, status="completed")


def test_recent_jobs_newest_first(store, clock):
    a = store.create_job("sync_daily")
    clock.advance(minutes=1)
    b = store.create_job("sync_weekly")
    assert [j.id for j in store.recent_jobs()] == [b, a]
    assert [j.id for j in store.recent_jobs(limit=1)] == [b]


def test_fail_abandoned_jobs(store, clock):
    old = store.create_job("sync_daily")
    store.mark_running(old)
    clock.advance(hours=7)
    recent = store.create_job("sync_daily")

    assert store.fail_abandoned_jobs(max_age_hours=6) == [old]
    job = store.get_job(old)
    assert job.status == "failed"
    assert job.metadata["abandoned"] is True
    assert job.errors[-1].startswith("abandoned")
    assert store.get_job(recent).status == "pending"


def test_default_clock_stamps_wall_time(db_path, frozen_utc):
    default_store = CarrierStore(db_path)
    default_store.upsert_carrier(CarrierRecord(dot_number="1174814", legal_name="ACME TRUCKING LLC"))

    stored = default_store.get_carrier("1174814")
    assert stored.created_at == "2025-01-01T00:00:00Z"
    assert stored.updated_at == "2025-01-01T00:00:00Z"
