import json
import pathlib

import pytest

from modules.carrier_sync.lib.models import CarrierRecord
from modules.carrier_sync.lib.registry_client import RegistryClient

EXAMPLE_CONFIG = pathlib.Path(__file__).resolve().parents[1] / "config.example.json"


@pytest.fixture
def cli_registry(monkeypatch, fake_http):
    """Route `carrier-sync lookup` through the fake HTTP layer."""
    monkeypatch.setattr(
        "modules.carrier_sync.lib.RegistryClient",
        lambda *args, **kwargs: RegistryClient(fake_http, delay_seconds=0),
    )
    return fake_http


def test_cli_run_rescore_prints_done(capsys, db_path):
    from service import cli

    rc = cli.main(["run", "modules.carrier_sync", "--kwargs", "action=rescore", f"sqlite_path={db_path}", "--print-meta"])
    assert rc == 0
    out, _ = capsys.readouterr()
    assert '"rescored": 0' in out
    assert "DONE" in out


def test_cli_run_site_down_returns_nonzero(capsys, db_path, monkeypatch):
    from service import cli, runner

    monkeypatch.setattr(runner, "_resolve_callable", lambda module: lambda **kw: {"status_code": 503, "message": "down"})
    rc = cli.main(["run", "modules.carrier_sync", "--kwargs", "action=batch"])
    assert rc == 1
    _, err = capsys.readouterr()
    assert "FAILURE: down" in err


def test_cli_run_bad_kwargs_fail(capsys, db_path):
    from service import cli

    rc = cli.main(["run", "modules.carrier_sync", "--kwargs", "action=purge", f"sqlite_path={db_path}"])
    assert rc == 1
    _, err = capsys.readouterr()
    assert "FAILURE" in err


def test_cli_kwargs_keep_leading_zero_identifiers():
    from service import cli

    assert cli._parse_kv_pairs(["identifier=0012345678", "limit=5", "force_refresh=true", "strategy=random"]) == {
        "identifier": "0012345678",
        "limit": 5,
        "force_refresh": True,
        "strategy": "random",
    }


def test_cli_jobs_empty_and_populated(capsys, db_path, store):
    from service import cli

    assert cli.main(["--db", db_path, "jobs"]) == 0
    assert "No sync jobs recorded." in capsys.readouterr().out

    job_id = store.create_job("sync_daily")
    store.finalize_job(job_id, "completed", processed=3, updated=2, failed=1, errors=[])
    assert cli.main(["--db", db_path, "jobs", "--limit", "5"]) == 0
    out = capsys.readouterr().out
    assert "sync_daily" in out
    assert "2/3 ok, 1 failed" in out


def test_cli_lookup_found_and_cached(capsys, db_path, cli_registry, snapshot_html):
    from service import cli

    cli_registry.pages["1174814"] = (200, snapshot_html())

    assert cli.main(["--db", db_path, "lookup", "USDOT 1174814"]) == 0
    first = json.loads(capsys.readouterr().out)
    assert first["status"] == "found"
    assert first["persisted"] is True

    assert cli.main(["--db", db_path, "lookup", "1174814"]) == 0
    second = json.loads(capsys.readouterr().out)
    assert second["status"] == "cached"
    assert cli_registry.posted == ["1174814"]


def test_cli_lookup_not_found_and_invalid(capsys, db_path, cli_registry):
    from service import cli

    assert cli.main(["--db", db_path, "lookup", "9999999"]) == 1
    assert json.loads(capsys.readouterr().out)["status_code"] == 404

    assert cli.main(["--db", db_path, "lookup", "12"]) == 1
    assert "ERROR" in capsys.readouterr().err


def test_cli_validate_and_list_example_config(capsys):
    from service import cli

    assert cli.main(["--config", str(EXAMPLE_CONFIG), "validate-config"]) == 0
    assert "OK" in capsys.readouterr().out

    assert cli.main(["--config", str(EXAMPLE_CONFIG), "list-jobs"]) == 0
    out = capsys.readouterr().out
    assert "carrier-sync-daily" in out
    assert "carrier-discovery" in out


def test_cli_validate_config_catches_bad_module_kwargs(capsys, tmp_path):
    from service import cli

    cfg = {
        "jobs": [
            {"id": "bad-sync", "module": "modules.carrier_sync", "cron": "0 2 * * *", "kwargs": {"job_type": "hourly"}}
        ]
    }
    p = tmp_path / "bad.json"
    p.write_text(json.dumps(cfg), encoding="utf-8")

    assert cli.main(["--config", str(p), "validate-config"]) == 1
    assert "bad-sync" in capsys.readouterr().err


def test_sweep_abandoned_jobs(db_path, store, clock):
    from service import cli

    job_id = store.create_job("sync_weekly")
    store.mark_running(job_id)
    # the sweep uses wall-clock time; the store's clock is pinned to 2025-01-01
    cli._sweep_abandoned_jobs(db_path)
    assert store.get_job(job_id).status == "failed"


def test_cli_seeded_carrier_visible_to_lookup(capsys, db_path, store, cli_registry):
    from service import cli

    store.upsert_carrier(CarrierRecord(dot_number="1000001", legal_name="SEEDED"))
    # store clock is in the past, so the CLI's real clock sees a stale record
    assert cli.main(["--db", db_path, "lookup", "1000001"]) == 1
    assert cli_registry.posted == ["1000001"]
