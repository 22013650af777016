# tests/test_carrier_sync_config.py
import pytest

from modules.carrier_sync.lib.config import DEFAULT_SQLITE_PATH, ConfigError, Settings


def test_defaults(monkeypatch):
    monkeypatch.delenv("CARRIER_SYNC_DB", raising=False)
    s = Settings.from_env_and_kwargs({})
    assert s.action == "sync"
    assert s.job_type == "daily"
    assert s.limit == 50
    assert s.delay_seconds == 2.0
    assert s.sqlite_path == DEFAULT_SQLITE_PATH
    assert s.skip_network is False


def test_sqlite_path_falls_back_to_env(monkeypatch, tmp_path):
    monkeypatch.setenv("CARRIER_SYNC_DB", str(tmp_path / "env.db"))
    assert Settings.from_env_and_kwargs({}).sqlite_path == str(tmp_path / "env.db")
    assert Settings.from_env_and_kwargs({"sqlite_path": "/x/y.db"}).sqlite_path == "/x/y.db"


def test_batch_identifiers_from_string_and_list():
    s = Settings.from_env_and_kwargs({"action": "batch", "identifiers": "1174814, USDOT 2,000,001"})
    assert s.identifiers == ["1174814", "2000001"]
    s = Settings.from_env_and_kwargs({"action": "batch", "identifiers": [1174814, "2000001"]})
    assert s.identifiers == ["1174814", "2000001"]


def test_string_flags_and_numbers():
    s = Settings.from_env_and_kwargs(
        {"action": "Discover", "strategy": "RANDOM", "limit": "7", "delay_seconds": 0, "skip_network": "yes"}
    )
    assert (s.action, s.strategy, s.limit) == ("discover", "random", 7)
    assert s.delay_seconds == 0.0
    assert s.skip_network is True


@pytest.mark.parametrize(
    "kwargs",
    [
        {"action": "purge"},
        {"action": "sync", "job_type": "hourly"},
        {"action": "discover", "strategy": "alphabetical"},
        {"action": "lookup"},
        {"action": "lookup", "identifier": "123"},
        {"action": "batch"},
        {"action": "batch", "identifiers": ["1174814", "12"]},
        {"action": "batch", "identifiers": [str(1_000_000 + i) for i in range(101)]},
        {"limit": -1},
        {"limit": "many"},
        {"delay_seconds": -0.5},
        {"deadline_seconds": 0},
        {"base_url": "ftp://safer"},
    ],
)
def test_invalid_settings_raise_config_error(kwargs):
    with pytest.raises(ConfigError):
        Settings.from_env_and_kwargs(kwargs)


def test_start_identifier_is_canonicalized():
    s = Settings.from_env_and_kwargs({"action": "discover", "start_identifier": "3,000,000"})
    assert s.start_identifier == "3000000"
