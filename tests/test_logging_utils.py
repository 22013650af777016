import json


def test_activity_record_written_with_host_metadata(tmp_path, monkeypatch):
    from service import logging_utils

    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    logging_utils.write_activity_log({"event": "lookup", "dot_number": "1174814"})

    path = logging_utils.get_activity_log_path()
    assert path.startswith(str(tmp_path))
    (line,) = open(path, encoding="utf-8").read().splitlines()
    record = json.loads(line)
    assert record["event"] == "lookup"
    assert record["dot_number"] == "1174814"
    assert "ts" in record and "host" in record["_meta"]


def test_session_cookie_and_secret_keys_are_redacted():
    from service import logging_utils

    record = {
        "headers": {"Cookie": "ASPSESSIONIDQQ=abc123", "User-Agent": "carrier-sync"},
        "note": "retrying with ASPSESSIONIDQQ=abc123; path=/",
        "api_key": "k",
        "identifiers": ["1174814"],
    }
    out = logging_utils.redact(record)

    assert out["headers"]["Cookie"] == "***REDACTED***"
    assert out["headers"]["User-Agent"] == "carrier-sync"
    assert out["note"] == "retrying with ASPSESSIONIDQQ=***REDACTED***; path=/"
    assert out["api_key"] == "***REDACTED***"
    assert out["identifiers"] == ["1174814"]
    assert record["headers"]["Cookie"] == "ASPSESSIONIDQQ=abc123"


def test_error_log_uses_its_own_prefix(tmp_path, monkeypatch):
    from service import logging_utils

    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    monkeypatch.setenv("ERROR_LOG_PREFIX", "carrier-errors")
    logging_utils.write_error_log({"event": "registry_down"})

    (written,) = list(tmp_path.iterdir())
    assert written.name.startswith("carrier-errors-")
