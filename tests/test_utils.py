from datetime import datetime, timedelta, timezone

from wxheat.utils import env_flag, isoformat_z, parse_iso


def test_parse_iso_normalizes_to_utc():
    assert parse_iso("2025-01-15T10:30:00Z") == datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)
    assert parse_iso("2025-01-15T18:30:00+08:00") == datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)
    assert parse_iso("2025-01-15T10:30:00") == datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)
    assert parse_iso(datetime(2025, 1, 15, 10, 30)).tzinfo == timezone.utc
    assert parse_iso("") is None
    assert parse_iso("yesterday") is None
    assert parse_iso(None) is None


def test_isoformat_z():
    value = datetime(2025, 1, 15, 18, 30, 5, 999, tzinfo=timezone(timedelta(hours=8)))
    assert isoformat_z(value) == "2025-01-15T10:30:05Z"
    assert isoformat_z(datetime(2025, 1, 15, 10, 30)) == "2025-01-15T10:30:00Z"


def test_env_flag(monkeypatch):
    monkeypatch.setenv("WXH_TEST_FLAG", "On")
    assert env_flag("WXH_TEST_FLAG") is True
    monkeypatch.setenv("WXH_TEST_FLAG", "off")
    assert env_flag("WXH_TEST_FLAG", default=True) is False
    monkeypatch.setenv("WXH_TEST_FLAG", "  ")
    assert env_flag("WXH_TEST_FLAG", default=True) is True
