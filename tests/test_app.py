from datetime import datetime, timezone

import pytest

from headwind.app import (
    StateTracker,
    UnsupportedDatabase,
    build_db_string,
    ensure_unix_socket_absent,
)
from headwind.models import User


def test_sqlite_db_string_is_path(tmp_path):
    db_path = str(tmp_path / "headwind_test.db")
    assert build_db_string("sqlite3", path=db_path) == db_path


def test_postgres_db_string_ssl_disabled():
    result = build_db_string("postgres", host="db", name="hs", user="admin", ssl="false")
    assert result == "host=db dbname=hs user=admin sslmode=disable"


def test_postgres_db_string_ssl_enabled_adds_nothing():
    result = build_db_string("postgres", host="db", name="hs", user="admin", ssl="true")
    assert result == "host=db dbname=hs user=admin"


def test_postgres_db_string_custom_sslmode_port_and_password():
    password = "password"
    result = build_db_string(
        "postgres",
        host="db",
        name="hs",
        user="admin",
        ssl="require",
        port=5432,
        password=password,
    )
    assert result == "host=db dbname=hs user=admin sslmode=require port=5432 password=password"


def test_postgres_empty_ssl_is_used_as_mode():
    result = build_db_string("postgres", host="h", name="n", user="u")
    assert result == "host=h dbname=n user=u sslmode="


def test_unsupported_database():
    with pytest.raises(UnsupportedDatabase):
        build_db_string("mysql")


def test_ensure_unix_socket_absent_removes_file(tmp_path):
    sock = tmp_path / "headwind.sock"
    sock.write_text("")
    ensure_unix_socket_absent(sock)
    assert not sock.exists()


def test_ensure_unix_socket_absent_missing_file(tmp_path):
    sock = tmp_path / "missing.sock"
    ensure_unix_socket_absent(sock)
    assert not sock.exists()


def _clock(*times):
    it = iter(times)
    return lambda: next(it)


T1 = datetime(2023, 1, 1, tzinfo=timezone.utc)
T2 = datetime(2023, 1, 2, tzinfo=timezone.utc)
T3 = datetime(2023, 1, 3, tzinfo=timezone.utc)


def test_last_change_empty_returns_now():
    tracker = StateTracker(clock=_clock(T1))
    assert tracker.last_change() == T1


def test_set_now_records_for_users():
    tracker = StateTracker(clock=_clock(T1, T2))
    assert tracker.set_now([User(name="joe")]) == T1
    assert tracker.set_now(["marc"]) == T2
    assert tracker.last_change(User(name="joe")) == T1
    assert tracker.last_change("marc") == T2


def test_last_change_without_filter_returns_latest():
    tracker = StateTracker(clock=_clock(T1, T2))
    tracker.set_now(["joe"])
    tracker.set_now(["marc"])
    assert tracker.last_change() == T2


def test_last_change_filter_with_multiple_users_returns_latest():
    tracker = StateTracker(clock=_clock(T2, T1))
    tracker.set_now(["joe"])
    tracker.set_now(["marc"])
    assert tracker.last_change("joe", "marc") == T2


def test_last_change_unknown_user_returns_now():
    tracker = StateTracker(clock=_clock(T1, T3))
    tracker.set_now(["joe"])
    assert tracker.last_change("mickael") == T3


def test_set_now_overwrites_previous_time():
    tracker = StateTracker(clock=_clock(T1, T3))
    tracker.set_now(["joe"])
    tracker.set_now(["joe"])
    assert tracker.last_change("joe") == T3