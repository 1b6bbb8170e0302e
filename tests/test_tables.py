from datetime import datetime, timedelta, timezone

import pytest

from headwind.output import colour_time
from headwind.tables import (
    DEFAULT_PREAUTH_KEY_EXPIRY,
    PREAUTHKEYS_HEADER,
    parse_expiration,
    preauthkeys_table,
    users_table,
)

NOW = datetime(2023, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_users_table_header_and_rows():
    created = datetime(2023, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    table = users_table([{"id": "1", "name": "alice", "createdAt": created}])
    assert table[0] == ["ID", "Name", "Created"]
    assert table[1] == ["1", "alice", created.strftime("%Y-%m-%d %H:%M:%S")]


def test_users_table_empty_has_only_header():
    assert users_table([]) == [["ID", "Name", "Created"]]


def test_users_table_missing_created_uses_epoch():
    table = users_table([{"id": "2", "name": "bob"}])
    assert table[1][2] == "1970-01-01 00:00:00"


def test_preauthkeys_header():
    assert preauthkeys_table([], NOW) == [PREAUTHKEYS_HEADER]
    assert PREAUTHKEYS_HEADER[0] == "ID"
    assert PREAUTHKEYS_HEADER[-1] == "Tags"


def test_preauthkeys_reusable_and_tags():
    created = datetime(2023, 5, 1, 8, 0, 0, tzinfo=timezone.utc)
    key = {
        "id": "7",
        "key": "token",
        "reusable": True,
        "ephemeral": False,
        "used": False,
        "createdAt": created,
        "aclTags": ["tag:a", "tag:b"],
    }
    row = preauthkeys_table([key], NOW)[1]
    assert row[:5] == ["7", "token", "true", "false", "false"]
    assert row[5] == "-"
    assert row[6] == created.strftime("%Y-%m-%d %H:%M:%S")
    assert row[7] == "tag:a,tag:b"


def test_preauthkeys_ephemeral_shows_not_applicable():
    key = {"id": "1", "key": "token", "reusable": True, "ephemeral": True, "used": True}
    row = preauthkeys_table([key], NOW)[1]
    assert row[2] == "N/A"
    assert row[3] == "true"
    assert row[4] == "true"
    assert row[7] == ""


def test_preauthkeys_expiration_is_coloured():
    future = NOW + timedelta(hours=2)
    past = NOW - timedelta(hours=2)
    rows = preauthkeys_table(
        [{"id": "1", "key": "token", "expiration": future},
         {"id": "2", "key": "token", "expiration": past}],
        NOW,
    )
    assert rows[1][5] == colour_time(future, NOW)
    assert rows[2][5] == colour_time(past, NOW)
    assert rows[1][5] != rows[2][5]


def test_parse_default_expiry():
    assert parse_expiration(DEFAULT_PREAUTH_KEY_EXPIRY) == timedelta(hours=1)


def test_parse_units_agree():
    assert parse_expiration("1d") == parse_expiration("24h")
    assert parse_expiration("1w") == parse_expiration("7d")
    assert parse_expiration("1h30m") == parse_expiration("90m")
    assert parse_expiration("1s") == parse_expiration("1000ms")
    assert parse_expiration("1y") == parse_expiration("365d")


def test_parse_zero():
    assert parse_expiration("0") == timedelta(0)


@pytest.mark.parametrize("text", ["", "abc", "1.5h", "30m1h", "-1h", "5"])
def test_parse_invalid(text):
    with pytest.raises(ValueError):
        parse_expiration(text)


def test_parse_overflow():
    with pytest.raises(ValueError):
        parse_expiration("1000y")