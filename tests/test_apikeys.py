from datetime import datetime, timedelta, timezone

import pytest

from headwind.apikeys import APIKeyError, APIKeyNotFound, APIKeyStore


@pytest.fixture
def store(tmp_path):
    with APIKeyStore(tmp_path / "keys.db") as key_store:
        yield key_store


def test_create_api_key(store):
    key_str, key = store.create(None)
    assert key.prefix
    assert key.hash
    assert key_str.startswith(key.prefix + ".")
    assert len(store.list()) == 1
    assert store.list()[0].prefix == key.prefix


def test_api_key_does_not_exist(store):
    with pytest.raises(APIKeyNotFound):
        store.get("does-not-exist")


def test_validate_api_key_ok(store):
    key_str, _ = store.create(datetime.now(timezone.utc) + timedelta(hours=2))
    assert store.validate(key_str) is True


def test_validate_api_key_not_ok(store):
    key_str, _ = store.create(datetime.now(timezone.utc) - timedelta(hours=2))
    assert store.validate(key_str) is False

    key_str_now, _ = store.create(datetime.now(timezone.utc))
    assert store.validate(key_str_now) is False

    with pytest.raises(APIKeyNotFound):
        store.validate("nota.validkey")

    with pytest.raises(APIKeyError, match="Failed to parse ApiKey"):
        store.validate("produceerrorkey")


def test_validate_wrong_secret(store):
    _, key = store.create(datetime.now(timezone.utc) + timedelta(hours=2))
    with pytest.raises(APIKeyError):
        store.validate(f"{key.prefix}.placeholder")


def test_expire_api_key(store):
    key_str, key = store.create(datetime.now(timezone.utc) + timedelta(hours=2))
    assert store.validate(key_str) is True
    store.expire(key)
    assert key.expiration is not None
    assert store.validate(key_str) is False
    assert store.get(key.prefix).expiration is not None


def test_get_by_id_and_destroy(store):
    _, key = store.create(None)
    assert store.get_by_id(key.id).prefix == key.prefix
    store.destroy(key)
    assert store.list() == []
    with pytest.raises(APIKeyNotFound):
        store.get_by_id(key.id)
    with pytest.raises(APIKeyNotFound):
        store.destroy(key)


def test_to_dict():
    store = APIKeyStore()
    try:
        expiration = datetime(2030, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        _, key = store.create(expiration)
        data = store.get(key.prefix).to_dict()
        assert data["id"] == key.id
        assert data["prefix"] == key.prefix
        assert data["expiration"] == "2030-01-02T03:04:05Z"
        assert "createdAt" in data
        assert "lastSeen" not in data
    finally:
        store.close()