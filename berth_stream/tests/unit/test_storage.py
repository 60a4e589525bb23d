"""
Unit Tests for state stores.

Test Coverage:
- JSON file store (missing, save/load, corrupt documents)
- Redis store key layout and error translation
- Backend selection
"""

import json
import pytest
import redis
from unittest.mock import Mock

from berth_stream.config import StreamConfig
from berth_stream.core.storage import (
    JsonFileStore,
    MemoryStore,
    RedisStore,
    StorageError,
    create_store,
)


class TestJsonFileStore:

    def test_missing_key_loads_none(self, tmp_path):
        assert JsonFileStore(tmp_path).load("operations_state") is None

    def test_save_creates_directory_and_file(self, tmp_path):
        store = JsonFileStore(tmp_path / "nested" / "state")

        store.save("terminal_panel_state", {"is_open": True, "height": 500})

        path = tmp_path / "nested" / "state" / "terminal_panel_state.json"
        assert json.loads(path.read_text()) == {"is_open": True, "height": 500}
        assert store.load("terminal_panel_state") == {"is_open": True, "height": 500}

    def test_save_replaces_previous_value(self, tmp_path):
        store = JsonFileStore(tmp_path)

        store.save("k", [1])
        store.save("k", [2])

        assert store.load("k") == [2]
        assert [p.name for p in tmp_path.iterdir()] == ["k.json"]

    def test_corrupt_document_raises_storage_error(self, tmp_path):
        (tmp_path / "k.json").write_text("{not json")

        with pytest.raises(StorageError):
            JsonFileStore(tmp_path).load("k")

    def test_unserializable_value_raises_storage_error(self, tmp_path):
        with pytest.raises(StorageError):
            JsonFileStore(tmp_path).save("k", {"bad": object()})

    def test_delete(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.save("k", 1)

        store.delete("k")
        store.delete("k")

        assert store.load("k") is None


class TestRedisStore:

    def test_keys_are_prefixed(self):
        client = Mock()
        store = RedisStore(client, prefix="berth")

        store.save("operations_state", [{"operation_id": "op-1"}])

        client.set.assert_called_once_with("berth:operations_state", '[{"operation_id": "op-1"}]')

    def test_load_decodes_bytes(self):
        client = Mock()
        client.get.return_value = b'{"is_open": false, "height": 300}'

        value = RedisStore(client).load("terminal_panel_state")

        client.get.assert_called_once_with("berth:terminal_panel_state")
        assert value == {"is_open": False, "height": 300}

    def test_missing_key_loads_none(self):
        client = Mock()
        client.get.return_value = None

        assert RedisStore(client).load("k") is None

    def test_redis_errors_translated(self):
        client = Mock()
        client.get.side_effect = redis.ConnectionError("down")
        client.set.side_effect = redis.ConnectionError("down")
        store = RedisStore(client)

        with pytest.raises(StorageError):
            store.load("k")
        with pytest.raises(StorageError):
            store.save("k", 1)

    def test_corrupt_value_raises_storage_error(self):
        client = Mock()
        client.get.return_value = b"\x00garbage"

        with pytest.raises(StorageError):
            RedisStore(client).load("k")


class TestCreateStore:

    def test_file_backend(self, tmp_path):
        store = create_store(StreamConfig(storage_backend="file", state_dir=str(tmp_path)))

        assert isinstance(store, JsonFileStore)
        assert store.directory == tmp_path

    def test_memory_backend(self):
        assert isinstance(create_store(StreamConfig(storage_backend="memory")), MemoryStore)

    def test_redis_backend(self):
        store = create_store(StreamConfig(storage_backend="redis", redis_url="redis://cache:6379/2", redis_prefix="x"))

        assert isinstance(store, RedisStore)
        assert store.prefix == "x"

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_store(StreamConfig(storage_backend="sqlite"))
