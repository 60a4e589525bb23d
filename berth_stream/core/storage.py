"""
State Stores - Durable key/value storage for client state.

Holds the small amount of client state that outlives a process:
- operations_state: capped list of completed operations
- terminal_panel_state: terminal panel {is_open, height} preference

Backends:
- JsonFileStore: one JSON document per key under a state directory
- RedisStore: one JSON string per key, namespaced as {prefix}:{key}
- MemoryStore: process-local, for tests and ephemeral runs

Stores raise StorageError on any backend failure; owners decide whether
the failure is fatal (it never is for the registries).

Author: Backend Lead Developer
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)

__all__ = [
    "StateStore",
    "JsonFileStore",
    "RedisStore",
    "MemoryStore",
    "StorageError",
    "create_store",
]


class StorageError(Exception):
    """Raised when a state store cannot read or write a key."""
    pass


class StateStore:
    """Interface for JSON-compatible key/value state."""

    def load(self, key: str) -> Optional[Any]:
        """
        Load the value stored under ``key``.

        Returns:
            Decoded value, or None when the key has never been saved

        Raises:
            StorageError: On backend or decode failure
        """
        raise NotImplementedError

    def save(self, key: str, value: Any) -> None:
        """
        Replace the value stored under ``key``.

        Raises:
            StorageError: On backend or encode failure
        """
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryStore(StateStore):
    """Dict-backed store. Values are round-tripped through JSON like the others."""

    __slots__ = ('_data',)

    def __init__(self):
        self._data: dict[str, str] = {}

    def load(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def save(self, key: str, value: Any) -> None:
        try:
            self._data[key] = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Cannot encode {key}: {e}") from e

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore(StateStore):
    """
    One ``<key>.json`` file per key.

    Writes go to a temporary file in the same directory and are renamed into
    place, so a crash never leaves a half-written document.
    """

    __slots__ = ('directory',)

    def __init__(self, directory: str | os.PathLike):
        self.directory = Path(directory).expanduser()

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def load(self, key: str) -> Optional[Any]:
        path = self._path(key)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

    def save(self, key: str, value: Any) -> None:
        path = self._path(key)
        try:
            payload = json.dumps(value, indent=2)
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    f.write(payload)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Cannot write {path}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot delete {key}: {e}") from e


class RedisStore(StateStore):
    """
    Redis-backed store.

    Data Model:
    - {prefix}:{key} -> String (JSON document)
    """

    __slots__ = ('redis', 'prefix')

    def __init__(self, redis_client: redis.Redis, prefix: str = "berth"):
        """
        Initialize Redis store.

        Args:
            redis_client: Synchronous Redis client instance
            prefix: Namespace prepended to every key
        """
        self.redis = redis_client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def load(self, key: str) -> Optional[Any]:
        try:
            raw = self.redis.get(self._key(key))
        except redis.RedisError as e:
            raise StorageError(f"Redis GET {self._key(key)} failed: {e}") from e

        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt value at {self._key(key)}: {e}") from e

    def save(self, key: str, value: Any) -> None:
        try:
            self.redis.set(self._key(key), json.dumps(value))
        except (TypeError, ValueError) as e:
            raise StorageError(f"Cannot encode {key}: {e}") from e
        except redis.RedisError as e:
            raise StorageError(f"Redis SET {self._key(key)} failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.redis.delete(self._key(key))
        except redis.RedisError as e:
            raise StorageError(f"Redis DEL {self._key(key)} failed: {e}") from e


def create_store(config: Any) -> StateStore:
    """
    Build the store selected by ``config.storage_backend``.

    Args:
        config: StreamConfig (or anything with the same attributes)
    """
    backend = config.storage_backend.lower()
    if backend == "redis":
        client = redis.Redis.from_url(config.redis_url)
        logger.info(f"Using Redis state store at {config.redis_url}")
        return RedisStore(client, prefix=config.redis_prefix)
    if backend == "memory":
        return MemoryStore()
    if backend == "file":
        logger.info(f"Using file state store in {config.state_dir}")
        return JsonFileStore(config.state_dir)
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")
