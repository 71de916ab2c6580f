"""Key-value storage backends.

Provides the persistence boundary for site-wide options and per-user
options, with an encrypted file backend for persistence at rest.
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cryptography.fernet import Fernet, InvalidToken

from sitekit_auth.exceptions import StorageError
from sitekit_auth.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = get_logger(__name__)

# Prefix shared by every option this package owns
NAMESPACE_PREFIX = "googlesitekit_"


class KeyValueStore(ABC):
    """Abstract base class for key-value storage.

    Values must be JSON-serializable. Writes are serialized by the
    store's lock, and ``merge`` is an atomic read-modify-write.
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the value stored under ``key`` or None."""

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""

    @abstractmethod
    async def merge(self, key: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Merge ``fields`` into the dict stored under ``key``.

        Returns:
            The merged record
        """

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Remove every key starting with ``prefix``.

        Returns:
            Number of keys removed
        """


def _merged(current: Any, fields: Mapping[str, Any]) -> dict[str, Any]:
    record = dict(current) if isinstance(current, dict) else {}
    record.update(copy.deepcopy(dict(fields)))
    return record


class InMemoryKeyValueStore(KeyValueStore):
    """In-memory storage.

    Values are lost on restart. Suitable for development and tests.
    """

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def merge(self, key: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        async with self._lock:
            record = _merged(self._data.get(key), fields)
            self._data[key] = record
            return copy.deepcopy(record)

    async def delete_prefix(self, prefix: str) -> int:
        async with self._lock:
            keys = [key for key in self._data if key.startswith(prefix)]
            for key in keys:
                del self._data[key]
            return len(keys)

    def clear(self) -> None:
        """Clear all stored values."""
        self._data.clear()


class EncryptedFileKeyValueStore(KeyValueStore):
    """Encrypted file-based storage.

    The whole key space is kept as one JSON document encrypted with
    Fernet. Writes go through a temp file and an atomic replace.
    """

    def __init__(self, encryption_key: str, file_path: str | Path) -> None:
        """Initialize encrypted file store.

        Args:
            encryption_key: Fernet-compatible encryption key
            file_path: Path to the storage file

        Raises:
            StorageError: If encryption key is invalid
        """
        try:
            self._fernet = Fernet(encryption_key.encode())
        except Exception as e:
            raise StorageError(f"Invalid encryption key: {e}") from e

        self._file_path = Path(file_path)
        self._lock = asyncio.Lock()
        self._data: dict[str, Any] = {}
        self._loaded = False

    async def _load(self) -> None:
        """Load and decrypt data from file."""
        if self._loaded:
            return

        if not self._file_path.exists():
            self._data = {}
            self._loaded = True
            return

        try:
            decrypted = self._fernet.decrypt(self._file_path.read_bytes())
            self._data = json.loads(decrypted.decode())
            self._loaded = True
            logger.debug("Loaded storage from %s", self._file_path)
        except InvalidToken:
            logger.error("Failed to decrypt storage file - wrong key?")
            raise StorageError("Failed to decrypt storage file") from None
        except json.JSONDecodeError as e:
            logger.error("Failed to parse storage file: %s", e)
            raise StorageError(f"Failed to parse storage file: {e}") from e

    async def _save(self, data: dict[str, Any]) -> None:
        """Encrypt and save ``data`` atomically, then make it current."""
        encrypted = self._fernet.encrypt(json.dumps(data).encode())

        dir_path = self._file_path.parent
        dir_path.mkdir(parents=True, exist_ok=True)

        fd, temp_path_str = tempfile.mkstemp(dir=dir_path)
        temp_path = Path(temp_path_str)
        try:
            os.write(fd, encrypted)
            os.close(fd)
            temp_path.replace(self._file_path)
        except Exception:
            os.close(fd)
            if temp_path.exists():
                temp_path.unlink()
            raise

        self._data = data
        logger.debug("Saved storage to %s", self._file_path)

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            await self._load()
            return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            await self._load()
            data = dict(self._data)
            data[key] = copy.deepcopy(value)
            await self._save(data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            await self._load()
            if key in self._data:
                data = dict(self._data)
                del data[key]
                await self._save(data)

    async def merge(self, key: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        async with self._lock:
            await self._load()
            record = _merged(self._data.get(key), fields)
            data = dict(self._data)
            data[key] = record
            await self._save(data)
            return copy.deepcopy(record)

    async def delete_prefix(self, prefix: str) -> int:
        async with self._lock:
            await self._load()
            keys = [key for key in self._data if key.startswith(prefix)]
            if keys:
                await self._save({k: v for k, v in self._data.items() if k not in keys})
            return len(keys)


def create_store(
    encryption_key: str | None = None,
    file_path: str | Path | None = None,
) -> KeyValueStore:
    """Create appropriate store based on configuration.

    Args:
        encryption_key: Optional Fernet encryption key
        file_path: Optional path for persistent storage

    Returns:
        Configured KeyValueStore instance
    """
    if file_path and encryption_key:
        return EncryptedFileKeyValueStore(encryption_key, file_path)
    return InMemoryKeyValueStore()


class Options:
    """Site-wide options."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    @staticmethod
    def _key(name: str) -> str:
        return f"site/{name}"

    async def get(self, name: str, default: Any = None) -> Any:
        value = await self._store.get(self._key(name))
        return default if value is None else value

    async def set(self, name: str, value: Any) -> None:
        await self._store.set(self._key(name), value)

    async def merge(self, name: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        return await self._store.merge(self._key(name), fields)

    async def delete(self, name: str) -> None:
        await self._store.delete(self._key(name))

    async def has(self, name: str) -> bool:
        return await self._store.get(self._key(name)) is not None


class UserOptions:
    """Options scoped to a single user."""

    def __init__(self, store: KeyValueStore, user_id: int) -> None:
        self._store = store
        self.user_id = user_id

    def _key(self, name: str) -> str:
        return f"user/{self.user_id}/{name}"

    async def get(self, name: str, default: Any = None) -> Any:
        value = await self._store.get(self._key(name))
        return default if value is None else value

    async def set(self, name: str, value: Any) -> None:
        await self._store.set(self._key(name), value)

    async def merge(self, name: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        return await self._store.merge(self._key(name), fields)

    async def delete(self, name: str) -> None:
        await self._store.delete(self._key(name))

    async def delete_all(self, prefix: str = NAMESPACE_PREFIX) -> int:
        """Delete every option of this user whose name starts with ``prefix``."""
        count = await self._store.delete_prefix(self._key(prefix))
        logger.debug("Deleted %d options for user %s", count, self.user_id)
        return count
