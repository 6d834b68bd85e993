"""
Durable local key/value storage.

This module provides an abstract string key/value interface and
implementations for an in-process dictionary and the local disk. Both
enforce a capacity bound and raise StorageQuotaError when a write would
exceed it, mirroring the quota behaviour of browser local storage.
"""

import fcntl
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List

from .exceptions import StorageError, StorageQuotaError

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY_BYTES = 5 * 1024 * 1024

KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.:-]+$")


def _entry_size(key: str, value: str) -> int:
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


class KeyValueStorage(ABC):
    """
    Abstract base class for durable string storage.

    Implementations must make ``set`` atomic: after a failed write the
    previous value is still readable.
    """

    capacity_bytes: int

    @abstractmethod
    def get(self, key: str) -> str | None:
        """
        Read the value stored under ``key``.

        Returns:
            The stored string, or None if the key is absent

        Raises:
            StorageError: If reading fails
        """

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """
        Store ``value`` under ``key``, replacing any previous value.

        Raises:
            StorageQuotaError: If the write would exceed capacity
            StorageError: If writing fails
        """

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove ``key``. Removing an absent key is not an error."""

    @abstractmethod
    def keys(self) -> List[str]:
        """List all stored keys."""

    @abstractmethod
    def used_bytes(self) -> int:
        """Total size of all stored entries."""

    def _check_quota(self, key: str, value: str) -> None:
        current = self.get(key)
        freed = _entry_size(key, current) if current is not None else 0
        requested = self.used_bytes() - freed + _entry_size(key, value)
        if requested > self.capacity_bytes:
            raise StorageQuotaError(
                f"Storage quota exceeded writing {key!r}: "
                f"{requested} > {self.capacity_bytes} bytes",
                capacity_bytes=self.capacity_bytes,
                requested_bytes=requested,
            )


class InMemoryStorage(KeyValueStorage):
    """Dictionary-backed storage. Contents are lost with the process."""

    def __init__(self, capacity_bytes: int = DEFAULT_CAPACITY_BYTES):
        self.capacity_bytes = capacity_bytes
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._check_quota(key, value)
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self._data)

    def used_bytes(self) -> int:
        return sum(_entry_size(k, v) for k, v in self._data.items())


class LocalDiskStorage(KeyValueStorage):
    """
    Local file system storage implementation.

    Each key is stored as one file under ``base_path``. Writes go to a
    temporary file that is renamed into place, and file locks guard against
    concurrent processes reading half-written values.
    """

    def __init__(
        self,
        base_path: str | Path | None = None,
        capacity_bytes: int = DEFAULT_CAPACITY_BYTES,
    ):
        """
        Initialize local disk storage.

        Args:
            base_path: Directory holding the stored values.
                      Defaults to ~/.draftsync/storage/
            capacity_bytes: Maximum total size of all stored entries
        """
        if base_path is None:
            base_path = Path.home() / ".draftsync" / "storage"

        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.capacity_bytes = capacity_bytes

    def _path_for(self, key: str) -> Path:
        if not key or not KEY_PATTERN.match(key) or key.startswith("."):
            raise StorageError(f"Invalid storage key: {key!r}")
        return self.base_path / f"{key}.json"

    def get(self, key: str) -> str | None:
        path = self._path_for(key)
        if not path.exists():
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    return f.read()
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    def set(self, key: str, value: str) -> None:
        path = self._path_for(key)
        self._check_quota(key, value)

        try:
            fd, temp_path = tempfile.mkstemp(
                dir=self.base_path,
                prefix=f".{path.name}.",
                suffix=".tmp",
                text=True,
            )

            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                    try:
                        f.write(value)
                        f.flush()
                        os.fsync(f.fileno())
                    finally:
                        fcntl.flock(f.fileno(), fcntl.LOCK_UN)

                os.replace(temp_path, path)
            except BaseException:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
                raise

        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e

        logger.debug(f"Stored {key} ({len(value)} chars)")

    def remove(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to remove {key}: {e}") from e

    def keys(self) -> List[str]:
        return sorted(
            p.stem for p in self.base_path.glob("*.json") if not p.name.startswith(".")
        )

    def used_bytes(self) -> int:
        total = 0
        for key in self.keys():
            try:
                size = (self.base_path / f"{key}.json").stat().st_size
            except FileNotFoundError:
                continue
            total += len(key.encode("utf-8")) + size
        return total
