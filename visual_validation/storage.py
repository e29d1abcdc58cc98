"""
================================================================================
Blob Storage
================================================================================

Durable key/blob storage used by the corpus store and the model registry.

Contract:
    - put/get/list/exists/delete by slash-separated key
    - atomic single-key writes (readers never see a half-written blob)
    - per-name locks for serializing writers (in-process and cross-process)

Backends:
    - FileSystemBlobStorage: files under a root directory, filelock-based locks
    - InMemoryBlobStorage: process-local dictionary, threading locks

Author: Automation Team
License: MIT
================================================================================
"""

from __future__ import annotations

import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from filelock import FileLock, Timeout
from loguru import logger

from .errors import StorageError


# Keys are relative paths made of safe segments
_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+(/[A-Za-z0-9_.\-]+)*$")

# Directory (relative to the root) holding lock files
LOCK_DIR_NAME = ".locks"


def validate_key(key: str) -> str:
    """Reject keys that could escape the storage root."""
    if not key or not _KEY_PATTERN.match(key) or any(part in (".", "..") for part in key.split("/")):
        raise StorageError(f"Invalid storage key: {key!r}")
    return key


class BlobStorage(ABC):
    """Interface of the storage collaborator."""

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """Atomically write ``data`` under ``key``; durable once this returns."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the blob stored under ``key``; raises StorageError if absent."""

    @abstractmethod
    def list(self, prefix: str = "") -> List[str]:
        """Return all keys starting with ``prefix``, sorted."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``; missing keys are ignored."""

    @abstractmethod
    def lock(self, name: str, timeout: float = -1):
        """Context manager serializing writers that share ``name``."""

    def close(self) -> None:
        """Release backend resources."""


class InMemoryBlobStorage(BlobStorage):
    """
    Process-local storage for tests and throwaway runs.

    Writes replace the stored bytes object in a single dictionary assignment,
    which is atomic for concurrent readers.
    """

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def put(self, key: str, data: bytes) -> None:
        validate_key(key)
        with self._guard:
            self._blobs[key] = bytes(data)

    def get(self, key: str) -> bytes:
        validate_key(key)
        with self._guard:
            try:
                return self._blobs[key]
            except KeyError:
                raise StorageError(f"Key not found: {key}") from None

    def list(self, prefix: str = "") -> List[str]:
        with self._guard:
            return sorted(k for k in self._blobs if k.startswith(prefix))

    def exists(self, key: str) -> bool:
        with self._guard:
            return key in self._blobs

    def delete(self, key: str) -> None:
        with self._guard:
            self._blobs.pop(key, None)

    @contextmanager
    def lock(self, name: str, timeout: float = -1) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(name, threading.RLock())
        if not lock.acquire(timeout=timeout):
            raise StorageError(f"Timed out acquiring storage lock '{name}'")
        try:
            yield
        finally:
            lock.release()


class FileSystemBlobStorage(BlobStorage):
    """
    Directory-backed storage.

    Each put writes a temp file in the target directory, fsyncs it, renames it
    over the key with os.replace and fsyncs the directory, so a successful put
    survives a crash and readers observe either the old or the new blob.
    """

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock_dir = self.root / LOCK_DIR_NAME
        self._lock_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"File system blob storage at {self.root}")

    def _path(self, key: str) -> Path:
        return self.root.joinpath(*validate_key(key).split("/"))

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageError(f"Failed to write {key}: {e}") from e
        self._fsync_dir(path.parent)

    @staticmethod
    def _fsync_dir(directory: Path) -> None:
        if os.name != "posix":
            return
        dir_fd = os.open(str(directory), os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise StorageError(f"Key not found: {key}") from None
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    def list(self, prefix: str = "") -> List[str]:
        keys = []
        # Only walk the directory the prefix points into
        base = self.root
        if "/" in prefix:
            base = self.root.joinpath(*prefix.rsplit("/", 1)[0].split("/"))
            if not base.is_dir():
                return []
        for path in base.rglob("*"):
            if not path.is_file() or path.name.startswith("."):
                continue
            relative = path.relative_to(self.root)
            if relative.parts[0] == LOCK_DIR_NAME:
                continue
            key = "/".join(relative.parts)
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        self._fsync_dir(path.parent)

    @contextmanager
    def lock(self, name: str, timeout: float = -1) -> Iterator[None]:
        lock_file = self._lock_dir / f"{name.replace('/', '__')}.lock"
        file_lock = FileLock(str(lock_file), timeout=timeout)
        try:
            file_lock.acquire()
        except Timeout:
            raise StorageError(f"Timed out acquiring storage lock '{name}'") from None
        try:
            yield
        finally:
            file_lock.release()


def create_storage(config=None) -> BlobStorage:
    """
    Build the configured storage backend.

    Config keys:
        storage.backend: "filesystem" (default) or "memory"
        storage.root: root directory for the filesystem backend
    """
    backend = "filesystem"
    root: Optional[str] = None
    if config is not None:
        backend = str(config.get("storage.backend", backend)).lower()
        root = config.get("storage.root", None)

    if backend == "memory":
        return InMemoryBlobStorage()
    if backend == "filesystem":
        return FileSystemBlobStorage(root or ".visual_baselines")
    raise StorageError(f"Unknown storage backend: {backend}")


__all__ = [
    "BlobStorage",
    "InMemoryBlobStorage",
    "FileSystemBlobStorage",
    "create_storage",
    "validate_key",
]
