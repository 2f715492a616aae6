from __future__ import annotations

import json
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

from .models import ReviewRecord

_KEY_RE = re.compile(r"^[A-Za-z0-9!\-_.'()]{1,256}$")


class KeyValueStore(ABC):
    """Durable key-value store used for crawler state."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the stored value, or None if the key is absent."""

    @abstractmethod
    def put(self, key: str, value: bytes) -> None:
        """Store a value. Must be durable when this returns."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key if present."""


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, bytes]] = None) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, bytes] = dict(initial or {})
        self.put_count = 0

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)
            self.put_count += 1

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class FileKeyValueStore(KeyValueStore):
    """One file per key inside a directory.

    Writes go to a temporary file in the same directory which is fsynced and
    then atomically renamed over the target, so a reader never sees a torn
    value.
    """

    def __init__(self, directory: str) -> None:
        self._directory = directory
        self._lock = threading.Lock()
        os.makedirs(directory, exist_ok=True)

    def _path(self, key: str) -> str:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid key-value store key: {key!r}")
        return os.path.join(self._directory, f"{key}.json")

    def get(self, key: str) -> Optional[bytes]:
        try:
            with open(self._path(key), "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def put(self, key: str, value: bytes) -> None:
        path = self._path(key)
        with self._lock:
            fd, tmp_path = tempfile.mkstemp(prefix=f".{key}.", dir=self._directory)
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(value)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise

    def delete(self, key: str) -> None:
        with self._lock:
            try:
                os.unlink(self._path(key))
            except FileNotFoundError:
                pass


class DatasetSink(ABC):
    """Append-only destination for accepted review records."""

    @abstractmethod
    def append(self, records: Sequence[ReviewRecord]) -> None:
        """Persist records. The caller treats return as commit."""

    def close(self) -> None:
        """Release resources."""


class InMemoryDatasetSink(DatasetSink):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.records: List[ReviewRecord] = []
        self.batches: List[List[ReviewRecord]] = []

    def append(self, records: Sequence[ReviewRecord]) -> None:
        with self._lock:
            batch = list(records)
            self.batches.append(batch)
            self.records.extend(batch)


class JsonlDatasetSink(DatasetSink):
    """Stores review records as JSON Lines (.jsonl).

    Every append is written, flushed and fsynced before returning; appends
    from concurrent workers are serialized so lines never interleave.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._lock = threading.Lock()
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        self._file = open(path, "a", encoding="utf-8")

    def append(self, records: Sequence[ReviewRecord]) -> None:
        if not records:
            return
        lines = "".join(json.dumps(r.to_dict(), ensure_ascii=False) + "\n" for r in records)
        with self._lock:
            self._file.write(lines)
            self._file.flush()
            os.fsync(self._file.fileno())

    def close(self) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.close()
