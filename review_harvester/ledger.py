from __future__ import annotations

import json
import logging
import math
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Union

from .errors import LedgerCorruption
from .logging_utils import log_event
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

LEDGER_KEY = "QUOTA_LEDGER"
SNAPSHOT_VERSION = 1


@dataclass
class LedgerEntry:
    accepted: int = 0
    cursor: Optional[str] = None
    finished: bool = False


class QuotaLedger:
    """Durable per-shop counters of accepted records.

    ``reserve`` is the only way a counter grows. Each shop has its own lock,
    held only around the counter update; the registry lock protects the
    mapping itself and is taken while a snapshot is serialized.

    Besides the counter each entry keeps a resume cursor (the next page still
    to visit) and a ``finished`` flag, persisted in the same snapshot so a
    single ``flush`` records count and position together.
    """

    def __init__(self, store: KeyValueStore, key: str = LEDGER_KEY) -> None:
        self._store = store
        self._key = key
        self._registry_lock = threading.RLock()
        self._locks: Dict[str, threading.Lock] = {}
        self._entries: Dict[str, LedgerEntry] = {}

    def load(self) -> None:
        """Replace in-memory state with the persisted snapshot.

        A missing snapshot means a fresh run. An unreadable one is logged and
        treated as empty: losing counts can only cause over-collection.
        """
        raw = self._store.get(self._key)
        if raw is None:
            entries: Dict[str, LedgerEntry] = {}
            log_event(logger, logging.INFO, "ledger_loaded", key=self._key, entities=0, fresh=True)
        else:
            try:
                entries = self._decode(raw)
            except LedgerCorruption as exc:
                log_event(logger, logging.WARNING, "ledger_corrupt", key=self._key, error=str(exc))
                entries = {}
            else:
                log_event(logger, logging.INFO, "ledger_loaded", key=self._key, entities=len(entries), fresh=False)
        with self._registry_lock:
            self._entries = entries
            self._locks = {}

    def flush(self) -> None:
        """Write the whole ledger to the store as one value."""
        with self._registry_lock:
            payload = self._encode()
            self._store.put(self._key, payload)
            count = len(self._entries)
        log_event(logger, logging.DEBUG, "ledger_flushed", key=self._key, entities=count)

    def reset(self) -> None:
        with self._registry_lock:
            self._entries = {}
            self._locks = {}
            self._store.delete(self._key)

    def _encode(self) -> bytes:
        doc = {
            "version": SNAPSHOT_VERSION,
            "entities": {
                entity: {"accepted": e.accepted, "cursor": e.cursor, "finished": e.finished}
                for entity, e in sorted(self._entries.items())
            },
        }
        return json.dumps(doc, ensure_ascii=False, sort_keys=True).encode("utf-8")

    @staticmethod
    def _decode(raw: bytes) -> Dict[str, LedgerEntry]:
        try:
            doc = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise LedgerCorruption(f"snapshot is not valid JSON: {exc}") from exc

        if not isinstance(doc, dict) or not isinstance(doc.get("entities"), dict):
            raise LedgerCorruption("snapshot has no 'entities' mapping")

        entries: Dict[str, LedgerEntry] = {}
        for entity, value in doc["entities"].items():
            if isinstance(value, int) and not isinstance(value, bool):
                value = {"accepted": value}
            if not isinstance(value, dict):
                raise LedgerCorruption(f"entry for {entity!r} is not an object")
            accepted = value.get("accepted", 0)
            cursor = value.get("cursor")
            if isinstance(accepted, bool) or not isinstance(accepted, int) or accepted < 0:
                raise LedgerCorruption(f"invalid accepted count for {entity!r}: {accepted!r}")
            if cursor is not None and not isinstance(cursor, str):
                raise LedgerCorruption(f"invalid cursor for {entity!r}: {cursor!r}")
            entries[entity] = LedgerEntry(
                accepted=accepted,
                cursor=cursor,
                finished=bool(value.get("finished", False)),
            )
        return entries

    def _lock_for(self, entity: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(entity)
            if lock is None:
                lock = self._locks[entity] = threading.Lock()
            self._entries.setdefault(entity, LedgerEntry())
            return lock

    def reserve(self, entity: str, requested: int, quota: Optional[int]) -> int:
        """Grant up to ``requested`` more records for ``entity`` under ``quota``.

        Returns the granted count, which has already been added to the
        counter. ``quota=None`` is unbounded and always grants everything.
        """
        if requested < 0:
            raise ValueError("requested must be non-negative")
        lock = self._lock_for(entity)
        with lock:
            with self._registry_lock:
                entry = self._entries[entity]
                if quota is None:
                    granted = requested
                else:
                    granted = max(0, min(requested, quota - entry.accepted))
                entry.accepted += granted
        return granted

    def release(self, entity: str, count: int) -> None:
        """Give back ``count`` granted records whose commit failed."""
        lock = self._lock_for(entity)
        with lock:
            with self._registry_lock:
                entry = self._entries[entity]
                entry.accepted = max(0, entry.accepted - count)

    def remaining(self, entity: str, quota: Optional[int]) -> Union[int, float]:
        if quota is None:
            return math.inf
        return max(0, quota - self.accepted(entity))

    def accepted(self, entity: str) -> int:
        with self._registry_lock:
            entry = self._entries.get(entity)
            return entry.accepted if entry else 0

    def checkpoint(self, entity: str, next_url: Optional[str], finished: bool) -> None:
        """Record where pagination for ``entity`` continues after a committed page."""
        with self._registry_lock:
            entry = self._entries.setdefault(entity, LedgerEntry())
            entry.cursor = None if finished else next_url
            entry.finished = finished

    def entry(self, entity: str) -> Optional[LedgerEntry]:
        with self._registry_lock:
            entry = self._entries.get(entity)
            if entry is None:
                return None
            return LedgerEntry(entry.accepted, entry.cursor, entry.finished)

    def snapshot(self) -> Dict[str, int]:
        with self._registry_lock:
            return {entity: e.accepted for entity, e in self._entries.items()}
