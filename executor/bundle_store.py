"""
Bounded persistence for execution bundles.

Upsert by id, most-recent-first listing, and a retention cap that evicts the
oldest bundle once exceeded. Two backends share the BundleStore protocol:
an in-memory list (default) and a SQLite table that survives restarts.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Protocol, runtime_checkable

from executor.bundle_state import ExecutionBundle

logger = logging.getLogger(__name__)

MAX_BUNDLES = 200

_SCHEMA = """
CREATE TABLE IF NOT EXISTS bundles (
    bundle_id TEXT PRIMARY KEY,
    data_json TEXT NOT NULL,
    inserted_seq INTEGER NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_bundles_seq ON bundles(inserted_seq);
"""


class BundleNotFound(KeyError):
    pass


@runtime_checkable
class BundleStore(Protocol):
    def save(self, bundle: ExecutionBundle) -> None: ...

    def get(self, bundle_id: str) -> ExecutionBundle | None: ...

    def list(self, limit: int = 25) -> list[ExecutionBundle]: ...


class InMemoryBundleStore:
    """Newest bundle at index 0. Updates replace in place and keep position."""

    def __init__(self, max_bundles: int = MAX_BUNDLES) -> None:
        self._max_bundles = max_bundles
        self._bundles: list[ExecutionBundle] = []

    def save(self, bundle: ExecutionBundle) -> None:
        for i, existing in enumerate(self._bundles):
            if existing.bundle_id == bundle.bundle_id:
                self._bundles[i] = bundle
                return
        self._bundles.insert(0, bundle)
        while len(self._bundles) > self._max_bundles:
            evicted = self._bundles.pop()
            logger.debug("Evicted bundle %s (retention cap %d)", evicted.bundle_id, self._max_bundles)

    def get(self, bundle_id: str) -> ExecutionBundle | None:
        for b in self._bundles:
            if b.bundle_id == bundle_id:
                return b
        return None

    def list(self, limit: int = 25) -> list[ExecutionBundle]:
        return self._bundles[: max(1, limit)]

    def __len__(self) -> int:
        return len(self._bundles)


class SqliteBundleStore:
    """
    SQLite-backed bundle store. WAL mode; single-writer usage.

    Insertion order is tracked with a monotonically increasing sequence so
    an upsert keeps the bundle's first position, matching the in-memory
    store.
    """

    def __init__(self, db_path: str | Path, max_bundles: int = MAX_BUNDLES) -> None:
        self._db_path = str(db_path)
        self._max_bundles = max_bundles
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def save(self, bundle: ExecutionBundle) -> None:
        data_json = json.dumps(bundle.to_dict())
        now = time.time()
        with self._lock:
            conn = self._conn
            row = conn.execute(
                "SELECT inserted_seq FROM bundles WHERE bundle_id = ?", (bundle.bundle_id,)
            ).fetchone()
            if row is not None:
                conn.execute(
                    "UPDATE bundles SET data_json = ?, updated_at = ? WHERE bundle_id = ?",
                    (data_json, now, bundle.bundle_id),
                )
            else:
                (max_seq,) = conn.execute("SELECT COALESCE(MAX(inserted_seq), 0) FROM bundles").fetchone()
                conn.execute(
                    "INSERT INTO bundles (bundle_id, data_json, inserted_seq, updated_at) VALUES (?, ?, ?, ?)",
                    (bundle.bundle_id, data_json, max_seq + 1, now),
                )
                conn.execute(
                    """DELETE FROM bundles WHERE bundle_id IN (
                           SELECT bundle_id FROM bundles ORDER BY inserted_seq DESC LIMIT -1 OFFSET ?
                       )""",
                    (self._max_bundles,),
                )
            conn.commit()

    def get(self, bundle_id: str) -> ExecutionBundle | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM bundles WHERE bundle_id = ?", (bundle_id,)
            ).fetchone()
        if row is None:
            return None
        return ExecutionBundle.from_dict(json.loads(row[0]))

    def list(self, limit: int = 25) -> list[ExecutionBundle]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT data_json FROM bundles ORDER BY inserted_seq DESC LIMIT ?",
                (max(1, limit),),
            ).fetchall()
        return [ExecutionBundle.from_dict(json.loads(r[0])) for r in rows]

    def __len__(self) -> int:
        with self._lock:
            (count,) = self._conn.execute("SELECT COUNT(*) FROM bundles").fetchone()
        return count

    def close(self) -> None:
        with self._lock:
            self._conn.close()
