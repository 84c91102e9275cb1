# =============================================================================
# d3_core/offline/local_database.py
# Local SQLite Store for Offline Operations
# =============================================================================
"""
LocalStore - SQLite-backed durable key-value store with named partitions,
plus the append-only mutation queue.

Features:
- Partitioned key-value cache (responses, group context, passages, ...)
- Auto-incrementing queue ids, FIFO listing by createdAt
- Every call is atomic and committed before it returns
- Every storage failure surfaces as StorageUnavailable
"""

from __future__ import annotations
import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
import logging

import pandas as pd

from d3_core.errors import StorageUnavailable
from d3_core.offline.models import MutationIntent, now_ms

logger = logging.getLogger(__name__)


@dataclass
class StoredEntry:
    """A cached value together with the time it was written."""
    key: str
    value: Any
    cached_at: int


class LocalStore:
    """
    Local SQLite database for offline data storage.

    Partitions are namespaced by a column of the primary key, so equal keys
    in different partitions never collide.
    """

    # Default database location
    DEFAULT_DB_PATH = Path("local_data") / "d3_offline.db"

    SCHEMA = {
        "kv_store": """
            CREATE TABLE IF NOT EXISTS kv_store (
                partition TEXT NOT NULL,
                key TEXT NOT NULL,
                value_json TEXT NOT NULL,
                cached_at INTEGER NOT NULL,
                PRIMARY KEY (partition, key)
            )
        """,
        "mutation_queue": """
            CREATE TABLE IF NOT EXISTS mutation_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                payload_json TEXT
            )
        """,
        "kv_store_cached_at": """
            CREATE INDEX IF NOT EXISTS idx_kv_store_cached_at
            ON kv_store (partition, cached_at)
        """,
    }

    _instance: Optional[LocalStore] = None
    _instance_lock = threading.Lock()

    def __init__(self, db_path: Optional[Path] = None):
        """
        Initialize local store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._lock = threading.RLock()
        self._initialized = False

    @classmethod
    def get_instance(cls, db_path: Optional[Path] = None) -> LocalStore:
        """Get or create singleton instance."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = LocalStore(db_path)
        return cls._instance

    # =========================================================================
    # CONNECTION HANDLING
    # =========================================================================

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "connection", None) is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=10)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            self._local.connection = conn
            self._connections.append(conn)
        return self._local.connection

    @contextmanager
    def _guard(self, operation: str, partition: Optional[str] = None) -> Iterator[sqlite3.Connection]:
        """Serialize one call, commit it, and map storage failures."""
        with self._lock:
            try:
                conn = self._get_connection()
                try:
                    yield conn
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
            except (sqlite3.Error, OSError) as e:
                logger.error(f"Local store {operation} failed: {e}")
                raise StorageUnavailable(
                    f"Local storage unavailable: {e}",
                    operation=operation,
                    partition=partition,
                ) from e

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._guard("initialize") as conn:
            for name, schema in self.SCHEMA.items():
                conn.execute(schema)
                logger.debug(f"Created/verified schema object: {name}")

        self._initialized = True
        logger.info(f"Local store initialized at: {self.db_path}")

    # =========================================================================
    # PARTITIONED KEY-VALUE OPERATIONS
    # =========================================================================

    def put(self, partition: str, key: str, value: Any, cached_at: Optional[int] = None) -> None:
        """
        Write a value, replacing whatever was stored under the same key.

        Args:
            partition: Partition name
            key: Key within the partition
            value: JSON-serialisable value
            cached_at: Write time in epoch milliseconds (default: now)
        """
        value_json = json.dumps(value, ensure_ascii=False)
        with self._guard("put", partition) as conn:
            conn.execute(
                """
                INSERT INTO kv_store (partition, key, value_json, cached_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (partition, key)
                DO UPDATE SET value_json = excluded.value_json, cached_at = excluded.cached_at
                """,
                [partition, key, value_json, cached_at if cached_at is not None else now_ms()],
            )

    def get_entry(self, partition: str, key: str) -> Optional[StoredEntry]:
        """Return the stored entry with its write time, or None if absent."""
        with self._guard("get", partition) as conn:
            row = conn.execute(
                "SELECT key, value_json, cached_at FROM kv_store WHERE partition = ? AND key = ?",
                [partition, key],
            ).fetchone()
        if row is None:
            return None
        return self._to_entry(partition, row)

    def get(self, partition: str, key: str, default: Any = None) -> Any:
        """Return the stored value, or ``default`` if absent."""
        entry = self.get_entry(partition, key)
        return entry.value if entry is not None else default

    def delete(self, partition: str, key: str) -> bool:
        """Delete a key. Returns True if something was removed."""
        with self._guard("delete", partition) as conn:
            cursor = conn.execute(
                "DELETE FROM kv_store WHERE partition = ? AND key = ?",
                [partition, key],
            )
            return cursor.rowcount > 0

    def scan(self, partition: str, prefix: str = "") -> List[StoredEntry]:
        """Return every entry of a partition whose key starts with ``prefix``."""
        with self._guard("scan", partition) as conn:
            rows = conn.execute(
                """
                SELECT key, value_json, cached_at FROM kv_store
                WHERE partition = ? AND substr(key, 1, ?) = ?
                ORDER BY key
                """,
                [partition, len(prefix), prefix],
            ).fetchall()
        entries = [self._to_entry(partition, row) for row in rows]
        return [entry for entry in entries if entry is not None]

    def count(self, partition: str) -> int:
        with self._guard("count", partition) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM kv_store WHERE partition = ?",
                [partition],
            ).fetchone()
        return row["n"] if row else 0

    def prune(
        self,
        partition: str,
        max_entries: Optional[int] = None,
        max_age_ms: Optional[int] = None,
    ) -> int:
        """
        Evict entries from a partition by age and/or count.

        Args:
            partition: Partition to prune
            max_entries: Keep at most this many entries (newest cached_at win)
            max_age_ms: Drop entries older than this many milliseconds

        Returns:
            Number of entries removed
        """
        removed = 0
        with self._guard("prune", partition) as conn:
            if max_age_ms is not None:
                cutoff = now_ms() - max_age_ms
                cursor = conn.execute(
                    "DELETE FROM kv_store WHERE partition = ? AND cached_at < ?",
                    [partition, cutoff],
                )
                removed += cursor.rowcount
            if max_entries is not None:
                cursor = conn.execute(
                    """
                    DELETE FROM kv_store
                    WHERE partition = ? AND key NOT IN (
                        SELECT key FROM kv_store WHERE partition = ?
                        ORDER BY cached_at DESC, key DESC
                        LIMIT ?
                    )
                    """,
                    [partition, partition, max(max_entries, 0)],
                )
                removed += cursor.rowcount
        if removed:
            logger.info(f"Pruned {removed} entries from '{partition}'")
        return removed

    def _to_entry(self, partition: str, row: sqlite3.Row) -> Optional[StoredEntry]:
        try:
            value = json.loads(row["value_json"])
        except json.JSONDecodeError:
            logger.warning(f"Unreadable cache entry {partition}/{row['key']}; treating as missing")
            return None
        return StoredEntry(key=row["key"], value=value, cached_at=row["cached_at"])

    # =========================================================================
    # MUTATION QUEUE
    # =========================================================================

    def append_queue(self, intent: MutationIntent) -> int:
        """Append an intent durably and return its assigned id."""
        return self.append_queue_raw(intent.kind.value, intent.created_at, intent.payload_json())

    def append_queue_raw(self, kind: str, created_at: int, payload_json: Optional[str]) -> int:
        """
        Append an already-serialised queue row.

        created_at is raised above every queued row so a wall clock that
        stepped back cannot put a newer edit ahead of an older one.
        """
        with self._guard("append_queue", "queue") as conn:
            cursor = conn.execute(
                "INSERT INTO mutation_queue (kind, created_at, payload_json) "
                "SELECT ?, MAX(?, COALESCE(MAX(created_at) + 1, ?)), ? FROM mutation_queue",
                [kind, created_at, created_at, payload_json],
            )
            return cursor.lastrowid

    def list_queue(self) -> List[Dict[str, Any]]:
        """Return raw queue rows in enqueue order (which is also createdAt order)."""
        with self._guard("list_queue", "queue") as conn:
            rows = conn.execute(
                "SELECT id, kind, created_at, payload_json FROM mutation_queue "
                "ORDER BY id ASC"
            ).fetchall()
        return [dict(row) for row in rows]

    def remove_queue(self, queue_id: int) -> bool:
        """Remove one queue row. Removing an absent id is not an error."""
        with self._guard("remove_queue", "queue") as conn:
            cursor = conn.execute("DELETE FROM mutation_queue WHERE id = ?", [queue_id])
            return cursor.rowcount > 0

    def queue_count(self) -> int:
        with self._guard("queue_count", "queue") as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM mutation_queue").fetchone()
        return row["n"] if row else 0

    # =========================================================================
    # PANDAS INTEGRATION
    # =========================================================================

    def queue_dataframe(self) -> pd.DataFrame:
        """
        Load the pending queue into a DataFrame for display.

        Returns:
            DataFrame with id, kind, created_at (datetime) and payload columns
        """
        rows = self.list_queue()
        df = pd.DataFrame(rows, columns=["id", "kind", "created_at", "payload_json"])
        if not df.empty:
            df["created_at"] = pd.to_datetime(df["created_at"], unit="ms")
        return df.rename(columns={"payload_json": "payload"})

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.debug(f"Error closing connection: {e}")
            self._connections.clear()
            self._local = threading.local()


# Singleton accessor
_local_store: Optional[LocalStore] = None


def get_local_store(db_path: Optional[Path] = None) -> LocalStore:
    """Get the global LocalStore instance."""
    global _local_store
    if _local_store is None:
        _local_store = LocalStore.get_instance(db_path)
        _local_store.initialize()
    return _local_store
