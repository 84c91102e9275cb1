# =============================================================================
# d3_core/offline/mutation_queue.py
# Durable FIFO of pending remote writes
# =============================================================================
"""
MutationQueue - ordered, durable list of not-yet-acknowledged write intents.

Intents are appended when a direct write cannot reach Supabase and are removed
only after the SyncEngine confirms that exact intent was applied remotely.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging

import pandas as pd

from d3_core.errors import D3Error, QueueCorrupt
from d3_core.offline.local_database import LocalStore
from d3_core.offline.models import PARTITION_DEAD_LETTER, MutationIntent, now_ms

logger = logging.getLogger(__name__)


@dataclass
class QueueEntry:
    """
    One raw queue row, decoded lazily.

    Decoding is deferred so one corrupt row never prevents the rest of the
    queue from being listed.
    """
    id: int
    kind: str
    created_at: int
    payload_json: Optional[str]

    def decode(self) -> MutationIntent:
        """
        Raises:
            QueueCorrupt: if the row cannot be turned into a MutationIntent
        """
        return MutationIntent.from_row(
            {
                "id": self.id,
                "kind": self.kind,
                "created_at": self.created_at,
                "payload_json": self.payload_json,
            }
        )


class MutationQueue:
    """
    Append-only queue stored in the LocalStore.

    Usage:
        queue = MutationQueue(store)
        queue.enqueue(MutationIntent.upsert_response(payload))
        for entry in queue.entries():
            ...
    """

    def __init__(self, store: LocalStore):
        self.store = store

    def enqueue(self, intent: MutationIntent) -> int:
        """
        Append an intent durably.

        Returns:
            The id assigned by the store

        Raises:
            StorageUnavailable: if durability itself is broken
        """
        queue_id = self.store.append_queue(intent)
        logger.info(f"Queued {intent.kind.value} #{queue_id}")
        return queue_id

    def entries(self) -> List[QueueEntry]:
        """All pending rows in drain order (enqueue order)."""
        return [
            QueueEntry(
                id=row["id"],
                kind=row["kind"],
                created_at=row["created_at"],
                payload_json=row["payload_json"],
            )
            for row in self.store.list_queue()
        ]

    def intents(self) -> List[MutationIntent]:
        """Decoded pending intents; corrupt rows are left out."""
        decoded = []
        for entry in self.entries():
            try:
                decoded.append(entry.decode())
            except QueueCorrupt as e:
                logger.warning(f"Skipping unreadable queue row #{entry.id}: {e.message}")
        return decoded

    def remove(self, queue_id: int) -> bool:
        return self.store.remove_queue(queue_id)

    def quarantine(self, entry: QueueEntry, error: D3Error) -> None:
        """
        Move a row out of the queue into the dead-letter partition.

        The dead-letter copy is written before the queue row is removed, so
        a failure in between leaves the row queued rather than lost.
        """
        record: Dict[str, Any] = {
            "id": entry.id,
            "kind": entry.kind,
            "createdAt": entry.created_at,
            "payload_json": entry.payload_json,
            "error": error.to_dict(),
            "quarantined_at": now_ms(),
        }
        self.store.put(PARTITION_DEAD_LETTER, str(entry.id), record)
        self.store.remove_queue(entry.id)
        logger.warning(f"Moved queue row #{entry.id} ({entry.kind}) to dead letter: {error.message}")

    def dead_letters(self) -> List[Dict[str, Any]]:
        return [entry.value for entry in self.store.scan(PARTITION_DEAD_LETTER)]

    def count(self) -> int:
        return self.store.queue_count()

    def __len__(self) -> int:
        return self.count()

    def to_dataframe(self) -> pd.DataFrame:
        return self.store.queue_dataframe()
