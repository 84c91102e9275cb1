# =============================================================================
# d3_core/offline/__init__.py
# Offline-First Sync Layer for D3 Bible study groups
# =============================================================================
"""
Offline-First Sync Layer

Members keep answering study questions when the connection drops. Every edit
is saved on the device first and reaches Supabase either right away or when
the queue is replayed.

Architecture:
------------
┌─────────────────────────────────────────────────────────────────┐
│                   OFFLINE-FIRST ARCHITECTURE                     │
├─────────────────────────────────────────────────────────────────┤
│                                                                  │
│   ┌──────────────────────────────────────────────────────────┐  │
│   │                 OfflineDataService                        │  │
│   │         (Single API - Apps use this only)                 │  │
│   └──────────────────────────────────────────────────────────┘  │
│         │                  │                    │                │
│         ▼                  ▼                    ▼                │
│ ┌──────────────┐  ┌─────────────────┐  ┌──────────────────┐     │
│ │ WriteSched.  │  │ ReadThroughCache│  │  ConnectionMgr   │     │
│ │ (debounce)   │  │ (remote→local)  │  │ (Online/Offline) │     │
│ └──────────────┘  └─────────────────┘  └──────────────────┘     │
│         │                  │                    │ became online  │
│         ▼                  ▼                    ▼                │
│ ┌────────┐        ┌──────────────┐      ┌──────────────┐        │
│ │Supabase│◄───────│  SyncEngine  │◄─────│ MutationQueue│        │
│ │(Cloud) │ replay │ (Reconciler) │      │   (SQLite)   │        │
│ └────────┘        └──────────────┘      └──────────────┘        │
└─────────────────────────────────────────────────────────────────┘

Usage:
------
from d3_core.offline import get_data_service, ResponseCell

service = get_data_service()

cell = ResponseCell(group_id, user_id, 3, "p2", "r3")
service.schedule_response_write(cell, "grace")

print(service.is_online)            # True/False
print(service.pending_sync_count)   # Number of queued intents
"""

from d3_core.offline.models import (
    IntentKind,
    MutationIntent,
    ResponseCell,
    ResponsePayload,
    WeekKey,
    WeekCompletionPayload,
    WeekCompletionDelete,
    GroupContext,
    Membership,
    Passage,
)

from d3_core.offline.settings import (
    OfflineSettings,
    load_settings,
)

from d3_core.offline.connection_manager import (
    ConnectionManager,
    get_connection_manager,
    ConnectionStatus,
)

from d3_core.offline.local_database import (
    LocalStore,
    get_local_store,
)

from d3_core.offline.mutation_queue import MutationQueue

from d3_core.offline.sync_engine import (
    SyncEngine,
    DrainResult,
    SyncState,
)

from d3_core.offline.read_through import (
    ReadThroughCache,
    ReadResult,
    ReadSource,
)

from d3_core.offline.write_scheduler import DebouncedWriteScheduler

from d3_core.offline.unified_data_service import (
    OfflineDataService,
    WriteOutcome,
    get_data_service,
)

__all__ = [
    # Models
    "IntentKind",
    "MutationIntent",
    "ResponseCell",
    "ResponsePayload",
    "WeekKey",
    "WeekCompletionPayload",
    "WeekCompletionDelete",
    "GroupContext",
    "Membership",
    "Passage",
    # Settings
    "OfflineSettings",
    "load_settings",
    # Connection Management
    "ConnectionManager",
    "get_connection_manager",
    "ConnectionStatus",
    # Local Store + Queue
    "LocalStore",
    "get_local_store",
    "MutationQueue",
    # Sync Engine
    "SyncEngine",
    "DrainResult",
    "SyncState",
    # Read-through / Debounce
    "ReadThroughCache",
    "ReadResult",
    "ReadSource",
    "DebouncedWriteScheduler",
    # Unified Service (Main API)
    "OfflineDataService",
    "WriteOutcome",
    "get_data_service",
]
