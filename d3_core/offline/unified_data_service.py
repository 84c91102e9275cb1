# =============================================================================
# d3_core/offline/unified_data_service.py
# Offline Data Service - Single API for Online/Offline Operations
# =============================================================================
"""
OfflineDataService - The primary API for all study data operations.

This service provides a unified interface that automatically handles:
- Debounced response edits, persisted locally before any network attempt
- Direct Supabase writes when online, queued intents otherwise
- Read-through caching of passages, group context, memberships and weeks
- Automatic queue drains on boot, on reconnect and after direct writes

Usage:
------
from d3_core.offline import get_data_service

service = get_data_service()

# Typing in a response field (coalesced, then persisted)
service.schedule_response_write(cell, "grace")

# Reads fall back to the local cache when offline
result = service.read_passage("JHN.3.16")
if result:
    html = result.value.html

# Check status
print(f"Online: {service.is_online}")
print(f"Pending sync: {service.pending_sync_count}")
"""

from __future__ import annotations
import threading
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional, Set
import logging

from d3_core.errors import (
    ConfigurationError,
    D3Error,
    RemoteRejected,
    StorageUnavailable,
    classify_error,
)
from d3_core.offline.models import (
    PARTITION_GROUP_CONTEXT,
    PARTITION_MEMBERSHIPS,
    PARTITION_PASSAGES,
    PARTITION_RESPONSES,
    PARTITION_WEEK_COMPLETIONS,
    GroupContext,
    IntentKind,
    Membership,
    MutationIntent,
    Passage,
    ResponseCell,
    ResponsePayload,
    WeekCompletionDelete,
    WeekCompletionPayload,
    WeekKey,
    completion_prefix,
    group_context_key,
    passage_cache_key,
)
from d3_core.offline.read_through import ReadResult, ReadThroughCache
from d3_core.offline.settings import OfflineSettings, load_settings

if TYPE_CHECKING:
    from d3_core.data.remote_store import RemoteStore
    from d3_core.data.study_week import WeekGrid
    from d3_core.offline.connection_manager import ConnectionManager
    from d3_core.offline.local_database import LocalStore
    from d3_core.offline.mutation_queue import MutationQueue
    from d3_core.offline.sync_engine import DrainResult, SyncEngine
    from d3_core.offline.write_scheduler import DebouncedWriteScheduler

logger = logging.getLogger(__name__)


class WriteOutcome(Enum):
    """What happened to one persisted write."""
    SENT = "sent"           # applied remotely right away
    QUEUED = "queued"       # stored as an intent for the next drain
    FAILED = "failed"       # neither remote nor queue accepted it


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class OfflineDataService:
    """
    Offline-first data service providing a single API for study data.

    This is the main entry point for the app. It wires together:
    - LocalStore (durable cache + queue)
    - ConnectionManager (when to try the network)
    - SyncEngine (queue replay)
    - DebouncedWriteScheduler (keystroke coalescing)
    - RemoteStore (Supabase + passage endpoint)
    """

    _instance: Optional[OfflineDataService] = None
    _lock = threading.Lock()

    MAX_RECENT_ERRORS = 20

    def __init__(
        self,
        settings: Optional[OfflineSettings] = None,
        store: Optional[LocalStore] = None,
        remote: Optional[RemoteStore] = None,
        connection: Optional[ConnectionManager] = None,
        on_error: Optional[Callable[[D3Error], None]] = None,
        timer_factory: Optional[Callable[..., Any]] = None,
    ):
        """
        Args:
            settings: Offline settings (default: load_settings())
            store: Local store (default: shared LocalStore at settings.db_path)
            remote: Remote store (default: SupabaseRemoteStore)
            connection: Connectivity oracle (default: shared ConnectionManager)
            on_error: Receives user-visible errors (default: handlers.handle_error, logged only)
            timer_factory: Debounce timer constructor (default: threading.Timer)
        """
        self._settings = settings
        self._store = store
        self._remote = remote
        self._connection_manager = connection
        self._on_error = on_error
        self._timer_factory = timer_factory
        self._queue: Optional[MutationQueue] = None
        self._sync_engine: Optional[SyncEngine] = None
        self._scheduler: Optional[DebouncedWriteScheduler] = None
        self._caches: Dict[str, ReadThroughCache] = {}
        self._recent_errors: Deque[D3Error] = deque(maxlen=self.MAX_RECENT_ERRORS)
        self._initialized = False

    @classmethod
    def get_instance(cls, **kwargs) -> OfflineDataService:
        """Get or create singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = OfflineDataService(**kwargs)
        return cls._instance

    # =========================================================================
    # LAZY LOADING OF DEPENDENCIES
    # =========================================================================

    @property
    def settings(self) -> OfflineSettings:
        if self._settings is None:
            self._settings = load_settings()
        return self._settings

    def _get_store(self) -> LocalStore:
        """Lazy load local store."""
        if self._store is None:
            from d3_core.offline.local_database import get_local_store
            self._store = get_local_store(self.settings.db_path)
        return self._store

    def _get_connection_manager(self) -> ConnectionManager:
        """Lazy load connection manager."""
        if self._connection_manager is None:
            from d3_core.offline.connection_manager import get_connection_manager
            supabase_url = None
            try:
                from d3_core.data.supabase_client import get_supabase_credentials
                supabase_url = get_supabase_credentials()[0]
            except ConfigurationError as e:
                logger.warning(f"Supabase not configured, probing internet only: {e.message}")
            self._connection_manager = get_connection_manager(
                supabase_url=supabase_url,
                check_interval_online=self.settings.check_interval_online,
                check_interval_offline=self.settings.check_interval_offline,
                connection_timeout=self.settings.connection_timeout,
            )
        return self._connection_manager

    def _get_remote(self) -> RemoteStore:
        """Lazy load remote store."""
        if self._remote is None:
            from d3_core.data.remote_store import SupabaseRemoteStore
            connector = None
            if self.settings.passage_base_url:
                from d3_core.api.passage_connector import PassageConnector
                connector = PassageConnector.from_settings(self.settings)
            self._remote = SupabaseRemoteStore(passage_connector=connector)
        return self._remote

    def _get_queue(self) -> MutationQueue:
        if self._queue is None:
            from d3_core.offline.mutation_queue import MutationQueue
            self._queue = MutationQueue(self._get_store())
        return self._queue

    def _get_sync_engine(self) -> SyncEngine:
        """Lazy load sync engine."""
        if self._sync_engine is None:
            from d3_core.offline.sync_engine import SyncEngine
            self._sync_engine = SyncEngine(
                self._get_queue(),
                self._get_remote(),
                self._get_connection_manager(),
                settings=self.settings,
                on_error=self._report,
            )
        return self._sync_engine

    def _get_scheduler(self) -> DebouncedWriteScheduler:
        if self._scheduler is None:
            from d3_core.offline.write_scheduler import DebouncedWriteScheduler
            self._scheduler = DebouncedWriteScheduler(
                self.settings.debounce_seconds,
                self._persist_field,
                timer_factory=self._timer_factory,
            )
        return self._scheduler

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def is_online(self) -> bool:
        """Check if currently online."""
        return self._get_connection_manager().is_online

    @property
    def connection_status(self) -> str:
        """Get connection status string."""
        return self._get_connection_manager().status.value

    @property
    def pending_sync_count(self) -> int:
        """Get number of queued intents (0 if the store is unreadable)."""
        try:
            return self._get_queue().count()
        except StorageUnavailable:
            return 0

    @property
    def last_sync(self) -> Optional[datetime]:
        """Get last successful sync time."""
        return self._get_sync_engine().state.last_sync_success

    # =========================================================================
    # INITIALIZATION
    # =========================================================================

    def initialize(self, start_sync: bool = True) -> None:
        """
        Initialize the data service.

        Args:
            start_sync: Whether to start the sync engine (boot drain + reconnect drains)
        """
        if self._initialized:
            return

        self._get_store().initialize()
        self._get_connection_manager()
        engine = self._get_sync_engine()

        if start_sync:
            engine.start()

        self._initialized = True
        logger.info(f"OfflineDataService initialized. Online: {self.is_online}")

    # =========================================================================
    # ERROR REPORTING
    # =========================================================================

    def _report(self, error: D3Error) -> None:
        """Record a user-visible error and hand it to the error callback."""
        self._recent_errors.append(error)
        if self._on_error is not None:
            try:
                self._on_error(error)
            except Exception as e:
                logger.error(f"Error in error callback: {e}")
            return

        # Background threads have no Streamlit context; the status panel
        # shows recent errors on the next rerun.
        from d3_core.errors.handlers import handle_error
        handle_error(error, show_user_message=False)

    def pop_errors(self) -> List[D3Error]:
        """Return and clear errors recorded since the last call."""
        errors = list(self._recent_errors)
        self._recent_errors.clear()
        return errors

    # =========================================================================
    # WRITES
    # =========================================================================

    def schedule_response_write(self, cell: ResponseCell, text: str) -> None:
        """Debounce an edit to one response cell; the last value wins."""
        self._get_scheduler().schedule_write(cell.field_key, ResponsePayload.for_cell(cell, text))

    def flush_pending_writes(self) -> List[str]:
        """Persist every debounced edit immediately."""
        if self._scheduler is None:
            return []
        return self._scheduler.flush_all()

    def _persist_field(self, field_key: str, payload: ResponsePayload) -> None:
        self.save_response(payload)

    def save_response(self, payload: ResponsePayload) -> WriteOutcome:
        """
        Persist one response cell: local store first, then remote or queue.

        Returns:
            WriteOutcome
        """
        try:
            self._get_store().put(PARTITION_RESPONSES, payload.cell.storage_key, payload.response_text)
        except StorageUnavailable as e:
            logger.error(f"Could not cache response {payload.cell.storage_key}: {e.message}")
            self._report(e)

        return self._write_through(
            MutationIntent.upsert_response(payload),
            self._get_remote().upsert_response,
        )

    def set_week_completed(
        self,
        group_id: str,
        user_id: str,
        week_number: int,
        completed: bool,
        completed_at: Optional[str] = None,
    ) -> WriteOutcome:
        """
        Mark or unmark a week as completed.

        Returns:
            WriteOutcome
        """
        week = WeekKey(group_id, user_id, week_number)
        remote = self._get_remote()

        if completed:
            payload = WeekCompletionPayload(group_id, user_id, week_number, completed_at or _utc_now_iso())
            intent = MutationIntent.upsert_week_completion(payload)
            apply = remote.upsert_week_completion
        else:
            payload = WeekCompletionDelete(group_id, user_id, week_number)
            intent = MutationIntent.delete_week_completion(payload)
            apply = remote.delete_week_completion

        try:
            store = self._get_store()
            if completed:
                store.put(
                    PARTITION_WEEK_COMPLETIONS,
                    week.storage_key,
                    {"week_number": week_number, "completed_at": payload.completed_at},
                )
            else:
                store.delete(PARTITION_WEEK_COMPLETIONS, week.storage_key)
        except StorageUnavailable as e:
            logger.error(f"Could not cache completion {week.storage_key}: {e.message}")
            self._report(e)

        return self._write_through(intent, apply)

    def _write_through(self, intent: MutationIntent, apply: Callable[[Any], None]) -> WriteOutcome:
        """Try the direct remote write when online; queue the intent otherwise."""
        if self.is_online and not self._has_queued_intents():
            try:
                apply(intent.payload)
            except Exception as e:
                error = classify_error(e, operation=intent.kind.value)
                logger.info(f"Direct {intent.kind.value} failed, queueing: {error.message}")
                if isinstance(error, RemoteRejected):
                    self._report(error)
            else:
                logger.debug(f"Applied {intent.kind.value} directly")
                self._get_sync_engine().drain_in_background()
                return WriteOutcome.SENT

        try:
            self._get_queue().enqueue(intent)
        except StorageUnavailable as e:
            logger.error(f"Cannot save {intent.kind.value}: {e.message}")
            self._report(e)
            return WriteOutcome.FAILED

        # Older intents go first; the new one rides the same drain
        if self.is_online:
            self._get_sync_engine().drain_in_background()
        return WriteOutcome.QUEUED

    def _has_queued_intents(self) -> bool:
        try:
            return self._get_queue().count() > 0
        except StorageUnavailable:
            return False

    # =========================================================================
    # READ-THROUGH CACHES
    # =========================================================================

    def _cache(self, name: str, factory: Callable[[], ReadThroughCache]) -> ReadThroughCache:
        if name not in self._caches:
            self._caches[name] = factory()
        return self._caches[name]

    def _is_online(self) -> bool:
        return self.is_online

    def read_passage(self, reference: str, bible_id: Optional[int] = None) -> ReadResult[Passage]:
        """Passage HTML, from the endpoint or the local cache."""
        bible = bible_id or self.settings.bible_id

        def build() -> ReadThroughCache:
            return ReadThroughCache.for_partition(
                "passage",
                self._get_store(),
                PARTITION_PASSAGES,
                key_for=lambda key: passage_cache_key(*key),
                fetch=lambda key: self._get_remote().read_passage(*key),
                is_online=self._is_online,
                encode=Passage.to_dict,
                decode=Passage.from_dict,
                after_save=self._evict_passages,
            )

        return self._cache("passage", build).read((bible, reference))

    def _evict_passages(self) -> None:
        if not self.settings.passage_eviction_enabled:
            return
        self._get_store().prune(
            PARTITION_PASSAGES,
            max_entries=self.settings.passage_cache_max_entries,
            max_age_ms=self.settings.passage_cache_max_age_ms,
        )

    def read_group_context(self, group_id: str, user_id: str) -> ReadResult[GroupContext]:
        """The user's role and group metadata; REMOTE with None means not a member."""

        def build() -> ReadThroughCache:
            return ReadThroughCache.for_partition(
                "group_context",
                self._get_store(),
                PARTITION_GROUP_CONTEXT,
                key_for=lambda key: group_context_key(*key),
                fetch=lambda key: self._get_remote().read_membership(*key),
                is_online=self._is_online,
                encode=GroupContext.to_dict,
                decode=GroupContext.from_dict,
            )

        return self._cache("group_context", build).read((group_id, user_id))

    def read_memberships(self, user_id: str) -> ReadResult[List[Membership]]:
        """Every group the user belongs to."""

        def build() -> ReadThroughCache:
            return ReadThroughCache.for_partition(
                "memberships",
                self._get_store(),
                PARTITION_MEMBERSHIPS,
                key_for=str,
                fetch=self._get_remote().read_memberships,
                is_online=self._is_online,
                encode=lambda items: [m.to_dict() for m in items],
                decode=lambda rows: [Membership.from_dict(row) for row in rows],
            )

        return self._cache("memberships", build).read(user_id)

    def read_response(self, cell: ResponseCell) -> Optional[str]:
        """Locally stored text of one cell, including edits not yet synced."""
        try:
            return self._get_store().get(PARTITION_RESPONSES, cell.storage_key)
        except StorageUnavailable as e:
            logger.warning(f"Local response cache unreadable: {e.message}")
            return None

    def read_week_responses(self, group_id: str, user_id: str, week_number: int) -> ReadResult[WeekGrid]:
        """
        All 5 x 4 response cells of a week.

        Cells with queued edits keep their local text, both in the returned
        grid and in the cache, until the queue has delivered them.
        """

        def build() -> ReadThroughCache:
            return ReadThroughCache(
                "week_responses",
                fetch=self._fetch_week_grid,
                is_online=self._is_online,
                load_local=self._load_week_grid,
                save_local=self._save_week_grid,
            )

        return self._cache("week_responses", build).read(WeekKey(group_id, user_id, week_number))

    def _queued_cells(self) -> Set[str]:
        try:
            intents = self._get_queue().intents()
        except StorageUnavailable:
            return set()
        return {
            intent.payload.cell.storage_key
            for intent in intents
            if intent.kind is IntentKind.UPSERT_RESPONSE
        }

    def _fetch_week_grid(self, week: WeekKey) -> WeekGrid:
        from d3_core.data.study_week import grid_from_payloads

        grid = grid_from_payloads(self._get_remote().read_week_responses(week))
        queued = self._queued_cells_snapshot(week)
        for cell in week.cells():
            if cell.storage_key in queued:
                local = self.read_response(cell)
                if local is not None:
                    grid[cell.passage_key][cell.response_key] = local
        return grid

    def _queued_cells_snapshot(self, week: WeekKey) -> Set[str]:
        prefix = week.response_prefix
        return {key for key in self._queued_cells() if key.startswith(prefix)}

    def _load_week_grid(self, week: WeekKey):
        from d3_core.data.study_week import empty_week_grid

        entries = self._get_store().scan(PARTITION_RESPONSES, week.response_prefix)
        if not entries:
            return None
        grid = empty_week_grid()
        for entry in entries:
            parts = entry.key[len(week.response_prefix):].split(":")
            if len(parts) == 2 and parts[0] in grid and parts[1] in grid[parts[0]]:
                grid[parts[0]][parts[1]] = entry.value if isinstance(entry.value, str) else ""
        return grid, max(entry.cached_at for entry in entries)

    def _save_week_grid(self, week: WeekKey, grid: WeekGrid) -> None:
        queued = self._queued_cells_snapshot(week)
        store = self._get_store()
        for cell in week.cells():
            if cell.storage_key in queued:
                continue
            store.put(PARTITION_RESPONSES, cell.storage_key, grid[cell.passage_key][cell.response_key])

    def read_week_completions(self, group_id: str, user_id: str) -> ReadResult[List[int]]:
        """Completed week numbers, with queued (un)completions applied on top."""

        def build() -> ReadThroughCache:
            return ReadThroughCache(
                "week_completions",
                fetch=self._fetch_completions,
                is_online=self._is_online,
                load_local=self._load_completions,
                save_local=self._save_completions,
            )

        return self._cache("week_completions", build).read((group_id, user_id))

    def _queued_completions(self, group_id: str, user_id: str) -> Dict[int, bool]:
        """week_number -> completed, from queued intents in order (last wins)."""
        try:
            intents = self._get_queue().intents()
        except StorageUnavailable:
            return {}
        changes: Dict[int, bool] = {}
        for intent in intents:
            if intent.kind is IntentKind.UPSERT_RESPONSE:
                continue
            payload = intent.payload
            if payload.group_id == group_id and payload.user_id == user_id:
                changes[payload.week_number] = intent.kind is IntentKind.UPSERT_WEEK_COMPLETION
        return changes

    def _fetch_completions(self, key) -> List[int]:
        group_id, user_id = key
        weeks = set(self._get_remote().read_week_completions(group_id, user_id))
        for week_number, completed in self._queued_completions(group_id, user_id).items():
            if completed:
                weeks.add(week_number)
            else:
                weeks.discard(week_number)
        return sorted(weeks)

    def _load_completions(self, key):
        group_id, user_id = key
        entries = self._get_store().scan(PARTITION_WEEK_COMPLETIONS, completion_prefix(group_id, user_id))
        if not entries:
            return None
        weeks = sorted(
            int(entry.value["week_number"])
            for entry in entries
            if isinstance(entry.value, dict) and "week_number" in entry.value
        )
        return weeks, max(entry.cached_at for entry in entries)

    def _save_completions(self, key, weeks: List[int]) -> None:
        group_id, user_id = key
        store = self._get_store()
        wanted = set(weeks)
        for entry in store.scan(PARTITION_WEEK_COMPLETIONS, completion_prefix(group_id, user_id)):
            value = entry.value if isinstance(entry.value, dict) else {}
            if value.get("week_number") not in wanted:
                store.delete(PARTITION_WEEK_COMPLETIONS, entry.key)
        for week_number in wanted:
            week = WeekKey(group_id, user_id, week_number)
            if store.get(PARTITION_WEEK_COMPLETIONS, week.storage_key) is None:
                store.put(PARTITION_WEEK_COMPLETIONS, week.storage_key, {"week_number": week_number})

    def can_complete_week(self, group_id: str, user_id: str, week_number: int) -> bool:
        """True when every response cell of the week holds text locally."""
        from d3_core.data.study_week import can_complete_week, empty_week_grid

        grid = empty_week_grid()
        for cell in WeekKey(group_id, user_id, week_number).cells():
            grid[cell.passage_key][cell.response_key] = self.read_response(cell) or ""
        return can_complete_week(grid)

    # =========================================================================
    # SYNC OPERATIONS
    # =========================================================================

    def sync_now(self) -> Optional[DrainResult]:
        """
        Drain the queue now if online.

        Returns:
            DrainResult, or None if offline
        """
        return self._get_sync_engine().sync_now()

    # =========================================================================
    # STATUS & DIAGNOSTICS
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        """
        Get comprehensive status information.

        Returns:
            Dict with status information for UI display
        """
        return {
            "connection": self._get_connection_manager().get_status_display(),
            "sync": self._get_sync_engine().get_status_display(),
            "is_online": self.is_online,
            "pending_sync": self.pending_sync_count,
            "pending_writes": self._scheduler.pending_keys if self._scheduler else [],
            "recent_errors": [error.to_dict() for error in self._recent_errors],
        }

    def pending_queue(self):
        """Queued intents as a DataFrame for the status table."""
        return self._get_queue().to_dataframe()

    def force_offline(self) -> None:
        """Force offline mode (for testing)."""
        self._get_connection_manager().force_offline()

    def force_check_connection(self) -> None:
        """Force an immediate connection check."""
        self._get_connection_manager().force_check()

    def cleanup(self) -> None:
        """Flush pending edits, stop background work and close the store."""
        try:
            self.flush_pending_writes()
            if self._sync_engine is not None:
                self._sync_engine.stop()
            if self._connection_manager is not None:
                self._connection_manager.stop_monitoring()
            if self._store is not None:
                self._store.close()
        except Exception as e:
            logger.error(f"Error during cleanup: {e}")


# Singleton accessor
_data_service: Optional[OfflineDataService] = None


def get_data_service(**kwargs) -> OfflineDataService:
    """
    Get the global OfflineDataService instance.

    Returns:
        OfflineDataService singleton

    Usage:
        from d3_core.offline import get_data_service

        service = get_data_service()
        service.schedule_response_write(cell, text)
    """
    global _data_service
    if _data_service is None:
        _data_service = OfflineDataService.get_instance(**kwargs)
        _data_service.initialize()
    return _data_service


def is_online() -> bool:
    """Convenience function to check online status."""
    return get_data_service().is_online


def sync_now():
    """Convenience function to trigger sync."""
    return get_data_service().sync_now()
