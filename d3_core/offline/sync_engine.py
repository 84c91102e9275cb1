# =============================================================================
# d3_core/offline/sync_engine.py
# Queue Reconciler - replays pending writes against Supabase
# =============================================================================
"""
SyncEngine - Drains the MutationQueue against the remote store.

Features:
- Strict FIFO replay, stopping at the first failed intent
- Single-flight drains: concurrent callers join the drain in progress
- Triggers: boot, offline -> online edge, after direct writes, optional interval
- Corrupt rows moved to the dead-letter partition instead of blocking the queue
- Sync status tracking and event callbacks

Stopping on the first failure keeps later intents from overtaking earlier
ones for the same key; one stuck intent therefore blocks the rest of the queue
until it succeeds.
"""

from __future__ import annotations
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional
import logging

from d3_core.errors import (
    D3Error,
    QueueCorrupt,
    RemoteError,
    RemoteRejected,
    classify_error,
)
from d3_core.logging import LogContext
from d3_core.offline.models import IntentKind, MutationIntent
from d3_core.offline.mutation_queue import MutationQueue, QueueEntry

if TYPE_CHECKING:
    from d3_core.data.remote_store import RemoteStore
    from d3_core.offline.connection_manager import ConnectionManager
    from d3_core.offline.settings import OfflineSettings

logger = logging.getLogger(__name__)


@dataclass
class DrainResult:
    """Outcome of one drain pass."""
    applied: int = 0
    remaining: int = 0
    stopped_on: Optional[int] = None        # queue id of the intent that failed
    error: Optional[D3Error] = None
    skipped_corrupt: int = 0
    dead_lettered: int = 0
    joined: bool = False                    # caller joined a drain already running
    finished: bool = True                   # False when a joiner did not wait

    @property
    def ok(self) -> bool:
        return self.finished and self.error is None


@dataclass
class SyncState:
    """Current sync state."""
    is_syncing: bool = False
    last_sync: Optional[datetime] = None
    last_sync_success: Optional[datetime] = None
    last_error: Optional[str] = None
    pending_count: int = 0
    total_synced: int = 0
    total_dead_lettered: int = 0


class DrainHandle:
    """The drain in flight; joiners wait on it and share its result."""

    def __init__(self):
        self._done = threading.Event()
        self.result: Optional[DrainResult] = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> Optional[DrainResult]:
        self._done.wait(timeout)
        return self.result

    def _finish(self, result: DrainResult) -> None:
        self.result = result
        self._done.set()


class SyncEngine:
    """
    Reconciler between the local mutation queue and Supabase.

    Usage:
        engine = SyncEngine(queue, remote, connection, settings)
        engine.start()      # boot drain + subscribe to reconnects
        engine.sync_now()   # drain now if online
    """

    def __init__(
        self,
        queue: MutationQueue,
        remote: RemoteStore,
        connection: ConnectionManager,
        settings: Optional[OfflineSettings] = None,
        on_error: Optional[Callable[[D3Error], None]] = None,
    ):
        """
        Args:
            queue: Durable mutation queue
            remote: Remote store that applies intents
            connection: Connectivity oracle (is_online, on_became_online)
            settings: Offline settings (dead_letter_rejected, sync_interval_seconds)
            on_error: Receives rejections that the user should see
        """
        if settings is None:
            from d3_core.offline.settings import OfflineSettings
            settings = OfflineSettings()

        self.queue = queue
        self.remote = remote
        self.connection = connection
        self.settings = settings
        self.on_error = on_error

        self._state = SyncState()
        self._callbacks: List[Callable[[SyncState], None]] = []
        self._drain_lock = threading.Lock()
        self._inflight: Optional[DrainHandle] = None
        self._rerun_requested = False
        self._sync_thread: Optional[threading.Thread] = None
        self._stop_sync = threading.Event()
        self._unsubscribe: Optional[Callable[[], None]] = None

        self._appliers: Dict[IntentKind, Callable[[Any], None]] = {
            IntentKind.UPSERT_RESPONSE: remote.upsert_response,
            IntentKind.UPSERT_WEEK_COMPLETION: remote.upsert_week_completion,
            IntentKind.DELETE_WEEK_COMPLETION: remote.delete_week_completion,
        }

    def register_applier(self, kind: IntentKind, apply: Callable[[Any], None]) -> None:
        """Set the remote apply function for an intent kind."""
        self._appliers[kind] = apply

    @property
    def state(self) -> SyncState:
        """Get current sync state."""
        return self._state

    @property
    def is_syncing(self) -> bool:
        """Check if a drain is in flight."""
        with self._drain_lock:
            return self._inflight is not None

    @property
    def pending_count(self) -> int:
        """Get count of queued intents."""
        return self.queue.count()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Drain once for boot, then follow connectivity and the optional interval."""
        if self._unsubscribe is None:
            self._unsubscribe = self.connection.on_became_online(self._on_became_online)

        # Boot drain runs regardless of the last connectivity reading; an
        # unreachable backend just stops it at the first intent.
        self.drain_in_background(only_if_online=False)

        interval = self.settings.sync_interval_seconds
        if interval and (self._sync_thread is None or not self._sync_thread.is_alive()):
            self._stop_sync.clear()
            self._sync_thread = threading.Thread(
                target=self._sync_loop,
                args=(interval,),
                daemon=True,
                name="SyncEngine"
            )
            self._sync_thread.start()
        logger.info("Sync engine started")

    def stop(self, timeout: float = 10) -> None:
        """Stop background work and wait for a drain in flight."""
        self._stop_sync.set()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._sync_thread:
            self._sync_thread.join(timeout=timeout)
            self._sync_thread = None
        self.wait_until_idle(timeout=timeout)
        logger.info("Sync engine stopped")

    def _sync_loop(self, interval: float) -> None:
        """Periodic drain while online."""
        while not self._stop_sync.wait(timeout=interval):
            try:
                self.sync_now()
            except Exception as e:
                logger.error(f"Sync error: {e}")

    def _on_became_online(self) -> None:
        logger.info("Connection restored, triggering sync")
        self.drain_in_background()

    # =========================================================================
    # DRAIN
    # =========================================================================

    def sync_now(self) -> Optional[DrainResult]:
        """
        Drain immediately if the connectivity oracle says we're online.

        Returns:
            DrainResult, or None when skipped because offline
        """
        if not self.connection.is_online:
            logger.debug("Cannot sync: offline")
            return None
        return self.drain()

    def drain(self, wait: bool = True) -> DrainResult:
        """
        Replay the queue once, in order, stopping at the first failure.

        Args:
            wait: When another drain is running, wait for it and return its
                result (True) or return at once with finished=False (False)

        Returns:
            DrainResult
        """
        handle, owner = self._acquire()
        if not owner:
            if not wait:
                return DrainResult(joined=True, finished=False, remaining=self._safe_count())
            result = handle.wait()
            return replace(result, joined=True) if result else DrainResult(joined=True, finished=False)
        return self._complete(handle)

    def drain_in_background(self, only_if_online: bool = True) -> Optional[DrainHandle]:
        """
        Start a drain on a daemon thread, or return the one already running.

        Returns:
            The DrainHandle, or None if skipped because offline
        """
        if only_if_online and not self.connection.is_online:
            return None

        handle, owner = self._acquire()
        if owner:
            threading.Thread(
                target=self._complete,
                args=(handle,),
                daemon=True,
                name="SyncDrain"
            ).start()
        return handle

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no drain is in flight. Returns False on timeout."""
        with self._drain_lock:
            handle = self._inflight
        if handle is None:
            return True
        handle.wait(timeout)
        return handle.done

    def _acquire(self):
        with self._drain_lock:
            if self._inflight is not None:
                # the running drain may already have seen an empty queue
                self._rerun_requested = True
                return self._inflight, False
            self._inflight = DrainHandle()
            return self._inflight, True

    def _complete(self, handle: DrainHandle) -> DrainResult:
        result = DrainResult()
        released = False
        self._state.is_syncing = True
        self._state.last_sync = datetime.now()
        self._notify_callbacks()
        try:
            while not released:
                self._drain_guarded(result)
                with self._drain_lock:
                    rerun = self._rerun_requested and result.error is None
                    self._rerun_requested = False
                    if not rerun:
                        self._inflight = None
                        released = True
                if rerun:
                    logger.debug("Drain requested while finishing, running another pass")
        finally:
            if not released:
                with self._drain_lock:
                    self._inflight = None
                    self._rerun_requested = False
            self._record(result)
            handle._finish(result)
        return result

    def _drain_guarded(self, result: DrainResult) -> None:
        try:
            self._run_drain(result)
        except D3Error as e:
            # Local store failure while reading or trimming the queue
            logger.error(f"Drain aborted: {e}")
            result.error = e
            result.remaining = self._safe_count()
        except Exception as e:
            logger.error(f"Sync failed: {e}", exc_info=True)
            result.error = D3Error(f"Sync failed: {e}", code="SYNC_001")
            result.remaining = self._safe_count()

    def _run_drain(self, result: DrainResult) -> DrainResult:
        # Intents enqueued while a pass runs are picked up by another pass
        while result.error is None:
            entries = self.queue.entries()
            if not entries:
                break
            with LogContext(logger, f"Draining mutation queue ({len(entries)} pending)"):
                self._drain_pass(entries, result)
        result.remaining = self.queue.count()
        return result

    def _drain_pass(self, entries: List[QueueEntry], result: DrainResult) -> None:
        for entry in entries:
            try:
                intent = entry.decode()
            except QueueCorrupt as e:
                logger.warning(f"Skipping corrupt queue row #{entry.id}: {e.message}")
                self.queue.quarantine(entry, e)
                result.skipped_corrupt += 1
                continue

            error = self._apply(intent)
            if error is None:
                self.queue.remove(entry.id)
                result.applied += 1
                continue

            if isinstance(error, RemoteRejected):
                self._report(error)
                if self.settings.dead_letter_rejected:
                    self.queue.quarantine(entry, error)
                    result.dead_lettered += 1
                    continue

            logger.info(f"Drain stopped at #{entry.id} ({intent.kind.value}): {error.message}")
            result.stopped_on = entry.id
            result.error = error
            return

    def _apply(self, intent: MutationIntent) -> Optional[RemoteError]:
        apply = self._appliers.get(intent.kind)
        if apply is None:
            return classify_error(
                NotImplementedError(f"No applier for {intent.kind.value}"), operation=intent.kind.value
            )
        try:
            apply(intent.payload)
        except Exception as e:
            return classify_error(e, operation=intent.kind.value)
        return None

    def _report(self, error: D3Error) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception as e:
            logger.error(f"Error in sync error callback: {e}")

    def _safe_count(self) -> int:
        try:
            return self.queue.count()
        except D3Error:
            return 0

    def _record(self, result: DrainResult) -> None:
        self._state.is_syncing = False
        self._state.total_synced += result.applied
        self._state.total_dead_lettered += result.dead_lettered
        self._state.pending_count = result.remaining
        if result.error is None:
            self._state.last_sync_success = datetime.now()
            self._state.last_error = None
        else:
            self._state.last_error = result.error.message
        self._notify_callbacks()

    # =========================================================================
    # CALLBACKS / STATUS
    # =========================================================================

    def register_callback(self, callback: Callable[[SyncState], None]) -> None:
        """Register a callback for sync state changes."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[SyncState], None]) -> None:
        """Remove a registered callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self) -> None:
        """Notify all registered callbacks."""
        for callback in list(self._callbacks):
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Error in sync callback: {e}")

    def get_status_display(self) -> Dict[str, Any]:
        """Get sync status for UI display."""
        return {
            "is_syncing": self.is_syncing,
            "last_sync": self._state.last_sync.isoformat() if self._state.last_sync else None,
            "last_success": self._state.last_sync_success.isoformat() if self._state.last_sync_success else None,
            "last_error": self._state.last_error,
            "pending_count": self._safe_count(),
            "total_synced": self._state.total_synced,
            "dead_lettered": self._state.total_dead_lettered,
        }
