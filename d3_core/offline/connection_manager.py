# =============================================================================
# d3_core/offline/connection_manager.py
# Connection Status Detection and Management
# =============================================================================
"""
ConnectionManager - Detects and monitors internet/Supabase connectivity.

The signal is advisory: it decides *when* to attempt a sync, never whether a
remote call will succeed. Every remote call still handles its own failure.

Features:
- Socket probes against public resolvers and the Supabase host
- Periodic health checks on a daemon thread
- Status-change callbacks and an edge-triggered "became online" event
- Host-reported status (set_online) for environments that know better
"""

from __future__ import annotations
import socket
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse
import logging

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """Connection status states."""
    ONLINE = "online"           # Full connectivity (Internet + Supabase)
    OFFLINE = "offline"         # No connectivity
    DEGRADED = "degraded"       # Internet OK but Supabase unavailable
    UNKNOWN = "unknown"         # Initial state


@dataclass
class ConnectionState:
    """Current connection state with metadata."""
    status: ConnectionStatus = ConnectionStatus.UNKNOWN
    internet_available: bool = False
    supabase_available: bool = False
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None


class ConnectionManager:
    """
    Manager for connection status detection.

    Usage:
        manager = get_connection_manager()
        manager.on_became_online(engine.sync_now)
        if manager.is_online:
            # Try the direct remote write
        else:
            # Queue it
    """

    _instance: Optional[ConnectionManager] = None
    _lock = threading.Lock()

    # Configuration
    CHECK_INTERVAL_ONLINE = 30      # Seconds between checks when online
    CHECK_INTERVAL_OFFLINE = 10     # Seconds between checks when offline
    CONNECTION_TIMEOUT = 5          # Timeout for connection tests
    PROBE_HOSTS: Tuple[Tuple[str, int], ...] = (
        ("8.8.8.8", 53),        # Google DNS
        ("1.1.1.1", 53),        # Cloudflare DNS
        ("208.67.222.222", 53), # OpenDNS
    )

    def __init__(
        self,
        supabase_url: Optional[str] = None,
        probe_hosts: Optional[Sequence[Tuple[str, int]]] = None,
        check_interval_online: Optional[float] = None,
        check_interval_offline: Optional[float] = None,
        connection_timeout: Optional[float] = None,
    ):
        """Initialize connection manager (use get_connection_manager() for the shared one)."""
        self._state = ConnectionState()
        self._state_lock = threading.RLock()
        self._callbacks: List[Callable[[ConnectionState], None]] = []
        self._online_callbacks: List[Callable[[], None]] = []
        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_monitoring = threading.Event()
        self._initialized = False

        self.supabase_url = supabase_url or ""
        self.probe_hosts = tuple(probe_hosts) if probe_hosts is not None else self.PROBE_HOSTS
        self.check_interval_online = check_interval_online or self.CHECK_INTERVAL_ONLINE
        self.check_interval_offline = check_interval_offline or self.CHECK_INTERVAL_OFFLINE
        self.connection_timeout = connection_timeout or self.CONNECTION_TIMEOUT

    @classmethod
    def get_instance(cls, **kwargs) -> ConnectionManager:
        """Get or create the singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = ConnectionManager(**kwargs)
        return cls._instance

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        """Get current status."""
        return self._state.status

    @property
    def is_online(self) -> bool:
        """Point-in-time, best-effort reachability."""
        return self._state.status == ConnectionStatus.ONLINE

    @property
    def is_offline(self) -> bool:
        """Check if we're completely offline."""
        return self._state.status == ConnectionStatus.OFFLINE

    def initialize(self, start_monitoring: bool = True) -> None:
        """
        Initialize the connection manager.

        Args:
            start_monitoring: Whether to start background monitoring
        """
        if self._initialized:
            return

        self.check_connection()

        if start_monitoring:
            self.start_monitoring()

        self._initialized = True
        logger.info(f"ConnectionManager initialized. Status: {self._state.status.value}")

    # =========================================================================
    # STATUS UPDATES
    # =========================================================================

    def check_connection(self) -> ConnectionState:
        """
        Perform a connection check and update state.

        Returns:
            Updated ConnectionState
        """
        internet_ok = self._check_internet()
        supabase_ok = self._check_supabase() if internet_ok else False

        if internet_ok and supabase_ok:
            new_status = ConnectionStatus.ONLINE
        elif internet_ok:
            new_status = ConnectionStatus.DEGRADED
        else:
            new_status = ConnectionStatus.OFFLINE

        self._apply_status(new_status, internet_ok, supabase_ok)
        return self._state

    def set_online(self, online: bool, reason: Optional[str] = None) -> None:
        """
        Report reachability observed by the host environment.

        Args:
            online: True if the host says the network is up
            reason: Optional note kept in the state for display
        """
        status = ConnectionStatus.ONLINE if online else ConnectionStatus.OFFLINE
        self._apply_status(status, online, online, error_message=reason)

    def force_offline(self) -> None:
        """Force offline mode (for testing or user preference)."""
        self._apply_status(ConnectionStatus.OFFLINE, False, False)
        logger.info("Forced offline mode")

    def force_check(self) -> ConnectionState:
        """Force an immediate connection check."""
        return self.check_connection()

    def _apply_status(
        self,
        new_status: ConnectionStatus,
        internet_ok: bool,
        supabase_ok: bool,
        error_message: Optional[str] = None,
    ) -> None:
        with self._state_lock:
            old_status = self._state.status
            self._state.internet_available = internet_ok
            self._state.supabase_available = supabase_ok
            self._state.last_check = datetime.now()
            self._state.status = new_status

            if new_status == ConnectionStatus.ONLINE:
                self._state.last_online = datetime.now()
                self._state.consecutive_failures = 0
                self._state.error_message = None
            else:
                self._state.consecutive_failures += 1
                if error_message:
                    self._state.error_message = error_message

        if old_status == new_status:
            return

        logger.info(f"Connection status changed: {old_status.value} -> {new_status.value}")
        self._notify_callbacks()

        # Edge: a known not-online state turning online. Leaving UNKNOWN is
        # boot, which has its own drain trigger.
        if new_status == ConnectionStatus.ONLINE and old_status in (
            ConnectionStatus.OFFLINE,
            ConnectionStatus.DEGRADED,
        ):
            self._notify_became_online()

    # =========================================================================
    # PROBES
    # =========================================================================

    def _probe(self, host: str, port: int) -> bool:
        try:
            with socket.create_connection((host, port), timeout=self.connection_timeout):
                return True
        except OSError:
            return False

    def _check_internet(self) -> bool:
        """
        Check internet connectivity by attempting to reach well-known hosts.

        Returns:
            True if internet is available
        """
        return any(self._probe(host, port) for host, port in self.probe_hosts)

    def _check_supabase(self) -> bool:
        """
        Check Supabase connectivity.

        Returns:
            True if the Supabase host accepts a TCP connection
        """
        if not self.supabase_url:
            # No Supabase configured - nothing more specific to probe
            return True

        parsed = urlparse(self.supabase_url)
        host = parsed.hostname
        if not host:
            self._state.error_message = f"Invalid Supabase URL: {self.supabase_url}"
            return False
        port = parsed.port or (443 if parsed.scheme != "http" else 80)
        ok = self._probe(host, port)
        if not ok:
            self._state.error_message = f"Supabase host unreachable: {host}:{port}"
            logger.debug(self._state.error_message)
        return ok

    # =========================================================================
    # MONITORING
    # =========================================================================

    def start_monitoring(self) -> None:
        """Start background connection monitoring."""
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return

        self._stop_monitoring.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitoring_loop,
            daemon=True,
            name="ConnectionMonitor"
        )
        self._monitor_thread.start()
        logger.debug("Connection monitoring started")

    def stop_monitoring(self) -> None:
        """Stop background connection monitoring."""
        self._stop_monitoring.set()
        if self._monitor_thread:
            self._monitor_thread.join(timeout=5)
            self._monitor_thread = None
        logger.debug("Connection monitoring stopped")

    def _monitoring_loop(self) -> None:
        """Background monitoring loop."""
        while not self._stop_monitoring.is_set():
            interval = (
                self.check_interval_online
                if self.is_online
                else self.check_interval_offline
            )

            if self._stop_monitoring.wait(timeout=interval):
                break

            try:
                self.check_connection()
            except Exception as e:
                logger.error(f"Error in connection check: {e}")

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def register_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        """
        Register a callback for connection status changes.

        Args:
            callback: Function called with ConnectionState when status changes
        """
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        """Remove a registered callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def on_became_online(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Subscribe to offline -> online transitions.

        The callback fires once per edge, not on every check that finds the
        connection still up.

        Returns:
            A function that removes the subscription
        """
        if callback not in self._online_callbacks:
            self._online_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._online_callbacks:
                self._online_callbacks.remove(callback)

        return unsubscribe

    def _notify_callbacks(self) -> None:
        """Notify all registered callbacks of status change."""
        for callback in list(self._callbacks):
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Error in connection callback: {e}")

    def _notify_became_online(self) -> None:
        logger.info("Connection restored")
        for callback in list(self._online_callbacks):
            try:
                callback()
            except Exception as e:
                logger.error(f"Error in became-online callback: {e}")

    def get_status_display(self) -> dict:
        """Get status information for UI display."""
        return {
            "status": self._state.status.value,
            "is_online": self.is_online,
            "internet": self._state.internet_available,
            "supabase": self._state.supabase_available,
            "last_check": self._state.last_check.isoformat() if self._state.last_check else None,
            "last_online": self._state.last_online.isoformat() if self._state.last_online else None,
            "failures": self._state.consecutive_failures,
            "error": self._state.error_message,
        }


# Singleton accessor
_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager(**kwargs) -> ConnectionManager:
    """
    Get the global ConnectionManager instance.

    Returns:
        ConnectionManager singleton
    """
    global _connection_manager
    if _connection_manager is None:
        _connection_manager = ConnectionManager.get_instance(**kwargs)
        _connection_manager.initialize()
    return _connection_manager


# Convenience functions
def is_online() -> bool:
    """Quick check if we're online."""
    return get_connection_manager().is_online
