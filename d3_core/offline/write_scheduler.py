# =============================================================================
# d3_core/offline/write_scheduler.py
# Debounced persistence of rapid edits
# =============================================================================
"""
DebouncedWriteScheduler - one persisted write per field after a quiet period.

Each schedule_write() for a field cancels that field's pending timer and
starts a new one, so a burst of keystrokes ends in a single write carrying
the last value. Fields are independent of each other.

A remote write that has already started is not cancelled by a newer edit;
the newer timer simply fires later and overwrites it.
"""

from __future__ import annotations
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

TimerFactory = Callable[..., Any]


@dataclass
class _PendingWrite:
    timer: Any
    value: Any
    token: object


class DebouncedWriteScheduler:
    """
    Usage:
        scheduler = DebouncedWriteScheduler(0.4, service.persist_field)
        scheduler.schedule_write(cell.field_key, "gra")
        scheduler.schedule_write(cell.field_key, "grace")   # only this one persists
    """

    def __init__(
        self,
        quiet_period: float,
        on_fire: Callable[[str, Any], None],
        timer_factory: Optional[TimerFactory] = None,
    ):
        """
        Args:
            quiet_period: Seconds without edits before a field is written
            on_fire: Called as on_fire(field_key, value) when the timer expires
            timer_factory: threading.Timer-compatible constructor (for tests)
        """
        self.quiet_period = quiet_period
        self.on_fire = on_fire
        self._timer_factory = timer_factory or threading.Timer
        self._pending: Dict[str, _PendingWrite] = {}
        self._lock = threading.Lock()

    @property
    def pending_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._pending)

    def has_pending(self, field_key: str) -> bool:
        with self._lock:
            return field_key in self._pending

    def schedule_write(self, field_key: str, value: Any) -> None:
        """Replace any pending write for the field and restart its timer."""
        token = object()
        with self._lock:
            previous = self._pending.pop(field_key, None)
            if previous is not None:
                previous.timer.cancel()

            timer = self._timer_factory(self.quiet_period, self._fire, args=(field_key, token))
            if isinstance(timer, threading.Thread):
                timer.daemon = True
            self._pending[field_key] = _PendingWrite(timer, value, token)
            timer.start()

    def _fire(self, field_key: str, token: object) -> None:
        with self._lock:
            pending = self._pending.get(field_key)
            # A superseded timer that woke up anyway must not write
            if pending is None or pending.token is not token:
                return
            del self._pending[field_key]
        self._run(field_key, pending.value)

    def _run(self, field_key: str, value: Any) -> None:
        try:
            self.on_fire(field_key, value)
        except Exception as e:
            logger.error(f"Debounced write for {field_key} failed: {e}", exc_info=True)

    def flush(self, field_key: str) -> bool:
        """Write a pending field now. Returns False if nothing was pending."""
        with self._lock:
            pending = self._pending.pop(field_key, None)
        if pending is None:
            return False
        pending.timer.cancel()
        self._run(field_key, pending.value)
        return True

    def flush_all(self) -> List[str]:
        """Write every pending field now (used on shutdown)."""
        with self._lock:
            pending = list(self._pending.items())
            self._pending.clear()
        for field_key, write in pending:
            write.timer.cancel()
            self._run(field_key, write.value)
        if pending:
            logger.info(f"Flushed {len(pending)} pending writes")
        return [field_key for field_key, _ in pending]

    def cancel(self, field_key: str) -> bool:
        """Drop a pending write without persisting it."""
        with self._lock:
            pending = self._pending.pop(field_key, None)
        if pending is None:
            return False
        pending.timer.cancel()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for write in pending:
            write.timer.cancel()
