# =============================================================================
# d3_core/offline/read_through.py
# Read-through cache over the LocalStore
# =============================================================================
"""
ReadThroughCache - remote first, local store on connectivity failure.

    online  -> fetch remotely -> write back (best effort) -> REMOTE
    network failure or offline -> cached value -> CACHE
                               -> nothing cached -> UNAVAILABLE

Any other remote failure (rejected, unknown) propagates: "you're offline" and
"you're not allowed" must stay distinguishable.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Optional, Tuple, TypeVar
import logging

from d3_core.errors import (
    D3Error,
    NetworkUnreachable,
    RemoteError,
    StorageUnavailable,
    classify_error,
)
from d3_core.offline.local_database import LocalStore

logger = logging.getLogger(__name__)

K = TypeVar("K")
T = TypeVar("T")


class ReadSource(Enum):
    REMOTE = "remote"
    CACHE = "cache"
    UNAVAILABLE = "unavailable"     # not available offline; says nothing about existence


@dataclass
class ReadResult(Generic[T]):
    """
    Value of a read plus where it came from.

    A REMOTE result may hold None (the row does not exist); UNAVAILABLE
    means no answer could be obtained at all.
    """
    source: ReadSource
    value: Optional[T] = None
    cached_at: Optional[int] = None
    error: Optional[RemoteError] = None

    @property
    def available(self) -> bool:
        return self.source is not ReadSource.UNAVAILABLE

    @property
    def from_cache(self) -> bool:
        return self.source is ReadSource.CACHE

    def __bool__(self) -> bool:
        return self.available

    @classmethod
    def remote(cls, value: T) -> ReadResult[T]:
        return cls(ReadSource.REMOTE, value)

    @classmethod
    def cached(cls, value: T, cached_at: Optional[int], error: Optional[RemoteError] = None) -> ReadResult[T]:
        return cls(ReadSource.CACHE, value, cached_at=cached_at, error=error)

    @classmethod
    def not_available(cls, error: Optional[RemoteError] = None) -> ReadResult[T]:
        return cls(ReadSource.UNAVAILABLE, error=error)


class ReadThroughCache(Generic[K, T]):
    """
    One read-through policy, parameterised by entity class.

    Args:
        name: Entity name for logs ("passage", "group_context", ...)
        fetch: Remote read for a key
        is_online: Connectivity oracle reading
        load_local: Returns (value, cached_at) or None
        save_local: Writes a remote result into the local store
    """

    def __init__(
        self,
        name: str,
        fetch: Callable[[K], T],
        is_online: Callable[[], bool],
        load_local: Callable[[K], Optional[Tuple[T, Optional[int]]]],
        save_local: Callable[[K, T], None],
    ):
        self.name = name
        self.fetch = fetch
        self.is_online = is_online
        self.load_local = load_local
        self.save_local = save_local

    @classmethod
    def for_partition(
        cls,
        name: str,
        store: LocalStore,
        partition: str,
        key_for: Callable[[K], str],
        fetch: Callable[[K], T],
        is_online: Callable[[], bool],
        encode: Callable[[T], Any],
        decode: Callable[[Any], T],
        after_save: Optional[Callable[[], None]] = None,
    ) -> ReadThroughCache[K, T]:
        """Cache that keeps one entity per key of a LocalStore partition."""

        def load_local(key: K):
            entry = store.get_entry(partition, key_for(key))
            if entry is None:
                return None
            return decode(entry.value), entry.cached_at

        def save_local(key: K, value: T) -> None:
            store.put(partition, key_for(key), encode(value))
            if after_save is not None:
                after_save()

        return cls(name, fetch, is_online, load_local, save_local)

    def read(self, key: K) -> ReadResult[T]:
        """
        Raises:
            RemoteRejected, RemoteUnknown: remote failures that are not connectivity
            ConfigurationError: the remote side is not configured
        """
        network_error: Optional[RemoteError] = None

        if self.is_online():
            try:
                value = self.fetch(key)
            except D3Error as e:
                if not isinstance(e, NetworkUnreachable):
                    raise
                network_error = e
            except Exception as e:
                error = classify_error(e, operation=f"read {self.name}")
                if not isinstance(error, NetworkUnreachable):
                    raise error from e
                network_error = error
            else:
                if value is not None:
                    self._write_back(key, value)
                return ReadResult.remote(value)

            logger.info(f"Remote {self.name} read failed, using local cache: {network_error.message}")

        return self._read_local(key, network_error)

    def _write_back(self, key: K, value: T) -> None:
        try:
            self.save_local(key, value)
        except StorageUnavailable as e:
            logger.warning(f"Could not cache {self.name} {key!r}: {e.message}")

    def _read_local(self, key: K, network_error: Optional[RemoteError]) -> ReadResult[T]:
        try:
            local = self.load_local(key)
        except StorageUnavailable as e:
            logger.warning(f"Local {self.name} cache unreadable: {e.message}")
            local = None

        if local is None:
            logger.debug(f"{self.name} {key!r} not available offline")
            return ReadResult.not_available(network_error)

        value, cached_at = local
        return ReadResult.cached(value, cached_at, network_error)
