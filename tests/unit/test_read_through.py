# =============================================================================
# tests/unit/test_read_through.py
# Unit Tests for ReadThroughCache
# =============================================================================

import httpx
import pytest
from postgrest.exceptions import APIError

from d3_core.errors import (
    NetworkUnreachable,
    RemoteRejected,
    RemoteUnknown,
    StorageUnavailable,
)
from d3_core.offline.models import PARTITION_PASSAGES, Passage, passage_cache_key
from d3_core.offline.read_through import ReadResult, ReadSource, ReadThroughCache

BIBLE_ID = 2692


class Switch:
    """Mutable connectivity reading for the cache under test"""

    def __init__(self, online=True):
        self.online = online

    def __call__(self):
        return self.online


@pytest.fixture
def online():
    return Switch(True)


@pytest.fixture
def passages(store, remote, online):
    return ReadThroughCache.for_partition(
        "passage",
        store,
        PARTITION_PASSAGES,
        key_for=lambda ref: passage_cache_key(BIBLE_ID, ref),
        fetch=lambda ref: remote.read_passage(BIBLE_ID, ref),
        is_online=online,
        encode=Passage.to_dict,
        decode=Passage.from_dict,
    )


class TestReadThrough:
    """Remote first, cache on connectivity failure"""

    def test_online_read_writes_back(self, passages, store):
        result = passages.read("JHN.3.16")

        assert result.source is ReadSource.REMOTE
        assert result.value.html == "<p>JHN.3.16</p>"
        assert store.get(PARTITION_PASSAGES, "2692:JHN.3.16")["html"] == "<p>JHN.3.16</p>"

    def test_offline_read_fallback(self, passages, remote):
        """JHN.3.16 read once online is served from cache when the network fails"""
        remote.passages[(BIBLE_ID, "JHN.3.16")] = Passage("JHN.3.16", "<p>For God so loved</p>")
        passages.read("JHN.3.16")

        remote.offline = True
        result = passages.read("JHN.3.16")

        assert result.source is ReadSource.CACHE
        assert result.from_cache
        assert result.value.html == "<p>For God so loved</p>"
        assert result.cached_at is not None
        assert isinstance(result.error, NetworkUnreachable)

    def test_offline_read_miss(self, passages, remote):
        """ROM.8.28 never read is unavailable, which is not the same as empty"""
        remote.offline = True

        result = passages.read("ROM.8.28")

        assert result.source is ReadSource.UNAVAILABLE
        assert not result
        assert result.value is None

    def test_oracle_offline_skips_remote(self, passages, remote, online):
        online.online = False

        result = passages.read("ROM.8.28")

        assert result.source is ReadSource.UNAVAILABLE
        assert result.error is None
        assert remote.call_count("read_passage") == 0

    def test_rejection_propagates(self, passages, remote, store):
        store.put(PARTITION_PASSAGES, "2692:JHN.3.16", {"reference": "JHN.3.16", "html": "cached"})
        remote.fail_next("read_passage", RemoteRejected("permission denied", status_code=403))

        with pytest.raises(RemoteRejected):
            passages.read("JHN.3.16")

    def test_raw_transport_error_falls_back(self, passages, remote, store):
        store.put(PARTITION_PASSAGES, "2692:JHN.3.16", {"reference": "JHN.3.16", "html": "cached"})
        remote.fail_next("read_passage", httpx.ConnectError("Name or service not known"))

        result = passages.read("JHN.3.16")

        assert result.from_cache
        assert result.value.html == "cached"

    def test_gateway_outage_falls_back(self, passages, remote, store):
        """A 503 page surfaced by postgrest is an outage, not a denial"""
        store.put(PARTITION_PASSAGES, "2692:JHN.3.16", {"reference": "JHN.3.16", "html": "cached"})
        remote.fail_next("read_passage", APIError({
            "message": "JSON could not be generated",
            "code": 503,
            "hint": "Refer to full message for details",
            "details": "<html>Service Unavailable</html>",
        }))

        result = passages.read("JHN.3.16")

        assert result.source is ReadSource.CACHE
        assert result.value.html == "cached"
        assert isinstance(result.error, NetworkUnreachable)

    def test_unclassified_error_is_raised_as_remote_unknown(self, passages, remote):
        remote.fail_next("read_passage", ValueError("unexpected payload"))

        with pytest.raises(RemoteUnknown):
            passages.read("JHN.3.16")


class TestReadThroughEdgeCases:
    """Empty remote results and local storage failures"""

    def test_remote_none_is_not_cached(self, store, online):
        cache = ReadThroughCache.for_partition(
            "group_context",
            store,
            "group_context",
            key_for=str,
            fetch=lambda key: None,
            is_online=online,
            encode=lambda v: v,
            decode=lambda v: v,
        )

        result = cache.read("u:g")

        assert result.source is ReadSource.REMOTE
        assert result.value is None
        assert result.available
        assert store.count("group_context") == 0

    def test_write_back_failure_still_returns_remote(self, online):
        def save_local(key, value):
            raise StorageUnavailable("disk full", operation="put")

        cache = ReadThroughCache("passage", lambda k: "fresh", online, lambda k: None, save_local)

        assert cache.read("k") == ReadResult.remote("fresh")

    def test_unreadable_store_counts_as_miss(self, online):
        def load_local(key):
            raise StorageUnavailable("locked", operation="get")

        online.online = False
        cache = ReadThroughCache("passage", lambda k: "fresh", online, load_local, lambda k, v: None)

        assert cache.read("k").source is ReadSource.UNAVAILABLE

    def test_after_save_hook_runs(self, store, online):
        calls = []
        cache = ReadThroughCache.for_partition(
            "passage",
            store,
            PARTITION_PASSAGES,
            key_for=str,
            fetch=lambda ref: {"html": ref},
            is_online=online,
            encode=lambda v: v,
            decode=lambda v: v,
            after_save=lambda: calls.append("pruned"),
        )

        cache.read("a")
        cache.read("b")

        assert calls == ["pruned", "pruned"]
