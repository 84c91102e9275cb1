# =============================================================================
# tests/unit/test_sync_engine.py
# Unit Tests for SyncEngine (queue reconciler)
# =============================================================================

import threading
from dataclasses import replace

import pytest
from postgrest.exceptions import APIError

from d3_core.errors import NetworkUnreachable, RemoteRejected
from d3_core.offline import models
from d3_core.offline.models import (
    MutationIntent,
    ResponsePayload,
    WeekCompletionDelete,
    WeekCompletionPayload,
)
from d3_core.offline.settings import OfflineSettings
from d3_core.offline.sync_engine import SyncEngine


def _response(text, created_at, passage_key="p2", response_key="r3"):
    payload = ResponsePayload("g", "u", 3, passage_key, response_key, text)
    return MutationIntent.upsert_response(payload, created_at=created_at)


class GatedQueue:
    """Pauses the first time the drain finds the queue empty"""

    def __init__(self, queue):
        self._queue = queue
        self.emptied = threading.Event()
        self.proceed = threading.Event()

    def entries(self):
        entries = self._queue.entries()
        if not entries and not self.emptied.is_set():
            self.emptied.set()
            self.proceed.wait(5)
        return entries

    def __getattr__(self, name):
        return getattr(self._queue, name)


@pytest.fixture
def engine(queue, remote, connection):
    return SyncEngine(queue, remote, connection, settings=OfflineSettings())


class TestDrainSemantics:
    """Replay order, idempotence and stop-on-failure"""

    def test_idempotent_replay(self, queue, remote, engine):
        """Applying the same UpsertResponse twice leaves the same final state"""
        intent = _response("grace", 1)

        queue.enqueue(intent)
        engine.drain()
        once = dict(remote.responses)

        queue.enqueue(intent)
        engine.drain()

        assert remote.responses == once
        assert remote.responses[("g", "u", 3, "p2", "r3")] == "grace"
        assert queue.count() == 0

    def test_fifo_drain_ordering(self, queue, remote, engine):
        """A (createdAt=1) then B (createdAt=2) for the same key ends as B"""
        queue.enqueue(_response("A", 1))
        queue.enqueue(_response("B", 2))

        result = engine.drain()

        assert result.applied == 2
        assert remote.responses[("g", "u", 3, "p2", "r3")] == "B"
        assert [p.response_text for op, p in remote.calls] == ["A", "B"]

    def test_clock_stepping_back_does_not_reorder_edits(self, queue, remote, engine, monkeypatch):
        """Two offline edits to one cell stay last-write-wins when the clock jumps back"""
        stamps = iter([2000, 1000])
        monkeypatch.setattr(models, "now_ms", lambda: next(stamps))
        payload = ResponsePayload("g", "u", 3, "p2", "r3", "first")

        queue.enqueue(MutationIntent.upsert_response(payload))
        queue.enqueue(MutationIntent.upsert_response(replace(payload, response_text="second")))
        engine.drain()

        assert remote.responses[("g", "u", 3, "p2", "r3")] == "second"
        assert [p.response_text for op, p in remote.calls] == ["first", "second"]

    def test_stop_on_failure(self, queue, remote, engine):
        """Second of three fails: queue keeps exactly the second and third, in order"""
        queue.enqueue(_response("first", 1, "p1"))
        second_id = queue.enqueue(_response("second", 2, "p2"))
        queue.enqueue(_response("third", 3, "p3"))
        remote.fail_when(
            lambda op, payload: payload.response_text == "second",
            NetworkUnreachable("timeout"),
        )

        result = engine.drain()

        remaining = [i.payload.response_text for i in queue.intents()]
        assert remaining == ["second", "third"]
        assert result.applied == 1
        assert result.remaining == 2
        assert result.stopped_on == second_id
        assert isinstance(result.error, NetworkUnreachable)
        # third was never attempted
        assert remote.call_count("upsert_response") == 2

    def test_failed_intent_retried_on_next_drain(self, queue, remote, engine):
        queue.enqueue(_response("x", 1))
        remote.fail_next("upsert_response", NetworkUnreachable("down"))

        assert not engine.drain().ok
        result = engine.drain()

        assert result.ok
        assert queue.count() == 0

    def test_week_completion_kinds(self, queue, remote, engine):
        queue.enqueue(MutationIntent.upsert_week_completion(WeekCompletionPayload("g", "u", 3, "2024-01-01"), created_at=1))
        queue.enqueue(MutationIntent.delete_week_completion(WeekCompletionDelete("g", "u", 3), created_at=2))
        queue.enqueue(MutationIntent.delete_week_completion(WeekCompletionDelete("g", "u", 3), created_at=3))

        result = engine.drain()

        assert result.applied == 3
        assert remote.completions == {}

    def test_empty_queue_is_ok(self, engine):
        result = engine.drain()

        assert result.ok
        assert result.applied == 0


class TestCorruptAndRejected:
    """Dead-letter handling"""

    def test_corrupt_row_is_skipped_not_blocking(self, queue, store, remote, engine):
        store.append_queue_raw("upsert_response", 1, "{not json")
        queue.enqueue(_response("after", 2))

        result = engine.drain()

        assert result.skipped_corrupt == 1
        assert result.applied == 1
        assert queue.count() == 0
        assert len(queue.dead_letters()) == 1
        assert remote.responses[("g", "u", 3, "p2", "r3")] == "after"

    def test_rejected_stays_queued_by_default(self, queue, remote, connection):
        reported = []
        engine = SyncEngine(queue, remote, connection, settings=OfflineSettings(), on_error=reported.append)
        queue.enqueue(_response("bad", 1))
        queue.enqueue(_response("good", 2, "p1"))
        remote.fail_when(lambda op, p: p.response_text == "bad", RemoteRejected("violates row-level security"))

        result = engine.drain()

        assert isinstance(result.error, RemoteRejected)
        assert queue.count() == 2
        assert len(reported) == 1

    def test_rejected_dead_lettered_when_enabled(self, queue, remote, connection):
        engine = SyncEngine(queue, remote, connection, settings=OfflineSettings(dead_letter_rejected=True))
        queue.enqueue(_response("bad", 1))
        queue.enqueue(_response("good", 2, "p1"))
        remote.fail_when(lambda op, p: p.response_text == "bad", RemoteRejected("check constraint"))

        result = engine.drain()

        assert result.ok
        assert result.dead_lettered == 1
        assert result.applied == 1
        assert queue.count() == 0
        assert queue.dead_letters()[0]["error"]["code"] == "REMOTE_002"

    def test_gateway_outage_is_not_dead_lettered(self, queue, remote, connection):
        engine = SyncEngine(queue, remote, connection, settings=OfflineSettings(dead_letter_rejected=True))
        queue.enqueue(_response("grace", 1))
        remote.fail_next("upsert_response", APIError({
            "message": "JSON could not be generated",
            "code": 503,
            "hint": "Refer to full message for details",
            "details": "<html>Service Unavailable</html>",
        }))

        result = engine.drain()

        assert isinstance(result.error, NetworkUnreachable)
        assert result.dead_lettered == 0
        assert queue.count() == 1
        assert queue.dead_letters() == []

        assert engine.drain().ok
        assert remote.responses[("g", "u", 3, "p2", "r3")] == "grace"

    def test_unexpected_exception_is_classified(self, queue, remote, engine):
        queue.enqueue(_response("x", 1))
        remote.fail_next("upsert_response", ConnectionResetError("reset by peer"))

        result = engine.drain()

        assert isinstance(result.error, NetworkUnreachable)
        assert queue.count() == 1


class TestSingleFlight:
    """At most one drain in flight"""

    def test_concurrent_callers_join_running_drain(self, queue, remote, engine):
        entered = threading.Event()
        release = threading.Event()
        original = remote.upsert_response

        def slow_upsert(payload):
            entered.set()
            release.wait(5)
            original(payload)

        engine.register_applier(_response("x", 1).kind, slow_upsert)
        queue.enqueue(_response("x", 1))

        results = {}
        owner = threading.Thread(target=lambda: results.setdefault("owner", engine.drain()))
        owner.start()
        assert entered.wait(5)

        assert engine.is_syncing
        skipped = engine.drain(wait=False)
        assert skipped.joined and not skipped.finished

        # Release the owner only once the joiner is parked on the handle
        handle = engine._inflight
        handle_wait = handle.wait
        waiting = threading.Event()

        def observed_wait(timeout=None):
            waiting.set()
            return handle_wait(timeout)

        handle.wait = observed_wait
        joiner = threading.Thread(target=lambda: results.setdefault("joiner", engine.drain()))
        joiner.start()
        assert waiting.wait(5)
        release.set()
        owner.join(5)
        joiner.join(5)

        assert results["owner"].applied == 1
        assert not results["owner"].joined
        assert results["joiner"].joined
        assert results["joiner"].applied == 1
        assert remote.responses[("g", "u", 3, "p2", "r3")] == "x"
        assert not engine.is_syncing

    def test_drain_in_background_returns_same_handle(self, queue, remote, engine):
        gate = threading.Event()
        original = remote.upsert_response
        engine.register_applier(_response("x", 1).kind, lambda p: (gate.wait(5), original(p)))
        queue.enqueue(_response("x", 1))

        first = engine.drain_in_background(only_if_online=False)
        second = engine.drain_in_background(only_if_online=False)
        gate.set()

        assert first is second
        assert first.wait(5).applied == 1


    def test_trigger_while_drain_finishes_is_not_lost(self, queue, remote, connection):
        """An edit queued after the last empty read still drains without a new trigger"""
        gated = GatedQueue(queue)
        engine = SyncEngine(gated, remote, connection, settings=OfflineSettings())
        queue.enqueue(_response("first", 1, "p1"))

        handle = engine.drain_in_background(only_if_online=False)
        assert gated.emptied.wait(5)

        queue.enqueue(_response("second", 2, "p2"))
        joined = engine.drain_in_background(only_if_online=False)
        gated.proceed.set()
        result = handle.wait(5)

        assert joined is handle
        assert result.applied == 2
        assert queue.count() == 0
        assert remote.responses[("g", "u", 3, "p2", "r3")] == "second"
        assert engine.wait_until_idle(timeout=5)
        assert not engine.is_syncing


class TestTriggers:
    """Boot, reconnect and gating"""

    def test_sync_now_skips_when_offline(self, queue, engine):
        queue.enqueue(_response("x", 1))

        assert engine.sync_now() is None
        assert queue.count() == 1

    def test_became_online_triggers_drain(self, queue, remote, connection, engine):
        engine.start()
        engine.wait_until_idle(5)
        queue.enqueue(_response("x", 1))

        connection.set_online(True)
        engine.wait_until_idle(5)

        assert queue.count() == 0
        assert remote.responses[("g", "u", 3, "p2", "r3")] == "x"
        engine.stop()

    def test_boot_drain_runs_even_before_first_check(self, queue, remote, connection, engine):
        connection.set_online(True)
        queue.enqueue(_response("x", 1))

        engine.start()
        engine.wait_until_idle(5)
        engine.stop()

        assert queue.count() == 0

    def test_status_display(self, queue, engine):
        queue.enqueue(_response("x", 1))
        engine.drain()

        status = engine.get_status_display()

        assert status["total_synced"] == 1
        assert status["pending_count"] == 0
        assert status["last_success"] is not None
        assert status["is_syncing"] is False

    def test_callbacks_see_sync_state(self, queue, engine):
        seen = []
        engine.register_callback(lambda state: seen.append(state.is_syncing))
        queue.enqueue(_response("x", 1))

        engine.drain()

        assert seen == [True, False]
