# =============================================================================
# tests/integration/test_offline_roundtrip.py
# Integration Tests: edit offline, reconnect, converge
# =============================================================================

import pytest

from d3_core.errors import NetworkUnreachable
from d3_core.offline.local_database import LocalStore
from d3_core.offline.models import ResponseCell, ResponsePayload
from d3_core.offline.read_through import ReadSource
from d3_core.offline.settings import OfflineSettings
from d3_core.offline.unified_data_service import OfflineDataService

from conftest import GROUP_ID, USER_ID


@pytest.fixture
def running_service(settings, store, remote, connection, fake_timers):
    """Data service with the sync engine started (boot + reconnect drains)"""
    service = OfflineDataService(
        settings=settings,
        store=store,
        remote=remote,
        connection=connection,
        on_error=lambda error: None,
        timer_factory=fake_timers,
    )
    service.initialize(start_sync=True)
    # let the boot drain finish so tests start from an idle engine
    service._get_sync_engine().wait_until_idle(timeout=5)
    yield service
    service._get_sync_engine().stop(timeout=5)


class TestOfflineRoundTrip:
    """End-to-end convergence through the queue"""

    def test_edit_offline_then_reconnect(self, running_service, connection, remote, fake_timers, queue):
        """Offline edit of (week 3, p2, r3) reaches Supabase after reconnect"""
        cell = ResponseCell(GROUP_ID, USER_ID, 3, "p2", "r3")

        running_service.schedule_response_write(cell, "gra")
        running_service.schedule_response_write(cell, "grace")
        fake_timers.fire_all()

        assert queue.count() == 1
        assert remote.responses == {}

        connection.set_online(True)
        assert running_service._get_sync_engine().wait_until_idle(timeout=5)

        assert remote.responses[(GROUP_ID, USER_ID, 3, "p2", "r3")] == "grace"
        assert queue.count() == 0

    def test_flaky_network_keeps_order(self, running_service, connection, remote, queue):
        """Edits made across a failed drain arrive in order, last value wins"""
        cell = ResponseCell(GROUP_ID, USER_ID, 3, "p2", "r3")
        engine = running_service._get_sync_engine()

        running_service.save_response(ResponsePayload.for_cell(cell, "first"))
        remote.fail_next("upsert_response", NetworkUnreachable("connection reset"))
        connection.set_online(True)
        assert engine.wait_until_idle(timeout=5)
        assert queue.count() == 1

        connection.set_online(False)
        running_service.save_response(ResponsePayload.for_cell(cell, "second"))
        connection.set_online(True)
        assert engine.wait_until_idle(timeout=5)

        assert queue.count() == 0
        assert remote.responses[(GROUP_ID, USER_ID, 3, "p2", "r3")] == "second"
        assert [p.response_text for op, p in remote.calls if op == "upsert_response"] == [
            "first", "first", "second",
        ]

    def test_queue_survives_restart(self, tmp_path, remote, connection, fake_timers):
        """Intents written before a restart are drained by the next boot"""
        db_path = tmp_path / "restart.db"
        cell = ResponseCell(GROUP_ID, USER_ID, 1, "p1", "r1")

        first_store = LocalStore(db_path)
        first = OfflineDataService(
            settings=OfflineSettings(db_path=db_path),
            store=first_store,
            remote=remote,
            connection=connection,
            timer_factory=fake_timers,
            on_error=lambda error: None,
        )
        first.initialize(start_sync=False)
        first.schedule_response_write(cell, "before restart")
        first.cleanup()

        connection.set_online(True)
        second_store = LocalStore(db_path)
        second = OfflineDataService(
            settings=OfflineSettings(db_path=db_path),
            store=second_store,
            remote=remote,
            connection=connection,
            timer_factory=fake_timers,
            on_error=lambda error: None,
        )
        second.initialize(start_sync=True)
        try:
            assert second._get_sync_engine().wait_until_idle(timeout=5)
            assert remote.responses[(GROUP_ID, USER_ID, 1, "p1", "r1")] == "before restart"
            assert second.pending_sync_count == 0
        finally:
            second.cleanup()

    def test_passage_available_offline_after_online_read(self, running_service, connection, remote):
        connection.set_online(True)
        running_service.read_passage("JHN.3.16")

        connection.set_online(False)

        assert running_service.read_passage("JHN.3.16").source is ReadSource.CACHE
        assert running_service.read_passage("ROM.8.28").source is ReadSource.UNAVAILABLE
