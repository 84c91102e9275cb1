# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import sys
import pytest
from typing import Any, Callable, Dict, List, Optional, Tuple
from unittest.mock import MagicMock

from d3_core.data.remote_store import RemoteStore
from d3_core.errors import NetworkUnreachable
from d3_core.offline.connection_manager import ConnectionManager
from d3_core.offline.local_database import LocalStore
from d3_core.offline.models import (
    GroupContext,
    GroupInfo,
    Membership,
    Passage,
    ResponseCell,
    ResponsePayload,
)
from d3_core.offline.mutation_queue import MutationQueue
from d3_core.offline.settings import OfflineSettings


GROUP_ID = "7c0f5a0e-0000-4000-8000-000000000001"
USER_ID = "1d2e3f40-0000-4000-8000-000000000002"


# =============================================================================
# FAKES
# =============================================================================

class FakeRemoteStore(RemoteStore):
    """
    In-memory stand-in for Supabase with failure injection.

    Upserts replace on the same keys Supabase uses as conflict targets,
    so replay and ordering behave like the real tables.
    """

    def __init__(self):
        self.responses: Dict[Tuple[str, str, int, str, str], str] = {}
        self.completions: Dict[Tuple[str, str, int], str] = {}
        self.memberships: Dict[Tuple[str, str], GroupContext] = {}
        self.passages: Dict[Tuple[int, str], Passage] = {}
        self.calls: List[Tuple[str, Any]] = []
        self.offline = False
        self._rules: List[list] = []  # [predicate, error, remaining times or None]

    # -- failure injection ----------------------------------------------------

    def fail_when(self, predicate: Callable[[str, Any], bool], error: Exception, times: Optional[int] = None):
        """Raise ``error`` for calls where predicate(operation, arg) is true."""
        self._rules.append([predicate, error, times])

    def fail_next(self, operation: str, error: Exception, times: int = 1):
        self.fail_when(lambda op, arg: op == operation, error, times)

    def clear_failures(self):
        self._rules.clear()
        self.offline = False

    def _check(self, operation: str, arg: Any) -> None:
        self.calls.append((operation, arg))
        if self.offline:
            raise NetworkUnreachable("network is down", operation=operation)
        for rule in self._rules:
            predicate, error, times = rule
            if times == 0 or not predicate(operation, arg):
                continue
            if times is not None:
                rule[2] = times - 1
            raise error

    def call_count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    # -- writes ---------------------------------------------------------------

    def upsert_response(self, payload: ResponsePayload) -> None:
        self._check("upsert_response", payload)
        key = (payload.group_id, payload.user_id, payload.week_number, payload.passage_key, payload.response_key)
        self.responses[key] = payload.response_text

    def upsert_week_completion(self, payload) -> None:
        self._check("upsert_week_completion", payload)
        self.completions[(payload.group_id, payload.user_id, payload.week_number)] = payload.completed_at

    def delete_week_completion(self, payload) -> None:
        self._check("delete_week_completion", payload)
        self.completions.pop((payload.group_id, payload.user_id, payload.week_number), None)

    # -- reads ----------------------------------------------------------------

    def read_membership(self, group_id, user_id):
        self._check("read_membership", (group_id, user_id))
        return self.memberships.get((group_id, user_id))

    def read_memberships(self, user_id):
        self._check("read_memberships", user_id)
        return [
            Membership(group_id=ctx.group_id, role=ctx.role, group=ctx.group)
            for (group_id, uid), ctx in sorted(self.memberships.items())
            if uid == user_id
        ]

    def read_week_responses(self, week):
        self._check("read_week_responses", week)
        return [
            ResponsePayload(g, u, w, p, r, text)
            for (g, u, w, p, r), text in sorted(self.responses.items())
            if (g, u, w) == (week.group_id, week.user_id, week.week_number)
        ]

    def read_week_completions(self, group_id, user_id):
        self._check("read_week_completions", (group_id, user_id))
        return sorted(w for (g, u, w) in self.completions if (g, u) == (group_id, user_id))

    def read_passage(self, bible_id, reference):
        self._check("read_passage", (bible_id, reference))
        return self.passages.get((bible_id, reference)) or Passage(
            reference=reference, html=f"<p>{reference}</p>"
        )


class FakeTimer:
    """threading.Timer stand-in that only fires when told to."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.cancelled or self.fired:
            return
        self.fired = True
        self.function(*self.args, **self.kwargs)


class FakeTimerFactory:
    """Records every timer so tests can expire them deterministically."""

    def __init__(self):
        self.timers: List[FakeTimer] = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args, kwargs)
        self.timers.append(timer)
        return timer

    @property
    def live(self) -> List[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def fire_all(self) -> None:
        for timer in list(self.live):
            timer.fire()


# =============================================================================
# CORE FIXTURES
# =============================================================================

@pytest.fixture
def store(tmp_path):
    """Initialized LocalStore in a temporary directory"""
    local = LocalStore(tmp_path / "d3_offline.db")
    local.initialize()
    yield local
    local.close()


@pytest.fixture
def queue(store):
    return MutationQueue(store)


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def connection():
    """ConnectionManager driven only by set_online(); no network probes"""
    manager = ConnectionManager(probe_hosts=())
    manager.set_online(False)
    return manager


@pytest.fixture
def settings(tmp_path):
    return OfflineSettings(db_path=tmp_path / "d3_offline.db")


@pytest.fixture
def fake_timers():
    return FakeTimerFactory()


@pytest.fixture
def cell():
    """Week 3, passage 2, response slot 3 ("application")"""
    return ResponseCell(GROUP_ID, USER_ID, 3, "p2", "r3")


@pytest.fixture
def group_context():
    return GroupContext(
        group_id=GROUP_ID,
        user_id=USER_ID,
        role="leader",
        group=GroupInfo(id=GROUP_ID, name="Tuesday Night D3", start_date="2024-09-03", timezone="America/Chicago"),
    )


@pytest.fixture
def data_service(settings, store, remote, connection, fake_timers):
    """OfflineDataService wired to fakes; errors collected in service.reported"""
    from d3_core.offline.unified_data_service import OfflineDataService

    reported = []
    service = OfflineDataService(
        settings=settings,
        store=store,
        remote=remote,
        connection=connection,
        on_error=reported.append,
        timer_factory=fake_timers,
    )
    service.initialize(start_sync=False)
    service.reported = reported
    yield service
    service._get_sync_engine().wait_until_idle(timeout=5)


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def mock_streamlit(monkeypatch):
    """Mock Streamlit for testing"""
    # Create mock streamlit module
    mock_st = MagicMock()
    mock_st.session_state = {}
    mock_st.secrets = {}
    mock_st.cache_data = lambda f: f
    mock_st.cache_resource = lambda f: f
    mock_st.columns.side_effect = lambda n: [MagicMock() for _ in range(n if isinstance(n, int) else len(n))]
    mock_st.button.return_value = False

    monkeypatch.setitem(sys.modules, "streamlit", mock_st)

    # Modules imported earlier hold their own reference
    for name in ("d3_core.errors.handlers", "d3_core.ui.sync_status"):
        module = sys.modules.get(name)
        if module is not None:
            monkeypatch.setattr(module, "st", mock_st)

    yield mock_st


@pytest.fixture
def mock_supabase():
    """Mock Supabase client"""
    mock_client = MagicMock()
    table = mock_client.table.return_value
    table.select.return_value.eq.return_value.eq.return_value.eq.return_value.execute.return_value.data = []
    table.select.return_value.eq.return_value.eq.return_value.limit.return_value.execute.return_value.data = []
    table.select.return_value.eq.return_value.eq.return_value.execute.return_value.data = []
    table.select.return_value.eq.return_value.execute.return_value.data = []
    table.upsert.return_value.execute.return_value = MagicMock()
    return mock_client
