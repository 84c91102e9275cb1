# =============================================================================
# d3_core/data/remote_store.py
# Remote (Supabase) operations consumed by the offline layer
# =============================================================================
"""
RemoteStore - the remote side of the offline layer.

Writes use idempotent semantics: upserts replace on their natural conflict
key, deletes of an absent row succeed. Every exception that leaves this module
is a RemoteError (NetworkUnreachable | RemoteRejected | RemoteUnknown) or a
ConfigurationError.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, TypeVar
import logging

from d3_core.errors import ConfigurationError, classify_error
from d3_core.offline.models import (
    GroupContext,
    GroupInfo,
    Membership,
    Passage,
    ResponsePayload,
    WeekCompletionDelete,
    WeekCompletionPayload,
    WeekKey,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Table names and their upsert conflict keys
RESPONSES_TABLE = "passage_responses"
RESPONSES_CONFLICT = "group_id,user_id,week_number,passage_key,response_key"
COMPLETIONS_TABLE = "week_completions"
COMPLETIONS_CONFLICT = "group_id,user_id,week_number"
MEMBERSHIPS_TABLE = "group_memberships"
MEMBERSHIP_SELECT = "group_id, role, group:groups (id, name, start_date, timezone)"


class RemoteStore(ABC):
    """Abstract remote store; SupabaseRemoteStore is the production one."""

    @abstractmethod
    def upsert_response(self, payload: ResponsePayload) -> None:
        """Set one response cell, replacing any existing row for the same key."""

    @abstractmethod
    def upsert_week_completion(self, payload: WeekCompletionPayload) -> None:
        """Mark a week completed, replacing any existing row for (group, user, week)."""

    @abstractmethod
    def delete_week_completion(self, payload: WeekCompletionDelete) -> None:
        """Remove the completion row for (group, user, week); absent is fine."""

    @abstractmethod
    def read_membership(self, group_id: str, user_id: str) -> Optional[GroupContext]:
        """The user's role and group metadata, or None if not a member."""

    @abstractmethod
    def read_memberships(self, user_id: str) -> List[Membership]:
        """Every group the user belongs to."""

    @abstractmethod
    def read_week_responses(self, week: WeekKey) -> List[ResponsePayload]:
        """Every stored response cell for one week."""

    @abstractmethod
    def read_week_completions(self, group_id: str, user_id: str) -> List[int]:
        """Week numbers the user has completed in the group."""

    @abstractmethod
    def read_passage(self, bible_id: int, reference: str) -> Passage:
        """Rendered passage HTML for a reference."""


class SupabaseRemoteStore(RemoteStore):
    """
    RemoteStore backed by supabase-py.

    Usage:
        remote = SupabaseRemoteStore(get_cached_supabase_client(), passage_connector)
        remote.upsert_response(payload)
    """

    def __init__(self, client=None, passage_connector=None):
        """
        Args:
            client: supabase.Client (default: the shared cached client)
            passage_connector: PassageConnector used by read_passage()
        """
        self._client = client
        self.passage_connector = passage_connector

    @property
    def client(self):
        if self._client is None:
            from d3_core.data.supabase_client import get_cached_supabase_client
            self._client = get_cached_supabase_client()
        return self._client

    def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run one remote call, converting any failure into a RemoteError."""
        try:
            return func()
        except ConfigurationError:
            raise
        except Exception as e:
            error = classify_error(e, operation=operation)
            logger.debug(f"{operation} failed: {error}")
            raise error from e

    # =========================================================================
    # WRITES
    # =========================================================================

    def upsert_response(self, payload: ResponsePayload) -> None:
        row = {
            "group_id": payload.group_id,
            "user_id": payload.user_id,
            "week_number": payload.week_number,
            "passage_key": payload.passage_key,
            "response_key": payload.response_key,
            "response_text": payload.response_text,
        }
        self._call(
            "upsert_response",
            lambda: self.client.table(RESPONSES_TABLE)
            .upsert(row, on_conflict=RESPONSES_CONFLICT)
            .execute(),
        )

    def upsert_week_completion(self, payload: WeekCompletionPayload) -> None:
        row = {
            "group_id": payload.group_id,
            "user_id": payload.user_id,
            "week_number": payload.week_number,
            "completed_at": payload.completed_at,
        }
        self._call(
            "upsert_week_completion",
            lambda: self.client.table(COMPLETIONS_TABLE)
            .upsert(row, on_conflict=COMPLETIONS_CONFLICT)
            .execute(),
        )

    def delete_week_completion(self, payload: WeekCompletionDelete) -> None:
        self._call(
            "delete_week_completion",
            lambda: self.client.table(COMPLETIONS_TABLE)
            .delete()
            .eq("group_id", payload.group_id)
            .eq("user_id", payload.user_id)
            .eq("week_number", payload.week_number)
            .execute(),
        )

    # =========================================================================
    # READS
    # =========================================================================

    @staticmethod
    def _group_of(row: Dict[str, Any]) -> GroupInfo:
        group = row.get("group")
        # PostgREST may embed a to-one relation as a single-element list
        if isinstance(group, list):
            group = group[0] if group else None
        return GroupInfo.from_dict(group or {})

    def read_membership(self, group_id: str, user_id: str) -> Optional[GroupContext]:
        response = self._call(
            "read_membership",
            lambda: self.client.table(MEMBERSHIPS_TABLE)
            .select(MEMBERSHIP_SELECT)
            .eq("group_id", group_id)
            .eq("user_id", user_id)
            .limit(1)
            .execute(),
        )
        rows = response.data or []
        if not rows:
            return None
        row = rows[0]
        return GroupContext(
            group_id=group_id,
            user_id=user_id,
            role=row.get("role") or "member",
            group=self._group_of(row),
        )

    def read_memberships(self, user_id: str) -> List[Membership]:
        response = self._call(
            "read_memberships",
            lambda: self.client.table(MEMBERSHIPS_TABLE)
            .select(MEMBERSHIP_SELECT)
            .eq("user_id", user_id)
            .execute(),
        )
        memberships = []
        for row in response.data or []:
            group = self._group_of(row)
            memberships.append(
                Membership(
                    group_id=str(row.get("group_id") or group.id),
                    role=row.get("role") or "member",
                    group=group,
                )
            )
        return memberships

    def read_week_responses(self, week: WeekKey) -> List[ResponsePayload]:
        response = self._call(
            "read_week_responses",
            lambda: self.client.table(RESPONSES_TABLE)
            .select("passage_key,response_key,response_text")
            .eq("group_id", week.group_id)
            .eq("user_id", week.user_id)
            .eq("week_number", week.week_number)
            .execute(),
        )
        return [
            ResponsePayload(
                group_id=week.group_id,
                user_id=week.user_id,
                week_number=week.week_number,
                passage_key=row["passage_key"],
                response_key=row["response_key"],
                response_text=row.get("response_text") or "",
            )
            for row in response.data or []
        ]

    def read_week_completions(self, group_id: str, user_id: str) -> List[int]:
        response = self._call(
            "read_week_completions",
            lambda: self.client.table(COMPLETIONS_TABLE)
            .select("week_number")
            .eq("group_id", group_id)
            .eq("user_id", user_id)
            .execute(),
        )
        return sorted({int(row["week_number"]) for row in response.data or []})

    def read_passage(self, bible_id: int, reference: str) -> Passage:
        if self.passage_connector is None:
            raise ConfigurationError(
                "No passage connector configured", config_key="passage_base_url", expected_type="str"
            )
        return self.passage_connector.read_passage(bible_id, reference)
