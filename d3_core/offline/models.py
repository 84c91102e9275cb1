# =============================================================================
# d3_core/offline/models.py
# Queue and cache record types
# =============================================================================
"""
Data model shared by the offline layer.

MutationIntent is the durable record of a write that still has to reach
Supabase. It is persisted as ``{kind, createdAt, payload}``; only the payload
fields are ever sent over the network.
"""

from __future__ import annotations
import json
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from d3_core.errors import QueueCorrupt


# Local store partitions
PARTITION_RESPONSES = "responses"
PARTITION_GROUP_CONTEXT = "group_context"
PARTITION_MEMBERSHIPS = "memberships"
PARTITION_PASSAGES = "passages"
PARTITION_WEEK_COMPLETIONS = "week_completions"
PARTITION_DEAD_LETTER = "dead_letter"

# Study grid: five passage slots, four response slots each
PASSAGE_KEYS: Tuple[str, ...] = ("p1", "p2", "p3", "p4", "p5")
RESPONSE_KEYS: Tuple[str, ...] = ("r1", "r2", "r3", "r4")


def now_ms() -> int:
    """Wall-clock milliseconds, the unit used for createdAt / cached_at."""
    return int(time.time() * 1000)


class IntentKind(Enum):
    """Closed set of queued write kinds (values are the persisted wire names)."""
    UPSERT_RESPONSE = "upsert_response"
    UPSERT_WEEK_COMPLETION = "upsert_week_completion"
    DELETE_WEEK_COMPLETION = "delete_week_completion"


# =============================================================================
# KEYS
# =============================================================================

@dataclass(frozen=True)
class ResponseCell:
    """One answer slot: (group, user, week, passage slot, response slot)."""
    group_id: str
    user_id: str
    week_number: int
    passage_key: str
    response_key: str

    @property
    def storage_key(self) -> str:
        return (
            f"{self.group_id}:{self.user_id}:{self.week_number}:"
            f"{self.passage_key}:{self.response_key}"
        )

    @property
    def field_key(self) -> str:
        """Debounce key; one logical text field per cell."""
        return self.storage_key


@dataclass(frozen=True)
class WeekKey:
    """Identifies one study week for one member of one group."""
    group_id: str
    user_id: str
    week_number: int

    @property
    def storage_key(self) -> str:
        return f"{self.group_id}:{self.user_id}:{self.week_number}"

    @property
    def response_prefix(self) -> str:
        return f"{self.storage_key}:"

    def cells(self) -> List[ResponseCell]:
        return [
            ResponseCell(self.group_id, self.user_id, self.week_number, p, r)
            for p in PASSAGE_KEYS
            for r in RESPONSE_KEYS
        ]


def group_context_key(group_id: str, user_id: str) -> str:
    return f"{user_id}:{group_id}"


def passage_cache_key(bible_id: int, reference: str) -> str:
    return f"{bible_id}:{reference}"


def completion_prefix(group_id: str, user_id: str) -> str:
    return f"{group_id}:{user_id}:"


# =============================================================================
# PAYLOADS
# =============================================================================

@dataclass(frozen=True)
class ResponsePayload:
    """Row shape of ``passage_responses``."""
    group_id: str
    user_id: str
    week_number: int
    passage_key: str
    response_key: str
    response_text: str

    @classmethod
    def for_cell(cls, cell: ResponseCell, text: str) -> ResponsePayload:
        return cls(
            group_id=cell.group_id,
            user_id=cell.user_id,
            week_number=cell.week_number,
            passage_key=cell.passage_key,
            response_key=cell.response_key,
            response_text=text,
        )

    @property
    def cell(self) -> ResponseCell:
        return ResponseCell(
            self.group_id, self.user_id, self.week_number,
            self.passage_key, self.response_key,
        )


@dataclass(frozen=True)
class WeekCompletionPayload:
    """Row shape of ``week_completions``."""
    group_id: str
    user_id: str
    week_number: int
    completed_at: str

    @property
    def week(self) -> WeekKey:
        return WeekKey(self.group_id, self.user_id, self.week_number)


@dataclass(frozen=True)
class WeekCompletionDelete:
    """Match filter for deleting a ``week_completions`` row."""
    group_id: str
    user_id: str
    week_number: int

    @property
    def week(self) -> WeekKey:
        return WeekKey(self.group_id, self.user_id, self.week_number)


_PAYLOAD_TYPES = {
    IntentKind.UPSERT_RESPONSE: ResponsePayload,
    IntentKind.UPSERT_WEEK_COMPLETION: WeekCompletionPayload,
    IntentKind.DELETE_WEEK_COMPLETION: WeekCompletionDelete,
}

_STRING_FIELDS = {"group_id", "user_id", "passage_key", "response_key", "response_text", "completed_at"}


def _decode_payload(kind: IntentKind, data: Mapping[str, Any], queue_id: Optional[int]):
    payload_type = _PAYLOAD_TYPES[kind]
    values: Dict[str, Any] = {}
    for name in payload_type.__dataclass_fields__:
        if name not in data:
            raise QueueCorrupt(
                f"Queued {kind.value} is missing '{name}'",
                queue_id=queue_id,
                kind=kind.value,
            )
        value = data[name]
        if name == "week_number":
            if isinstance(value, bool) or not isinstance(value, int):
                raise QueueCorrupt(
                    f"Queued {kind.value} has a non-integer week_number",
                    queue_id=queue_id,
                    kind=kind.value,
                )
        elif name in _STRING_FIELDS and not isinstance(value, str):
            raise QueueCorrupt(
                f"Queued {kind.value} has a non-string '{name}'",
                queue_id=queue_id,
                kind=kind.value,
            )
        values[name] = value
    return payload_type(**values)


# =============================================================================
# MUTATION INTENT
# =============================================================================

@dataclass(frozen=True)
class MutationIntent:
    """
    A durable, never-mutated record of a pending remote write.

    ``id`` is assigned by the local store on insert and is only used to
    remove the intent once it has been applied.
    """
    kind: IntentKind
    payload: Any
    created_at: int = field(default_factory=now_ms)
    id: Optional[int] = None

    @classmethod
    def upsert_response(cls, payload: ResponsePayload, created_at: Optional[int] = None) -> MutationIntent:
        return cls(IntentKind.UPSERT_RESPONSE, payload, created_at if created_at is not None else now_ms())

    @classmethod
    def upsert_week_completion(
        cls, payload: WeekCompletionPayload, created_at: Optional[int] = None
    ) -> MutationIntent:
        return cls(IntentKind.UPSERT_WEEK_COMPLETION, payload, created_at if created_at is not None else now_ms())

    @classmethod
    def delete_week_completion(
        cls, payload: WeekCompletionDelete, created_at: Optional[int] = None
    ) -> MutationIntent:
        return cls(IntentKind.DELETE_WEEK_COMPLETION, payload, created_at if created_at is not None else now_ms())

    def payload_dict(self) -> Dict[str, Any]:
        return asdict(self.payload)

    def payload_json(self) -> str:
        return json.dumps(self.payload_dict(), ensure_ascii=False, sort_keys=True)

    def to_wire(self) -> Dict[str, Any]:
        """Persisted shape: {kind, createdAt, payload}."""
        return {
            "kind": self.kind.value,
            "createdAt": self.created_at,
            "payload": self.payload_dict(),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> MutationIntent:
        """
        Decode a queue row produced by LocalStore.list_queue().

        Raises:
            QueueCorrupt: if the kind is unknown or the payload is malformed
        """
        queue_id = row.get("id")
        raw_kind = row.get("kind")
        try:
            kind = IntentKind(raw_kind)
        except ValueError:
            raise QueueCorrupt(
                f"Unknown intent kind: {raw_kind!r}", queue_id=queue_id, kind=str(raw_kind)
            ) from None

        try:
            data = json.loads(row.get("payload_json") or "")
        except (TypeError, json.JSONDecodeError) as e:
            raise QueueCorrupt(
                f"Queued payload is not valid JSON: {e}",
                queue_id=queue_id,
                kind=kind.value,
            ) from e
        if not isinstance(data, dict):
            raise QueueCorrupt("Queued payload is not an object", queue_id=queue_id, kind=kind.value)

        payload = _decode_payload(kind, data, queue_id)
        return cls(kind=kind, payload=payload, created_at=int(row.get("created_at") or 0), id=queue_id)


# =============================================================================
# CACHED ENTITIES
# =============================================================================

@dataclass
class GroupInfo:
    id: str
    name: str
    start_date: Optional[str] = None
    timezone: Optional[str] = None
    invite_code: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GroupInfo:
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            start_date=data.get("start_date"),
            timezone=data.get("timezone"),
            invite_code=data.get("invite_code"),
        )


@dataclass
class GroupContext:
    """The user's role in one group plus the group's metadata."""
    group_id: str
    user_id: str
    role: str
    group: GroupInfo

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GroupContext:
        return cls(
            group_id=str(data["group_id"]),
            user_id=str(data["user_id"]),
            role=str(data.get("role") or "member"),
            group=GroupInfo.from_dict(data.get("group") or {}),
        )


@dataclass
class Membership:
    group_id: str
    role: str
    group: GroupInfo

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Membership:
        return cls(
            group_id=str(data["group_id"]),
            role=str(data.get("role") or "member"),
            group=GroupInfo.from_dict(data.get("group") or {}),
        )


@dataclass
class Passage:
    """Rendered scripture passage as returned by the passage endpoint."""
    reference: str
    html: str
    text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Passage:
        return cls(
            reference=str(data.get("reference", "")),
            html=str(data.get("html") or ""),
            text=data.get("text"),
        )
