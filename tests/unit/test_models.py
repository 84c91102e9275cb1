# =============================================================================
# tests/unit/test_models.py
# Unit Tests for queue and cache record types
# =============================================================================

import json

import pytest

from d3_core.errors import QueueCorrupt
from d3_core.offline.models import (
    IntentKind,
    MutationIntent,
    ResponseCell,
    ResponsePayload,
    WeekCompletionDelete,
    WeekCompletionPayload,
    WeekKey,
    group_context_key,
    passage_cache_key,
)


class TestKeys:
    """Test storage key layout"""

    def test_response_cell_key_is_five_tuple(self):
        cell = ResponseCell("g1", "u1", 3, "p2", "r3")

        assert cell.storage_key == "g1:u1:3:p2:r3"
        assert cell.field_key == cell.storage_key

    def test_week_cells_cover_grid(self):
        cells = WeekKey("g1", "u1", 3).cells()

        assert len(cells) == 20
        assert cells[0].storage_key == "g1:u1:3:p1:r1"
        assert cells[-1].storage_key == "g1:u1:3:p5:r4"

    def test_week_prefix_does_not_match_other_weeks(self):
        prefix = WeekKey("g1", "u1", 1).response_prefix

        assert ResponseCell("g1", "u1", 1, "p1", "r1").storage_key.startswith(prefix)
        assert not ResponseCell("g1", "u1", 10, "p1", "r1").storage_key.startswith(prefix)

    def test_cache_keys(self):
        assert group_context_key("g1", "u1") == "u1:g1"
        assert passage_cache_key(2692, "JHN.3.16") == "2692:JHN.3.16"


class TestMutationIntent:
    """Test intent construction and decoding"""

    def test_wire_shape(self):
        payload = ResponsePayload("g1", "u1", 3, "p2", "r3", "grace")
        intent = MutationIntent.upsert_response(payload, created_at=42)

        wire = intent.to_wire()

        assert wire == {
            "kind": "upsert_response",
            "createdAt": 42,
            "payload": {
                "group_id": "g1",
                "user_id": "u1",
                "week_number": 3,
                "passage_key": "p2",
                "response_key": "r3",
                "response_text": "grace",
            },
        }

    def test_from_row_restores_each_kind(self):
        intents = [
            MutationIntent.upsert_response(ResponsePayload("g", "u", 1, "p1", "r1", "x"), created_at=1),
            MutationIntent.upsert_week_completion(WeekCompletionPayload("g", "u", 1, "2024-01-01T00:00:00+00:00"), created_at=2),
            MutationIntent.delete_week_completion(WeekCompletionDelete("g", "u", 1), created_at=3),
        ]

        for i, intent in enumerate(intents, start=1):
            row = {"id": i, "kind": intent.kind.value, "created_at": intent.created_at, "payload_json": intent.payload_json()}
            restored = MutationIntent.from_row(row)

            assert restored.kind is intent.kind
            assert restored.payload == intent.payload
            assert restored.id == i

    def test_unknown_kind_is_corrupt(self):
        row = {"id": 7, "kind": "upsert_chat_message", "created_at": 1, "payload_json": "{}"}

        with pytest.raises(QueueCorrupt) as exc_info:
            MutationIntent.from_row(row)

        assert exc_info.value.details == {"queue_id": 7, "kind": "upsert_chat_message"}

    @pytest.mark.parametrize("payload_json", ["{oops", None, "[1, 2]"])
    def test_unreadable_payload_is_corrupt(self, payload_json):
        row = {"id": 1, "kind": "upsert_response", "created_at": 1, "payload_json": payload_json}

        with pytest.raises(QueueCorrupt):
            MutationIntent.from_row(row)

    def test_missing_field_is_corrupt(self):
        payload = {"group_id": "g", "user_id": "u", "week_number": 1}
        row = {"id": 1, "kind": "upsert_week_completion", "created_at": 1, "payload_json": json.dumps(payload)}

        with pytest.raises(QueueCorrupt, match="completed_at"):
            MutationIntent.from_row(row)

    def test_string_week_number_is_corrupt(self):
        payload = {"group_id": "g", "user_id": "u", "week_number": "3"}
        row = {"id": 1, "kind": "delete_week_completion", "created_at": 1, "payload_json": json.dumps(payload)}

        with pytest.raises(QueueCorrupt, match="week_number"):
            MutationIntent.from_row(row)

    def test_kind_values_are_closed_set(self):
        assert {k.value for k in IntentKind} == {
            "upsert_response",
            "upsert_week_completion",
            "delete_week_completion",
        }
