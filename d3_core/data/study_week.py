# =============================================================================
# d3_core/data/study_week.py
# Study-week helpers: current week, response grid, completion gate
# =============================================================================

from __future__ import annotations
from datetime import date, datetime
from typing import Dict, Iterable, Mapping, Optional, Union

from d3_core.offline.models import PASSAGE_KEYS, RESPONSE_KEYS, ResponsePayload

# passage_key -> response_key -> text
WeekGrid = Dict[str, Dict[str, str]]

DateLike = Union[str, date, datetime, None]


def _to_date(value: DateLike) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        # Accepts "2024-09-01" as well as full ISO timestamps
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None


def current_week_number(
    start_date: DateLike,
    today: DateLike = None,
    max_week: Optional[int] = None,
) -> int:
    """
    Week of the study the group is in, starting at 1.

    Args:
        start_date: Group start date; missing or unparseable means week 1
        today: Reference day (default: date.today())
        max_week: Upper bound, usually the number of weeks in the program

    Returns:
        max(1, floor(days_since_start / 7) + 1), clamped to max_week
    """
    start = _to_date(start_date)
    if start is None:
        return 1

    current = _to_date(today) or date.today()
    days = (current - start).days
    week = max(1, days // 7 + 1)
    if max_week is not None:
        week = min(max(1, max_week), week)
    return week


def empty_week_grid() -> WeekGrid:
    return {p: {r: "" for r in RESPONSE_KEYS} for p in PASSAGE_KEYS}


def grid_from_payloads(payloads: Iterable[ResponsePayload]) -> WeekGrid:
    """Arrange response rows into the 5 x 4 grid; unknown slots are ignored."""
    grid = empty_week_grid()
    for payload in payloads:
        if payload.passage_key in grid and payload.response_key in grid[payload.passage_key]:
            grid[payload.passage_key][payload.response_key] = payload.response_text
    return grid


def can_complete_week(responses: Mapping[str, Mapping[str, str]]) -> bool:
    """True only when every response slot of every passage slot holds non-blank text."""
    for passage_key in PASSAGE_KEYS:
        slots = responses.get(passage_key) or {}
        for response_key in RESPONSE_KEYS:
            text = slots.get(response_key)
            if not isinstance(text, str) or not text.strip():
                return False
    return True
