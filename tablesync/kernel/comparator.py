"""
tablesync Kernel — Value Comparator

Total order over the heterogeneous values a row can hold.
Used for query ordering and for in-memory resort after local mutations
and push events.

Ordering (ascending):
  null  <  numbers  <  timestamps  <  everything else (by string form)

Within a class: numbers compare numerically (NaN after every other number),
timestamps by instant (naive values are taken as UTC), everything else
lexicographically by str(). Ranking the classes first keeps the relation a
strict weak ordering even when a column mixes types.
"""

from __future__ import annotations

import math
from datetime import UTC, date, datetime
from typing import Any, Literal

Direction = Literal["asc", "desc"]

_RANK_NULL = 0
_RANK_NUMBER = 1
_RANK_TIMESTAMP = 2
_RANK_OTHER = 3


def sort_key(value: Any) -> tuple:
    """Map a value to a tuple that orders ascending under the rules above."""
    if value is None:
        return (_RANK_NULL,)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return (_RANK_NUMBER, 1, 0.0)
        return (_RANK_NUMBER, 0, value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return (_RANK_TIMESTAMP, value.timestamp())
    if isinstance(value, date):
        return (_RANK_TIMESTAMP, datetime(value.year, value.month, value.day, tzinfo=UTC).timestamp())
    return (_RANK_OTHER, str(value))


def compare_values(a: Any, b: Any, direction: Direction = "asc") -> int:
    """
    Compare two values. Returns -1, 0 or 1.

    null sorts first ascending and last descending.
    """
    ka, kb = sort_key(a), sort_key(b)
    if ka == kb:
        return 0
    result = -1 if ka < kb else 1
    return result if direction == "asc" else -result
