"""
Value comparator and row ordering.
"""

import math
from datetime import UTC, date, datetime

from tablesync.kernel.comparator import compare_values, sort_key
from tablesync.kernel.predicate import compile_comparator, sort_rows
from tablesync.kernel.types import OrderEntry


class TestCompareValues:
    def test_numbers_compare_numerically(self):
        assert compare_values(2, 10) == -1
        assert compare_values(10, 2) == 1
        assert compare_values(3, 3.0) == 0

    def test_null_first_ascending_last_descending(self):
        assert compare_values(None, 1) == -1
        assert compare_values(None, 1, "desc") == 1
        assert compare_values(None, None) == 0

    def test_numbers_before_strings(self):
        assert compare_values(999, "a") == -1
        assert compare_values("a", 999) == 1

    def test_strings_lexicographic(self):
        assert compare_values("apple", "banana") == -1
        assert compare_values("b", "a", "desc") == -1

    def test_timestamps_by_instant(self):
        naive = datetime(2024, 1, 1, 12, 0)
        aware = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
        assert compare_values(naive, aware) == 0
        assert compare_values(date(2024, 1, 1), datetime(2024, 1, 2, tzinfo=UTC)) == -1

    def test_nan_sorts_after_numbers(self):
        assert compare_values(math.nan, 1e300) == 1
        assert compare_values(math.nan, math.nan) == 0

    def test_sort_key_ranks(self):
        keys = [sort_key(v) for v in ("x", datetime(2024, 1, 1), 1, None)]
        assert sorted(keys) == list(reversed(keys))


class TestSortRows:
    def test_desc_puts_nulls_last(self):
        rows = [{"n": 5}, {"n": 10}, {"n": None}, {"n": 8}]
        ordered = sort_rows(rows, (OrderEntry(field="n", direction="desc"),))
        assert [r["n"] for r in ordered] == [10, 8, 5, None]

    def test_missing_field_sorts_as_null(self):
        rows = [{"n": 1}, {}]
        ordered = sort_rows(rows, (OrderEntry(field="n"),))
        assert ordered == [{}, {"n": 1}]

    def test_no_order_keeps_sequence(self):
        rows = [{"n": 2}, {"n": 1}]
        assert sort_rows(rows, None) == rows

    def test_stable_for_ties(self):
        rows = [{"n": 1, "k": "first"}, {"n": 1, "k": "second"}]
        ordered = sort_rows(rows, (OrderEntry(field="n", direction="desc"),))
        assert [r["k"] for r in ordered] == ["first", "second"]

    def test_later_entries_break_ties(self):
        compare = compile_comparator([{"group": "asc"}, {"n": "desc"}])
        a = {"group": 1, "n": 1}
        b = {"group": 1, "n": 2}
        c = {"group": 0, "n": 0}
        assert compare(a, b) == 1
        assert compare(c, a) == -1
        assert compare(a, dict(a)) == 0
