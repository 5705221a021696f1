"""
tablesync Kernel — Filter/Sort Compiler

Turns the structured filter and order descriptors consumers write into the
primitives the rest of the engine uses:

  decode_filter(filter)        -> Predicate   (tagged, validated once)
  compile_predicate(filter)    -> (Row) -> bool
  compile_comparator(order)    -> (Row, Row) -> -1 | 0 | 1
  build_filter_string(filter)  -> "field=op.value,..." for push subscriptions

Filter shape:
  {"status": "open"}                              literal -> equality
  {"age": {"gte": 18, "lt": 65}}                  operator set, AND-ed
  {"tags": {"hasSome": ["a", "b"]}, "name": ...}  fields AND-ed

A field missing from a row never matches. Operators applied to values of
the wrong type raise InvalidFilterError instead of silently passing.
"""

from __future__ import annotations

import enum
import functools
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from tablesync.kernel.comparator import compare_values, sort_key
from tablesync.kernel.types import InvalidFilterError, OrderEntry, Row, normalize_order

# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


class Operator(enum.Enum):
    EQUALS = "equals"
    NOT = "not"
    IN = "in"
    NOT_IN = "notIn"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    HAS = "has"
    HAS_EVERY = "hasEvery"
    HAS_SOME = "hasSome"
    IS_EMPTY = "isEmpty"


OPERATOR_NAMES: dict[str, Operator] = {op.value: op for op in Operator}

_LIST_OPERANDS = {Operator.IN, Operator.NOT_IN, Operator.HAS_EVERY, Operator.HAS_SOME}
_TEXT_OPERATORS = {Operator.CONTAINS, Operator.STARTS_WITH, Operator.ENDS_WITH}
_RANGE_OPERATORS = {Operator.LT, Operator.LTE, Operator.GT, Operator.GTE}
_ARRAY_OPERATORS = {Operator.HAS, Operator.HAS_EVERY, Operator.HAS_SOME, Operator.IS_EMPTY}

# Subscription filter-string forms; operators missing here have no string form.
_FILTER_STRING_OPS: dict[Operator, str] = {
    Operator.EQUALS: "eq",
    Operator.NOT: "neq",
    Operator.GT: "gt",
    Operator.GTE: "gte",
    Operator.LT: "lt",
    Operator.LTE: "lte",
}


@dataclass(frozen=True)
class FieldCondition:
    """One operator applied to one field. `literal` marks the `{field: value}` form."""

    field: str
    op: Operator
    operand: Any
    literal: bool = False

    def matches(self, row: Row) -> bool:
        if self.field not in row:
            return False
        return _evaluate(self.op, row[self.field], self.operand, self.field)


@dataclass(frozen=True)
class Predicate:
    """A conjunction of field conditions. The empty predicate matches every row."""

    conditions: tuple[FieldCondition, ...] = ()

    def matches(self, row: Row) -> bool:
        return all(c.matches(row) for c in self.conditions)

    def __call__(self, row: Row) -> bool:
        return self.matches(row)

    def __bool__(self) -> bool:
        return bool(self.conditions)

    def literal_only(self) -> Predicate:
        """The equality-literal part of the filter; operator conditions dropped."""
        return Predicate(tuple(c for c in self.conditions if c.literal))

    def fields(self) -> list[str]:
        seen: list[str] = []
        for c in self.conditions:
            if c.field not in seen:
                seen.append(c.field)
        return seen


MATCH_ALL = Predicate()


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode_filter(filter: dict[str, Any] | Predicate | None) -> Predicate:
    """
    Decode a filter mapping into a tagged Predicate.

    A dict value whose keys are all operator names is an operator set;
    any other dict value is rejected (equality on structured values is not
    expressible). Operators whose operand is None are skipped, except
    equals/not where None means "is null"/"is not null".
    """
    if filter is None:
        return MATCH_ALL
    if isinstance(filter, Predicate):
        return filter
    if not isinstance(filter, dict):
        raise InvalidFilterError(f"filter must be a mapping, got {type(filter).__name__}")

    conditions: list[FieldCondition] = []
    for name, value in filter.items():
        if not isinstance(name, str) or not name:
            raise InvalidFilterError(f"filter field names must be non-empty strings, got {name!r}")

        if isinstance(value, dict):
            unknown = [k for k in value if k not in OPERATOR_NAMES]
            if unknown:
                raise InvalidFilterError(f"unknown operator(s) for field '{name}': {', '.join(map(str, unknown))}")
            for op_name, operand in value.items():
                op = OPERATOR_NAMES[op_name]
                if operand is None and op not in (Operator.EQUALS, Operator.NOT):
                    continue
                _check_operand(name, op, operand)
                if op in _LIST_OPERANDS:
                    operand = tuple(operand)
                conditions.append(FieldCondition(name, op, operand))
        elif isinstance(value, (list, tuple, set)):
            raise InvalidFilterError(f"literal filter on '{name}' must be a scalar; use 'in' or 'hasEvery' for lists")
        else:
            conditions.append(FieldCondition(name, Operator.EQUALS, value, literal=True))

    return Predicate(tuple(conditions))


def _check_operand(name: str, op: Operator, operand: Any) -> None:
    if op in _LIST_OPERANDS:
        if isinstance(operand, (str, bytes, dict)) or not isinstance(operand, Iterable):
            raise InvalidFilterError(f"'{op.value}' on '{name}' needs a list operand, got {type(operand).__name__}")
    elif op in _TEXT_OPERATORS:
        if not isinstance(operand, str):
            raise InvalidFilterError(f"'{op.value}' on '{name}' needs a string operand, got {type(operand).__name__}")
    elif op is Operator.IS_EMPTY:
        if not isinstance(operand, bool):
            raise InvalidFilterError(f"'isEmpty' on '{name}' needs a boolean operand, got {type(operand).__name__}")
    elif isinstance(operand, (list, tuple, set, dict)):
        raise InvalidFilterError(f"'{op.value}' on '{name}' needs a scalar operand, got {type(operand).__name__}")


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _as_array(value: Any, op: Operator, name: str) -> Sequence[Any]:
    if isinstance(value, (list, tuple)):
        return value
    raise InvalidFilterError(f"'{op.value}' on '{name}' needs an array field, got {type(value).__name__}")


def _evaluate(op: Operator, value: Any, operand: Any, name: str) -> bool:
    if op is Operator.EQUALS:
        return value == operand
    if op is Operator.NOT:
        return value != operand
    if op is Operator.IN:
        return value in operand
    if op is Operator.NOT_IN:
        return value not in operand

    if op in _RANGE_OPERATORS:
        if value is None:
            return False
        if sort_key(value)[0] != sort_key(operand)[0]:
            raise InvalidFilterError(
                f"'{op.value}' on '{name}' cannot compare {type(value).__name__} with {type(operand).__name__}"
            )
        cmp = compare_values(value, operand)
        if op is Operator.LT:
            return cmp < 0
        if op is Operator.LTE:
            return cmp <= 0
        if op is Operator.GT:
            return cmp > 0
        return cmp >= 0

    if op in _TEXT_OPERATORS:
        if value is None:
            return False
        if not isinstance(value, str):
            raise InvalidFilterError(f"'{op.value}' on '{name}' needs a string field, got {type(value).__name__}")
        haystack, needle = value.casefold(), operand.casefold()
        if op is Operator.CONTAINS:
            return needle in haystack
        if op is Operator.STARTS_WITH:
            return haystack.startswith(needle)
        return haystack.endswith(needle)

    if op in _ARRAY_OPERATORS:
        if value is None:
            return False
        items = _as_array(value, op, name)
        if op is Operator.HAS:
            return operand in items
        if op is Operator.HAS_SOME:
            return any(o in items for o in operand)
        if op is Operator.HAS_EVERY:
            return all(o in items for o in operand)
        return (len(items) == 0) == operand

    raise InvalidFilterError(f"unsupported operator: {op}")  # pragma: no cover


def compile_predicate(filter: dict[str, Any] | Predicate | None) -> Callable[[Row], bool]:
    """Decode `filter` and return a row -> bool callable."""
    return decode_filter(filter)


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


def compile_comparator(order: Any) -> Callable[[Row, Row], int]:
    """
    Build a multi-key row comparator. The first entry is the primary key;
    later entries only break ties. Missing fields compare as null.
    """
    entries = normalize_order(order) or ()

    def compare(a: Row, b: Row) -> int:
        for entry in entries:
            result = compare_values(a.get(entry.field), b.get(entry.field), entry.direction)
            if result:
                return result
        return 0

    return compare


def sort_rows(rows: Iterable[Row], order: tuple[OrderEntry, ...] | None) -> list[Row]:
    """Stable sort by `order`. With no order the input sequence is kept."""
    rows = list(rows)
    if not order:
        return rows
    return sorted(rows, key=functools.cmp_to_key(compile_comparator(order)))


# ---------------------------------------------------------------------------
# Subscription filter string
# ---------------------------------------------------------------------------


def _format_operand(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_filter_string(filter: dict[str, Any] | Predicate | None) -> str | None:
    """
    Render a filter as the comma-joined `field=op.value` clauses used to
    scope a push subscription on the server. Returns None for no filter.

    Array operators and notIn have no string form and are left out; the
    client-side predicate still enforces them when events arrive.
    """
    predicate = decode_filter(filter)
    clauses: list[str] = []
    for c in predicate.conditions:
        if c.op in _FILTER_STRING_OPS:
            clauses.append(f"{c.field}={_FILTER_STRING_OPS[c.op]}.{_format_operand(c.operand)}")
        elif c.op is Operator.IN and c.operand:
            clauses.append(f"{c.field}=in.({','.join(_format_operand(v) for v in c.operand)})")
        elif c.op is Operator.CONTAINS:
            clauses.append(f"{c.field}=ilike.*{c.operand}*")
        elif c.op is Operator.STARTS_WITH:
            clauses.append(f"{c.field}=ilike.{c.operand}%")
        elif c.op is Operator.ENDS_WITH:
            clauses.append(f"{c.field}=ilike.%{c.operand}")
    return ",".join(clauses) if clauses else None
