"""
tablesync Kernel — Shared Types

Data classes and option models used across the predicate compiler, gateway,
count tracker, subscription manager, search overlay and view.
These are the contracts that bind the kernel together.

Inputs the consumer hands us (options, order entries, search queries) are
pydantic models so they are validated once at construction. Internal state
(view snapshots, results, change events) uses plain dataclasses.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

# A row is an opaque mapping of field name -> value. Rows are replaced
# wholesale on update, never mutated in place.
Row = dict[str, Any]

DEFAULT_PRIMARY_KEY = "id"
DEFAULT_CREATED_AT_FIELD = "createdAt"
DEFAULT_UPDATED_AT_FIELD = "updatedAt"
DEFAULT_SEARCH_DEBOUNCE_MS = 300


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TableSyncError(Exception):
    """Base class for every error the engine reports."""

    pass


class GatewayError(TableSyncError):
    """Remote/IO failure. Recoverable, never retried automatically."""

    pass


class InvalidFilterError(TableSyncError):
    """Malformed predicate, or an operator applied to an incompatible value."""

    pass


class MissingIdentifierError(TableSyncError):
    """A mutation was called without the key field."""

    pass


class NotFoundError(TableSyncError):
    """Delete/update target is absent."""

    pass


# ---------------------------------------------------------------------------
# Option models
# ---------------------------------------------------------------------------


class OrderEntry(BaseModel):
    """One (field, direction) pair of an OrderSpec."""

    model_config = {"extra": "forbid", "frozen": True}

    field: str = Field(min_length=1)
    direction: Literal["asc", "desc"] = "asc"


def normalize_order(value: Any) -> tuple[OrderEntry, ...] | None:
    """
    Normalize the accepted order shapes into a tuple of OrderEntry.

    Accepted:
      [{"field": "age", "direction": "desc"}, ...]
      {"field": "age", "direction": "desc"}
      {"age": "desc"}  or  [{"age": "desc"}, {"name": "asc"}]
    Mapping form keeps insertion order for multi-key mappings.
    """
    if value is None:
        return None
    if isinstance(value, OrderEntry):
        return (value,)
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"order must be a list or mapping, got {type(value).__name__}")

    entries: list[OrderEntry] = []
    for item in value:
        if isinstance(item, OrderEntry):
            entries.append(item)
        elif isinstance(item, dict) and "field" in item:
            entries.append(OrderEntry(**item))
        elif isinstance(item, dict):
            for name, direction in item.items():
                entries.append(OrderEntry(field=name, direction=direction))
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            entries.append(OrderEntry(field=item[0], direction=item[1]))
        else:
            raise ValueError(f"unsupported order entry: {item!r}")
    return tuple(entries)


class ViewOptions(BaseModel):
    """
    What the consumer passes when creating (or re-rendering) a view.

    Immutable. Two option values are equal when their fields are equal,
    which is what the view uses to decide whether to re-fetch.
    """

    model_config = {"extra": "forbid", "frozen": True}

    enable_push: bool = True
    subscription_name: str | None = None
    filter: dict[str, Any] | None = None
    order: tuple[OrderEntry, ...] | None = None
    limit: int | None = Field(default=None, ge=0)
    offset: int | None = Field(default=None, ge=0)
    push_filter: str | None = None  # raw subscription filter, used when `filter` is unset

    @field_validator("order", mode="before")
    @classmethod
    def _normalize_order(cls, value: Any) -> tuple[OrderEntry, ...] | None:
        return normalize_order(value)

    def query_params(self) -> dict[str, Any]:
        """The subset of options that shapes the fetched window."""
        return {
            "filter": self.filter,
            "order": self.order,
            "limit": self.limit,
            "offset": self.offset,
        }


class SearchQuery(BaseModel):
    """A single prefix search against one searchable field."""

    model_config = {"frozen": True}

    field: str
    value: str


# ---------------------------------------------------------------------------
# Table configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TableConfig:
    """
    Per-table configuration handed to each view at construction.
    There is no process-wide configuration object.
    """

    table_name: str
    primary_key: str = DEFAULT_PRIMARY_KEY
    has_created_at: bool = False
    has_updated_at: bool = False
    created_at_field: str = DEFAULT_CREATED_AT_FIELD
    updated_at_field: str = DEFAULT_UPDATED_AT_FIELD
    search_fields: tuple[str, ...] = ()
    default_values: dict[str, str] = field(default_factory=dict)
    search_debounce_ms: int = DEFAULT_SEARCH_DEBOUNCE_MS

    def default_order(self) -> tuple[OrderEntry, ...] | None:
        """Implicit order when none is given: newest first, if timestamps exist."""
        if self.has_created_at:
            return (OrderEntry(field=self.created_at_field, direction="desc"),)
        return None

    def effective_order(self, order: tuple[OrderEntry, ...] | None) -> tuple[OrderEntry, ...] | None:
        return order if order else self.default_order()


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class ViewStatus(enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class ViewState:
    """
    Snapshot of a view handed to consumers.

    Invariants (outside the synchronous tail of a push handler):
    - len(rows) <= limit when a limit is set and no search overlay is active
    - rows are sorted by the effective order
    """

    rows: tuple[Row, ...] = ()
    loading: bool = False
    error: Exception | None = None
    total_count: int = 0
    status: ViewStatus = ViewStatus.IDLE


@dataclass(frozen=True)
class SearchState:
    """The search overlay as seen by consumers."""

    queries: tuple[SearchQuery, ...] = ()
    loading: bool = False

    @property
    def active(self) -> bool:
        return bool(self.queries)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class Result:
    """
    Outcome of a public view operation.
    Operations never raise past their boundary; they always return one of these.
    """

    data: Any = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DeleteManyResult:
    """Outcome of delete_many: the number of rows matched before deletion."""

    count: int = 0
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# Push events
# ---------------------------------------------------------------------------


class ChangeType(enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """One row-level change pushed by the data source."""

    event_type: ChangeType
    new_row: Row | None = None
    old_row: Row | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ChangeEvent:
        """
        Build a ChangeEvent from a raw payload dict.

        Understands {"eventType", "new", "old"} as well as the realtime
        {"type", "record", "old_record"} shape (optionally nested under "data").
        Raises ValueError for an unknown event type.
        """
        data = payload.get("data", payload)
        raw_type = data.get("eventType") or data.get("type")
        try:
            event_type = ChangeType(str(raw_type).upper())
        except ValueError:
            raise ValueError(f"unknown change event type: {raw_type!r}") from None
        new_row = data.get("new", data.get("record"))
        old_row = data.get("old", data.get("old_record"))
        return cls(event_type=event_type, new_row=new_row or None, old_row=old_row or None)


ChangeHandler = Callable[[ChangeEvent], None]


@dataclass
class Subscription:
    """A live push-channel registration owned by one view."""

    table: str
    name: str
    filter_string: str | None
    handle: Any
    opened_at: str
    closed: bool = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    """Current UTC time as ISO 8601 string with millisecond precision."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
