"""
tablesync Kernel — the synchronized view engine.

Components:
  predicate    — filter/sort compiler (filter -> Predicate, order -> comparator)
  comparator   — total order over heterogeneous row values
  view         — TableView state machine with push reconciliation
  search       — debounced multi-field prefix search overlay
  counter      — deferred, coalescing total-count tracker
  subscription — push subscription lifecycle (at most one live per view)
  gateway      — the data-source contract, plus MemoryGateway

Payload helpers:
  prepare_create, prepare_update (schema defaults and timestamps)
"""

from tablesync.kernel.comparator import compare_values
from tablesync.kernel.counter import CountTracker
from tablesync.kernel.defaults import prepare_create, prepare_update
from tablesync.kernel.gateway import Gateway, MemoryGateway
from tablesync.kernel.predicate import (
    Operator,
    Predicate,
    build_filter_string,
    compile_comparator,
    compile_predicate,
    decode_filter,
    sort_rows,
)
from tablesync.kernel.search import SearchOverlay, SearchPhase
from tablesync.kernel.subscription import SubscriptionManager, generate_subscription_name
from tablesync.kernel.types import (
    ChangeEvent,
    ChangeType,
    DeleteManyResult,
    GatewayError,
    InvalidFilterError,
    MissingIdentifierError,
    NotFoundError,
    OrderEntry,
    Result,
    SearchQuery,
    SearchState,
    TableConfig,
    TableSyncError,
    ViewOptions,
    ViewState,
    ViewStatus,
)
from tablesync.kernel.view import TableView

__all__ = [
    "TableView",
    "TableConfig",
    "ViewOptions",
    "ViewState",
    "ViewStatus",
    "OrderEntry",
    "SearchQuery",
    "SearchState",
    "SearchOverlay",
    "SearchPhase",
    "CountTracker",
    "SubscriptionManager",
    "generate_subscription_name",
    "Gateway",
    "MemoryGateway",
    "Operator",
    "Predicate",
    "decode_filter",
    "compile_predicate",
    "compile_comparator",
    "compare_values",
    "sort_rows",
    "build_filter_string",
    "prepare_create",
    "prepare_update",
    "ChangeEvent",
    "ChangeType",
    "Result",
    "DeleteManyResult",
    "TableSyncError",
    "GatewayError",
    "InvalidFilterError",
    "MissingIdentifierError",
    "NotFoundError",
]
