"""
tablesync — client-side synchronized table views over a remote data source.

The engine lives in tablesync.kernel; concrete data-source adapters live in
tablesync.services.
"""

from tablesync.kernel import (
    DeleteManyResult,
    Gateway,
    GatewayError,
    InvalidFilterError,
    MemoryGateway,
    MissingIdentifierError,
    NotFoundError,
    Result,
    TableConfig,
    TableSyncError,
    TableView,
    ViewOptions,
    ViewState,
    ViewStatus,
)

__all__ = [
    "TableView",
    "TableConfig",
    "ViewOptions",
    "ViewState",
    "ViewStatus",
    "Gateway",
    "MemoryGateway",
    "Result",
    "DeleteManyResult",
    "TableSyncError",
    "GatewayError",
    "InvalidFilterError",
    "MissingIdentifierError",
    "NotFoundError",
]
