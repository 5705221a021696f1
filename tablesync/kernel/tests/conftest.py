"""
Kernel test configuration.

Views run against MemoryGateway; change events are delivered through
loop.call_soon, so tests await view.wait_idle() before asserting.
"""

import pytest

from tablesync.kernel.gateway import MemoryGateway
from tablesync.kernel.types import TableConfig

TABLE = "Thing"


@pytest.fixture
def things():
    return [
        {"id": "a", "name": "alpha", "someNumber": 10, "status": "open"},
        {"id": "b", "name": "bravo", "someNumber": 5, "status": "open"},
        {"id": "c", "name": "charlie", "someNumber": 3, "status": "closed"},
    ]


@pytest.fixture
def gateway(things):
    gw = MemoryGateway()
    gw.seed(TABLE, things)
    return gw


@pytest.fixture
def config():
    return TableConfig(table_name=TABLE)


@pytest.fixture
def search_config():
    return TableConfig(table_name=TABLE, search_fields=("name", "status"), search_debounce_ms=10)
