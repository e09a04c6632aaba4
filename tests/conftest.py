"""
Shared fixtures for the TableStream MCP test suite: a temporary employee CSV,
a loaded store, fake executors and clocks, and a logging manager bound to a
private Prometheus registry.
"""

from typing import Iterator, List, Optional, Sequence, Tuple

import pytest
from prometheus_client import CollectorRegistry

from tablestream_mcp.config_manager import LoggingConfig, StreamingConfig
from tablestream_mcp.error_handler import TableStreamError
from tablestream_mcp.executor import TabularQueryExecutor, apply_row_limit
from tablestream_mcp.logging_manager import LoggingManager
from tablestream_mcp.models import Query, Record
from tablestream_mcp.query_tool import DbQueryTool
from tablestream_mcp.sample_data import write_csv
from tablestream_mcp.store import TabularStore


# =============================================================================
# Test doubles
# =============================================================================

def make_records(count: int, columns: Tuple[str, ...] = ('employeeId', 'employeeName')) -> List[Record]:
    """Records with ids 1..count."""
    return [Record(columns, (i, f"Employee {i}")) for i in range(1, count + 1)]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeExecutor:
    """Executor double yielding canned records, optionally failing afterwards."""

    def __init__(self,
                 records: Sequence[Record] = (),
                 columns: Sequence[str] = ('employeeId', 'employeeName'),
                 error: Optional[TableStreamError] = None,
                 probe_error: Optional[TableStreamError] = None,
                 on_row=None):
        self.records = list(records)
        self.columns = tuple(columns)
        self.error = error
        self.probe_error = probe_error
        self.on_row = on_row
        self.run_calls = 0
        self.rows_pulled = 0
        self.closed = False

    def prepare_sql(self, query: Query) -> str:
        return apply_row_limit(query.text, query.row_limit)

    def probe_columns(self, query: Query) -> Tuple[str, ...]:
        if self.probe_error is not None:
            raise self.probe_error
        return self.columns

    def run(self, query: Query) -> Iterator[Record]:
        self.run_calls += 1

        def rows():
            try:
                for record in self.records:
                    self.rows_pulled += 1
                    if self.on_row is not None:
                        self.on_row(record)
                    yield record
                if self.error is not None:
                    raise self.error
            finally:
                self.closed = True

        return rows()


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def metrics_registry():
    """Private Prometheus registry so metric names never collide between tests."""
    return CollectorRegistry()


@pytest.fixture
def logging_manager(metrics_registry):
    """Fresh LoggingManager bypassing the process-wide singleton."""
    LoggingManager._instance = None
    manager = LoggingManager(LoggingConfig(console_output=False), registry=metrics_registry)
    yield manager
    LoggingManager._instance = None


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def csv_path(tmp_path):
    """The 25-row seeded sample dataset written to a temporary directory."""
    return str(write_csv(str(tmp_path / 'employees.csv')))


@pytest.fixture
def store(csv_path):
    store = TabularStore.from_csv(csv_path)
    yield store
    store.close()


@pytest.fixture
def executor(store):
    return TabularQueryExecutor(store, store_batch_size=7)


@pytest.fixture
def tool(store, logging_manager):
    """DbQueryTool over the sample store with no pacing."""
    return DbQueryTool(store, config=StreamingConfig(chunk_size=5),
                       logging_manager=logging_manager)


@pytest.fixture(autouse=True)
def _reset_sse_app_status():
    """sse-starlette keeps a process-wide exit event bound to the first event loop."""
    import sse_starlette.sse as sse_module
    app_status = getattr(sse_module, 'AppStatus', None)
    if app_status is not None and hasattr(app_status, 'should_exit_event'):
        app_status.should_exit_event = None
    yield
