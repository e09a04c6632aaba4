"""Tabular query executor.

Runs a validated query against the store and hands rows back one Record at a
time. Rows are fetched from the cursor in store-sized batches, so memory is
bounded by ``store_batch_size`` no matter how large the result is.
"""

import logging
import re
from collections import deque
from typing import Deque, Optional, Tuple

from sqlalchemy.engine import Connection, CursorResult
from sqlalchemy.exc import SQLAlchemyError

from .error_handler import ConfigurationError, QueryExecutionError
from .models import Query, Record
from .store import TabularStore

logger = logging.getLogger(__name__)

_LIMIT_PATTERN = re.compile(r'\blimit\b', re.IGNORECASE)


def _store_message(error: SQLAlchemyError) -> str:
    """Driver message without SQLAlchemy's statement/background suffixes."""
    orig = getattr(error, 'orig', None)
    if orig is not None and str(orig):
        return str(orig)
    return str(error).split('\n')[0]


def strip_terminator(sql: str) -> str:
    return sql.strip().rstrip(';').rstrip()


def apply_row_limit(sql: str, row_limit: Optional[int]) -> str:
    """Append ``LIMIT n`` unless the text already mentions a limit clause."""
    sql = strip_terminator(sql)
    if row_limit is None or _LIMIT_PATTERN.search(sql):
        return sql
    return f"{sql} LIMIT {int(row_limit)}"


class RecordStream:
    """Pull iterator over the rows of one query.

    The cursor is opened on the first ``next()``. Once the rows run out, the
    store fails, or ``close()`` is called, ``done`` is True and the
    connection has been returned to the pool.
    """

    def __init__(self, store: TabularStore, sql: str, batch_size: int):
        self._store = store
        self.sql = sql
        self._batch_size = batch_size
        self._connection: Optional[Connection] = None
        self._result: Optional[CursorResult] = None
        self._buffer: Deque[Record] = deque()
        self.columns: Optional[Tuple[str, ...]] = None
        self.rows_produced = 0
        self.done = False

    def __iter__(self):
        return self

    def __next__(self) -> Record:
        if self.done:
            raise StopIteration
        if not self._buffer:
            self._fill()
            if not self._buffer:
                self.close()
                raise StopIteration
        self.rows_produced += 1
        return self._buffer.popleft()

    def _fill(self):
        try:
            if self._result is None:
                connection = self._store.connect()
                self._connection = connection
                if self._store.engine.dialect.name == 'postgresql':
                    connection = connection.execution_options(stream_results=True)
                # driver-level execution: no bind-parameter parsing of ':' in literals
                self._result = connection.exec_driver_sql(self.sql)
                self.columns = tuple(self._result.keys())
            rows = self._result.fetchmany(self._batch_size)
        except SQLAlchemyError as e:
            self.close()
            raise QueryExecutionError(_store_message(e), query=self.sql,
                                      rows_produced=self.rows_produced, cause=e) from e

        schema = self._store.schema
        self._buffer.extend(Record.from_row(self.columns, tuple(row), schema) for row in rows)

    def close(self):
        """Stop reading and release the cursor and connection. Idempotent."""
        self.done = True
        self._buffer.clear()
        if self._result is not None:
            try:
                self._result.close()
            except SQLAlchemyError as e:
                logger.warning(f"Error closing result cursor: {e}")
            self._result = None
        if self._connection is not None:
            try:
                self._connection.close()
            except SQLAlchemyError as e:
                logger.warning(f"Error closing store connection: {e}")
            self._connection = None


class TabularQueryExecutor:
    """Runs allow-listed queries against a TabularStore."""

    def __init__(self, store: TabularStore, store_batch_size: int = 50):
        if isinstance(store_batch_size, bool) or not isinstance(store_batch_size, int) or store_batch_size <= 0:
            raise ConfigurationError(
                f"store_batch_size must be a positive integer, got {store_batch_size!r}",
                config_key='store_batch_size')
        self.store = store
        self.store_batch_size = store_batch_size

    def prepare_sql(self, query: Query) -> str:
        return apply_row_limit(query.text, query.row_limit)

    def probe_columns(self, query: Query) -> Tuple[str, ...]:
        """Result column names from a zero-row probe of the query.

        Raises:
            QueryExecutionError: the store rejects the query
        """
        probe = f"SELECT * FROM (\n{self.prepare_sql(query)}\n) AS _schema_probe LIMIT 0"
        try:
            with self.store.connect() as conn:
                result = conn.exec_driver_sql(probe)
                columns = tuple(result.keys())
                result.close()
        except SQLAlchemyError as e:
            raise QueryExecutionError(_store_message(e), query=query.text, cause=e) from e
        return columns

    def run(self, query: Query) -> RecordStream:
        """Lazy, finite, non-restartable sequence of the query's records."""
        sql = self.prepare_sql(query)
        logger.debug(f"Executing query: {sql[:200]}")
        return RecordStream(self.store, sql, self.store_batch_size)
