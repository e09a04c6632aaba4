"""Embedded tabular store.

The CSV dataset is read with pandas in chunks, coerced to the table schema and
written into a temporary SQLite database file through SQLAlchemy. After load
the store is read-only: every query checks out its own pooled connection, and
SQLite allows any number of concurrent readers on one file, so all sessions
share a single engine.
"""

import atexit
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
from sqlalchemy import Boolean, Integer, String, create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from .error_handler import StoreLoadError
from .models import EMPLOYEE_SCHEMA, Column, ColumnType, Record, TableSchema

logger = logging.getLogger(__name__)

__all__ = ['TabularStore', 'TableSchema', 'Column', 'ColumnType', 'EMPLOYEE_SCHEMA']

_SQL_TYPES = {
    ColumnType.INTEGER: Integer,
    ColumnType.TEXT: String,
    ColumnType.BOOLEAN: Boolean,
    # dates are stored as ISO text so they read back as YYYY-MM-DD
    ColumnType.DATE: String,
}

_BOOLEAN_VALUES = {'true': True, 'false': False, '1': True, '0': False,
                   't': True, 'f': False, 'yes': True, 'no': False}


def _coerce_column(series: pd.Series, column: Column) -> pd.Series:
    """Convert one raw CSV column (strings) to the schema type."""
    missing = series.isna()
    if not column.nullable and missing.any():
        raise ValueError(f"Column '{column.name}' has empty values but is not nullable")

    if column.type is ColumnType.INTEGER:
        return pd.to_numeric(series, errors='raise').astype('Int64')

    if column.type is ColumnType.BOOLEAN:
        mapped = series.str.strip().str.lower().map(_BOOLEAN_VALUES)
        invalid = mapped.isna() & ~missing
        if invalid.any():
            bad = series[invalid].iloc[0]
            raise ValueError(f"Column '{column.name}' has non-boolean value '{bad}'")
        return mapped.astype('boolean')

    if column.type is ColumnType.DATE:
        parsed = pd.to_datetime(series, errors='raise')
        return parsed.dt.strftime('%Y-%m-%d').where(~missing, None)

    return series.str.strip()


class TabularStore:
    """Read-only SQLite copy of one CSV table."""

    def __init__(self, engine: Engine, schema: TableSchema, table_name: str,
                 database_path: Optional[str] = None):
        self.engine = engine
        self.schema = schema
        self.table_name = table_name
        self.database_path = database_path
        self._closed = False

    @classmethod
    def from_csv(cls, csv_path: str, schema: TableSchema = EMPLOYEE_SCHEMA,
                 table_name: str = 'employees', read_chunk_size: int = 1000) -> 'TabularStore':
        """Load ``csv_path`` into a fresh store.

        Raises:
            StoreLoadError: the file is missing, unreadable, or does not match
                the schema. Nothing partially loaded is kept.
        """
        path = Path(csv_path)
        if not path.is_file():
            raise StoreLoadError(f"CSV file not found: {csv_path}", path=str(csv_path))

        temp_file = tempfile.NamedTemporaryFile(prefix='tablestream_', suffix='.db', delete=False)
        temp_file.close()
        # connections are advanced from worker threads, one thread at a time
        engine = create_engine(f"sqlite:///{temp_file.name}",
                               connect_args={'check_same_thread': False})
        store = cls(engine, schema, table_name, database_path=temp_file.name)

        try:
            rows = store._load(path, read_chunk_size)
        except (OSError, ValueError, KeyError, SQLAlchemyError) as e:
            store.close()
            raise StoreLoadError(f"Failed to load CSV data from {csv_path}: {e}",
                                 path=str(csv_path), cause=e) from e

        atexit.register(store.close)
        logger.info(f"Loaded {rows} rows from {csv_path} into table '{table_name}'")
        return store

    def _load(self, path: Path, read_chunk_size: int) -> int:
        dtypes = {c.name: _SQL_TYPES[c.type] for c in self.schema.columns}
        pd.DataFrame(columns=self.schema.names).to_sql(
            self.table_name, self.engine, index=False, if_exists='replace', dtype=dtypes)

        total = 0
        for chunk in pd.read_csv(path, chunksize=read_chunk_size, dtype=str):
            chunk.columns = [str(col).strip() for col in chunk.columns]
            missing = [name for name in self.schema.names if name not in chunk.columns]
            if missing:
                raise KeyError(f"missing columns {missing}")
            extra = [name for name in chunk.columns if name not in self.schema.names]
            if extra and total == 0:
                logger.warning(f"Ignoring columns not in schema: {extra}")

            frame = pd.DataFrame({
                column.name: _coerce_column(chunk[column.name], column)
                for column in self.schema.columns
            })
            frame.to_sql(self.table_name, self.engine, index=False, if_exists='append', dtype=dtypes)
            total += len(frame)
        return total

    def connect(self) -> Connection:
        """Check out a connection for one query."""
        return self.engine.connect()

    def describe(self) -> List[Dict[str, str]]:
        return self.schema.describe()

    def sample_rows(self, n: int = 5) -> List[Record]:
        with self.connect() as conn:
            result = conn.execute(
                text(f'SELECT * FROM "{self.table_name}" LIMIT :n'), {'n': n})
            columns = tuple(result.keys())
            return [Record.from_row(columns, tuple(row), self.schema) for row in result]

    def row_count(self) -> int:
        with self.connect() as conn:
            return conn.execute(text(f'SELECT COUNT(*) FROM "{self.table_name}"')).scalar_one()

    def close(self):
        """Dispose the engine and remove the database file. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.engine.dispose()
        if self.database_path and os.path.exists(self.database_path):
            try:
                os.unlink(self.database_path)
            except OSError as e:
                logger.warning(f"Could not remove store file {self.database_path}: {e}")
