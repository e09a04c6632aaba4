"""Core value types: typed columns, records, queries and protocol events.

The ``*_event`` dataclasses are the internal form of the chunk event
sequence; ``to_wire()`` produces the JSON object sent to clients.
"""

import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

Scalar = Union[int, float, str, bool, None]


class ColumnType(str, Enum):
    """Scalar types a record column can hold."""
    INTEGER = "INTEGER"
    TEXT = "VARCHAR"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"


@dataclass(frozen=True)
class Column:
    """One typed column of the dataset."""
    name: str
    type: ColumnType
    nullable: bool = False


@dataclass(frozen=True)
class TableSchema:
    """Ordered list of typed columns, fixed when the store is loaded."""
    columns: Tuple[Column, ...]

    def __post_init__(self):
        names = [column.name for column in self.columns]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate column names in schema: {names}")

    @property
    def names(self) -> List[str]:
        return [column.name for column in self.columns]

    def column_type(self, name: str) -> Optional[ColumnType]:
        """Type of a dataset column, or None for computed/unknown columns."""
        for column in self.columns:
            if column.name == name:
                return column.type
        return None

    def describe(self) -> List[Dict[str, str]]:
        return [{'column_name': c.name, 'data_type': c.type.value} for c in self.columns]


EMPLOYEE_SCHEMA = TableSchema((
    Column("employeeId", ColumnType.INTEGER),
    Column("employeeName", ColumnType.TEXT),
    Column("location", ColumnType.TEXT),
    Column("startDate", ColumnType.DATE),
    Column("department", ColumnType.TEXT),
    Column("salary", ColumnType.INTEGER),
    Column("position", ColumnType.TEXT),
    Column("isRemote", ColumnType.BOOLEAN),
    Column("lastPromoted", ColumnType.DATE, nullable=True),
))


def normalize_value(value: Any, column_type: Optional[ColumnType] = None) -> Scalar:
    """Convert a store value into a record scalar.

    Dates always come out as ``YYYY-MM-DD``; booleans stored as 0/1 come out
    as bool when the column is known to be boolean.
    """
    if value is None:
        return None
    # pandas NaT/NaN and friends
    if isinstance(value, (float, datetime)) and value != value:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if column_type is ColumnType.DATE and isinstance(value, str):
        return value[:10] if len(value) >= 10 else value
    if column_type is ColumnType.BOOLEAN and isinstance(value, (int, str)) and not isinstance(value, bool):
        if isinstance(value, str):
            return value.strip().lower() in ('true', '1', 't', 'yes')
        return bool(value)
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        return float(value)
    if isinstance(value, str):
        return value
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    # numpy scalars
    if hasattr(value, "item"):
        return normalize_value(value.item(), column_type)
    if isinstance(value, (bytes, bytearray)):
        return value.decode('utf-8', errors='replace')
    return str(value)


@dataclass(frozen=True)
class Record:
    """One result row: column names and normalized values, in result order."""
    columns: Tuple[str, ...]
    values: Tuple[Scalar, ...]

    def __post_init__(self):
        if len(self.columns) != len(self.values):
            raise ValueError("Record columns and values differ in length")

    @classmethod
    def from_row(cls, columns: Tuple[str, ...], row: Tuple[Any, ...],
                 schema: Optional[TableSchema] = None) -> 'Record':
        types = [schema.column_type(name) if schema else None for name in columns]
        return cls(columns, tuple(normalize_value(v, t) for v, t in zip(row, types)))

    def __getitem__(self, name: str) -> Scalar:
        return self.values[self.columns.index(name)]

    def __iter__(self) -> Iterator[str]:
        return iter(self.columns)

    def as_dict(self) -> Dict[str, Scalar]:
        return dict(zip(self.columns, self.values))


@dataclass(frozen=True)
class Query:
    """Immutable query request."""
    text: str
    row_limit: Optional[int] = None

    def __post_init__(self):
        if self.row_limit is not None and (isinstance(self.row_limit, bool) or self.row_limit <= 0):
            raise ValueError(f"row_limit must be a positive integer, got {self.row_limit}")


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """ISO8601 UTC timestamp with millisecond precision, e.g. 2024-01-01T00:00:00.000Z."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class EventType(str, Enum):
    """Wire tags of the chunk event sequence."""
    QUERY_START = "query_start"
    DATA_CHUNK = "data_chunk"
    QUERY_COMPLETE = "query_complete"
    QUERY_ERROR = "query_error"


@dataclass(frozen=True)
class QueryStarted:
    query: str
    columns: Tuple[str, ...]
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    type = EventType.QUERY_START
    terminal = False

    def to_wire(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'data': {
                'query': self.query,
                'columns': list(self.columns),
                'timestamp': utc_timestamp(self.started_at)
            }
        }


@dataclass(frozen=True)
class DataChunk:
    rows: Tuple[Record, ...]
    index: int
    rows_in_chunk: int
    rows_so_far: int

    type = EventType.DATA_CHUNK
    terminal = False

    def to_wire(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'data': {
                'chunk': [record.as_dict() for record in self.rows],
                'chunkNumber': self.index,
                'rowsInChunk': self.rows_in_chunk,
                'totalRowsSoFar': self.rows_so_far
            }
        }


@dataclass(frozen=True)
class QueryCompleted:
    total_rows: int
    total_chunks: int
    elapsed_millis: int

    type = EventType.QUERY_COMPLETE
    terminal = True

    def to_wire(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'data': {
                'totalRows': self.total_rows,
                'totalChunks': self.total_chunks,
                'executionTime': self.elapsed_millis,
                'completed': True
            }
        }


@dataclass(frozen=True)
class QueryFailed:
    message: str
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    type = EventType.QUERY_ERROR
    terminal = True

    def to_wire(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'data': {
                'error': True,
                'message': self.message,
                'timestamp': utc_timestamp(self.failed_at)
            }
        }


ChunkEvent = Union[QueryStarted, DataChunk, QueryCompleted, QueryFailed]


def encode_event(event: ChunkEvent) -> str:
    """Serialize one event as a single-line JSON object."""
    return json.dumps(event.to_wire(), separators=(',', ':'))
