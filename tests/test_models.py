"""Tests for records, queries, scalar normalization and wire events."""

import json
import re
from datetime import date, datetime, timezone
from decimal import Decimal

import pandas as pd
import pytest

from tablestream_mcp.models import (
    EMPLOYEE_SCHEMA,
    Column,
    ColumnType,
    DataChunk,
    Query,
    QueryCompleted,
    QueryFailed,
    QueryStarted,
    Record,
    TableSchema,
    encode_event,
    normalize_value,
    utc_timestamp,
)

ISO_MILLIS = re.compile(r'^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$')


class TestNormalizeValue:
    """Store values become stable record scalars."""

    def test_dates_become_iso_strings(self):
        assert normalize_value(date(2021, 3, 4)) == '2021-03-04'
        assert normalize_value(datetime(2021, 3, 4, 15, 30)) == '2021-03-04'
        assert normalize_value(pd.Timestamp('2021-03-04 10:00:00')) == '2021-03-04'

    def test_date_column_text_is_truncated_to_day(self):
        assert normalize_value('2021-03-04 00:00:00', ColumnType.DATE) == '2021-03-04'
        assert normalize_value('2021-03-04', ColumnType.DATE) == '2021-03-04'

    def test_boolean_column_integers(self):
        assert normalize_value(1, ColumnType.BOOLEAN) is True
        assert normalize_value(0, ColumnType.BOOLEAN) is False

    def test_integers_stay_integers_outside_boolean_columns(self):
        assert normalize_value(1) == 1
        assert normalize_value(1, ColumnType.INTEGER) == 1

    def test_missing_values(self):
        assert normalize_value(None) is None
        assert normalize_value(float('nan')) is None
        assert normalize_value(pd.NaT) is None

    def test_decimal_and_numpy_scalars(self):
        assert normalize_value(Decimal('12')) == 12
        assert normalize_value(Decimal('12.5')) == 12.5
        value = normalize_value(pd.Series([7], dtype='int64').iloc[0])
        assert value == 7 and isinstance(value, int)

    def test_aggregate_floats_pass_through(self):
        assert normalize_value(80123.5) == 80123.5


class TestRecord:
    """Record ordering and access."""

    def test_as_dict_preserves_column_order(self):
        record = Record(('b', 'a'), (2, 1))
        assert list(record.as_dict()) == ['b', 'a']
        assert record['a'] == 1

    def test_length_mismatch_rejected(self):
        with pytest.raises(ValueError):
            Record(('a', 'b'), (1,))

    def test_from_row_uses_schema_types(self):
        record = Record.from_row(('isRemote', 'startDate', 'total'),
                                 (1, date(2020, 1, 2), 3), EMPLOYEE_SCHEMA)
        assert record.as_dict() == {'isRemote': True, 'startDate': '2020-01-02', 'total': 3}


class TestSchema:
    """Schema shape."""

    def test_employee_schema_columns(self):
        assert EMPLOYEE_SCHEMA.names == [
            'employeeId', 'employeeName', 'location', 'startDate', 'department',
            'salary', 'position', 'isRemote', 'lastPromoted',
        ]
        assert EMPLOYEE_SCHEMA.column_type('lastPromoted') is ColumnType.DATE
        assert EMPLOYEE_SCHEMA.column_type('computed') is None

    def test_duplicate_columns_rejected(self):
        with pytest.raises(ValueError, match="Duplicate column"):
            TableSchema((Column('a', ColumnType.TEXT), Column('a', ColumnType.INTEGER)))


class TestQuery:
    """Query value object."""

    def test_row_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            Query('SELECT 1', row_limit=0)
        with pytest.raises(ValueError):
            Query('SELECT 1', row_limit=-5)

    def test_query_is_immutable(self):
        query = Query('SELECT 1', 5)
        with pytest.raises(AttributeError):
            query.text = 'SELECT 2'


class TestWireEvents:
    """JSON shapes of the four events."""

    def test_query_started(self):
        moment = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)
        wire = QueryStarted('SELECT 1', ('a', 'b'), moment).to_wire()
        assert wire == {
            'type': 'query_start',
            'data': {'query': 'SELECT 1', 'columns': ['a', 'b'],
                     'timestamp': '2024-01-02T03:04:05.678Z'},
        }

    def test_data_chunk(self):
        rows = (Record(('a',), (1,)), Record(('a',), (2,)))
        wire = DataChunk(rows, index=3, rows_in_chunk=2, rows_so_far=12).to_wire()
        assert wire == {
            'type': 'data_chunk',
            'data': {'chunk': [{'a': 1}, {'a': 2}], 'chunkNumber': 3,
                     'rowsInChunk': 2, 'totalRowsSoFar': 12},
        }

    def test_query_completed(self):
        wire = QueryCompleted(total_rows=25, total_chunks=3, elapsed_millis=40).to_wire()
        assert wire == {
            'type': 'query_complete',
            'data': {'totalRows': 25, 'totalChunks': 3, 'executionTime': 40, 'completed': True},
        }

    def test_query_failed(self):
        wire = QueryFailed('boom').to_wire()
        assert wire['type'] == 'query_error'
        assert wire['data']['error'] is True
        assert wire['data']['message'] == 'boom'
        assert ISO_MILLIS.match(wire['data']['timestamp'])

    def test_terminal_flags(self):
        assert QueryCompleted(0, 0, 0).terminal
        assert QueryFailed('x').terminal
        assert not QueryStarted('q', ()).terminal

    def test_encode_event_is_single_line_json(self):
        text = encode_event(QueryCompleted(1, 1, 1))
        assert '\n' not in text
        assert json.loads(text)['type'] == 'query_complete'

    def test_utc_timestamp_format(self):
        assert ISO_MILLIS.match(utc_timestamp())
