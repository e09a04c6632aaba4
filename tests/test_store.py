"""Tests for loading the CSV dataset into the embedded store."""

import os
import re

import pytest

from tablestream_mcp.error_handler import StoreLoadError
from tablestream_mcp.models import EMPLOYEE_SCHEMA
from tablestream_mcp.store import TabularStore

HEADER = ','.join(EMPLOYEE_SCHEMA.names)


def write(tmp_path, text, name='data.csv'):
    path = tmp_path / name
    path.write_text(text)
    return str(path)


class TestStoreLoading:
    """Loading and describing the store."""

    def test_loads_all_rows(self, store):
        assert store.row_count() == 25
        assert store.table_name == 'employees'

    def test_describe_lists_schema_columns(self, store):
        description = store.describe()
        assert [c['column_name'] for c in description] == EMPLOYEE_SCHEMA.names
        assert description[0] == {'column_name': 'employeeId', 'data_type': 'INTEGER'}
        assert description[7] == {'column_name': 'isRemote', 'data_type': 'BOOLEAN'}

    def test_sample_rows_are_typed(self, store):
        rows = store.sample_rows(5)
        assert len(rows) == 5
        first = rows[0].as_dict()
        assert first['employeeId'] == 1
        assert isinstance(first['salary'], int)
        assert isinstance(first['isRemote'], bool)
        assert re.match(r'^\d{4}-\d{2}-\d{2}$', first['startDate'])

    def test_empty_last_promoted_is_null(self, tmp_path):
        path = write(tmp_path, HEADER + "\n"
                     "1,Ann Lee,Boston,2020-01-02,HR,61000,HR Specialist,false,\n")
        store = TabularStore.from_csv(path)
        try:
            row = store.sample_rows(1)[0].as_dict()
            assert row['lastPromoted'] is None
            assert row['isRemote'] is False
            assert row['startDate'] == '2020-01-02'
        finally:
            store.close()

    def test_header_only_file_gives_empty_table(self, tmp_path):
        store = TabularStore.from_csv(write(tmp_path, HEADER + "\n"))
        try:
            assert store.row_count() == 0
        finally:
            store.close()

    def test_close_removes_database_file(self, csv_path):
        store = TabularStore.from_csv(csv_path)
        path = store.database_path
        assert os.path.exists(path)
        store.close()
        assert not os.path.exists(path)
        store.close()


class TestStoreLoadFailures:
    """Every load failure is a StoreLoadError."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(StoreLoadError, match="CSV file not found"):
            TabularStore.from_csv(str(tmp_path / 'absent.csv'))

    def test_missing_column(self, tmp_path):
        path = write(tmp_path, "employeeId,employeeName\n1,Ann\n")
        with pytest.raises(StoreLoadError, match="missing columns"):
            TabularStore.from_csv(path)

    def test_bad_integer(self, tmp_path):
        path = write(tmp_path, HEADER + "\n"
                     "x,Ann Lee,Boston,2020-01-02,HR,61000,HR Specialist,false,\n")
        with pytest.raises(StoreLoadError):
            TabularStore.from_csv(path)

    def test_bad_boolean(self, tmp_path):
        path = write(tmp_path, HEADER + "\n"
                     "1,Ann Lee,Boston,2020-01-02,HR,61000,HR Specialist,maybe,\n")
        with pytest.raises(StoreLoadError, match="non-boolean"):
            TabularStore.from_csv(path)

    def test_required_value_missing(self, tmp_path):
        path = write(tmp_path, HEADER + "\n"
                     "1,,Boston,2020-01-02,HR,61000,HR Specialist,false,\n")
        with pytest.raises(StoreLoadError, match="not nullable"):
            TabularStore.from_csv(path)

    def test_empty_file(self, tmp_path):
        with pytest.raises(StoreLoadError):
            TabularStore.from_csv(write(tmp_path, ""))
