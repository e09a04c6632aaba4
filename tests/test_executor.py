"""Tests for the tabular query executor."""

import re
from unittest.mock import MagicMock

import pytest

from tablestream_mcp.error_handler import ConfigurationError, QueryExecutionError
from tablestream_mcp.executor import TabularQueryExecutor, apply_row_limit
from tablestream_mcp.models import Query, Record

DATE = re.compile(r'^\d{4}-\d{2}-\d{2}$')


class TestApplyRowLimit:
    """Textual LIMIT handling."""

    def test_appends_limit(self):
        assert apply_row_limit("SELECT * FROM employees", 5) == "SELECT * FROM employees LIMIT 5"

    def test_existing_limit_kept(self):
        sql = "SELECT * FROM employees limit 3"
        assert apply_row_limit(sql, 5) == sql

    def test_trailing_semicolon_removed(self):
        assert apply_row_limit("SELECT 1;  ", 2) == "SELECT 1 LIMIT 2"

    def test_no_limit_requested(self):
        assert apply_row_limit("SELECT 1", None) == "SELECT 1"


class TestExecutorRun:
    """Row production against the sample store."""

    def test_yields_all_records(self, executor):
        records = list(executor.run(Query("SELECT * FROM employees")))
        assert len(records) == 25
        assert all(isinstance(r, Record) for r in records)
        assert [r['employeeId'] for r in records] == list(range(1, 26))

    def test_row_limit_applied(self, executor):
        records = list(executor.run(Query("SELECT * FROM employees", row_limit=4)))
        assert len(records) == 4

    def test_store_batch_size_does_not_change_results(self, store):
        small = list(TabularQueryExecutor(store, store_batch_size=1).run(Query("SELECT * FROM employees")))
        large = list(TabularQueryExecutor(store, store_batch_size=100).run(Query("SELECT * FROM employees")))
        assert small == large

    def test_dates_and_booleans_normalized(self, executor):
        for record in executor.run(Query("SELECT startDate, lastPromoted, isRemote FROM employees")):
            assert DATE.match(record['startDate'])
            assert record['lastPromoted'] is None or DATE.match(record['lastPromoted'])
            assert isinstance(record['isRemote'], bool)

    def test_aliased_boolean_keeps_store_value(self, executor):
        """Only columns named after a boolean table column are converted."""
        for record in executor.run(Query("SELECT isRemote, isRemote AS remote FROM employees")):
            assert isinstance(record['isRemote'], bool)
            assert not isinstance(record['remote'], bool)
            assert record['remote'] in (0, 1)
            assert record['remote'] == int(record['isRemote'])

    def test_aggregate_columns(self, executor):
        records = list(executor.run(Query(
            "SELECT department, COUNT(*) AS n, AVG(salary) AS avg_salary FROM employees GROUP BY department")))
        assert sum(r['n'] for r in records) == 25
        assert all(isinstance(r['avg_salary'], float) for r in records)

    def test_colon_in_literal_is_not_a_bind_parameter(self, executor):
        records = list(executor.run(Query("SELECT ':abc' AS label")))
        assert records[0]['label'] == ':abc'

    def test_store_not_touched_until_first_pull(self):
        store = MagicMock()
        stream = TabularQueryExecutor(store).run(Query("SELECT * FROM employees"))
        store.connect.assert_not_called()
        assert stream.done is False

    def test_exhaustion_marks_done(self, executor):
        stream = executor.run(Query("SELECT * FROM employees", row_limit=2))
        assert len(list(stream)) == 2
        assert stream.done is True
        with pytest.raises(StopIteration):
            next(stream)

    def test_close_stops_iteration(self, executor):
        stream = executor.run(Query("SELECT * FROM employees"))
        next(stream)
        stream.close()
        assert stream.done is True
        assert list(stream) == []


class TestExecutorErrors:
    """Store failures become QueryExecutionError."""

    def test_unknown_column(self, executor):
        stream = executor.run(Query("SELECT nope FROM employees"))
        with pytest.raises(QueryExecutionError, match="no such column"):
            next(stream)
        assert stream.done is True

    def test_unknown_table(self, executor):
        with pytest.raises(QueryExecutionError, match="no such table"):
            list(executor.run(Query("SELECT * FROM missing")))

    @pytest.mark.parametrize("size", [0, -1, True, 2.5])
    def test_invalid_store_batch_size(self, store, size):
        with pytest.raises(ConfigurationError):
            TabularQueryExecutor(store, store_batch_size=size)


class TestProbeColumns:
    """Zero-row schema probe."""

    def test_probe_returns_result_columns(self, executor):
        columns = executor.probe_columns(Query("SELECT employeeName, salary FROM employees"))
        assert columns == ('employeeName', 'salary')

    def test_probe_with_existing_limit(self, executor):
        columns = executor.probe_columns(Query("SELECT * FROM employees LIMIT 3;"))
        assert len(columns) == 9

    def test_probe_failure(self, executor):
        with pytest.raises(QueryExecutionError):
            executor.probe_columns(Query("SELECT nope FROM employees"))
