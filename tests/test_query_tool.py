"""Tests for the dbQueryTool tool: arguments, allow-list and both delivery modes."""

import json
from unittest.mock import MagicMock

import pytest

from tablestream_mcp.config_manager import StreamingConfig
from tablestream_mcp.error_handler import QueryValidationError
from tablestream_mcp.models import DataChunk, QueryCompleted, QueryFailed, QueryStarted
from tablestream_mcp.query_parser import INVALID_QUERY_MESSAGE, validate
from tablestream_mcp.query_tool import MISSING_SQL_MESSAGE, TOOL_NAME, DbQueryTool


class TestToolDefinition:
    """Advertised MCP tool definition."""

    def test_definition(self, tool):
        definition = tool.get_tool_definition()
        assert tool.name == TOOL_NAME == definition['name']
        schema = definition['inputSchema']
        assert schema['required'] == ['sql']
        assert schema['properties']['limit']['type'] == 'integer'
        assert schema['properties']['limit']['minimum'] == 1
        assert schema['properties']['limit']['maximum'] == 10000
        assert schema['additionalProperties'] is False
        assert 'employees' in definition['description']


class TestParseArguments:
    """Argument checking before execution."""

    def test_valid(self, tool):
        query = tool.parse_arguments({'sql': "SELECT * FROM employees", 'limit': 3})
        assert query.text == "SELECT * FROM employees"
        assert query.row_limit == 3

    def test_integral_float_limit(self, tool):
        assert tool.parse_arguments({'sql': "SELECT 1", 'limit': 10.0}).row_limit == 10

    @pytest.mark.parametrize("arguments", [{}, {'sql': ''}, {'sql': '   '}, {'sql': 42}, {'sql': None}])
    def test_missing_sql(self, tool, arguments):
        with pytest.raises(QueryValidationError, match=MISSING_SQL_MESSAGE):
            tool.parse_arguments(arguments)

    def test_non_object_arguments(self, tool):
        with pytest.raises(QueryValidationError, match="must be an object"):
            tool.parse_arguments(["SELECT 1"])

    def test_unknown_parameter(self, tool):
        with pytest.raises(QueryValidationError, match="Unknown parameter"):
            tool.parse_arguments({'sql': "SELECT 1", 'offset': 3})

    @pytest.mark.parametrize("limit", [0, -1, 10001, 2.5, True, "5"])
    def test_bad_limit(self, tool, limit):
        with pytest.raises(QueryValidationError, match="limit"):
            tool.parse_arguments({'sql': "SELECT 1", 'limit': limit})

    def test_denied_sql_logs_security_event(self, tool, metrics_registry):
        with pytest.raises(QueryValidationError) as exc_info:
            tool.parse_arguments({'sql': "DROP TABLE employees"})
        assert exc_info.value.message == INVALID_QUERY_MESSAGE
        assert metrics_registry.get_sample_value(
            'tablestream_security_events_total',
            {'event_type': 'blocked_query', 'severity': 'medium'}) == 1


class TestStreamEvents:
    """Preferred per-event delivery."""

    def test_full_table(self, tool):
        events = list(tool.stream_events({'sql': "SELECT * FROM employees"}))
        assert isinstance(events[0], QueryStarted)
        assert len(events[0].columns) == 9
        chunks = [e for e in events if isinstance(e, DataChunk)]
        assert [c.rows_in_chunk for c in chunks] == [5, 5, 5, 5, 5]
        assert events[-1].total_rows == 25
        assert events[-1].total_chunks == 5

    def test_limit(self, tool):
        events = list(tool.stream_events({'sql': "SELECT * FROM employees", 'limit': 7}))
        chunks = [e for e in events if isinstance(e, DataChunk)]
        assert [c.rows_in_chunk for c in chunks] == [5, 2]
        assert events[0].query.endswith("LIMIT 7")
        assert isinstance(events[-1], QueryCompleted)

    def test_no_rows(self, tool):
        events = list(tool.stream_events({'sql': "SELECT * FROM employees WHERE salary < 0"}))
        assert [type(e) for e in events] == [QueryStarted, QueryCompleted]
        assert events[-1].total_chunks == 0

    def test_rejected_query_is_single_failure(self, tool):
        events = list(tool.stream_events({'sql': "DELETE FROM employees"}))
        assert len(events) == 1
        assert isinstance(events[0], QueryFailed)
        assert events[0].message == INVALID_QUERY_MESSAGE

    def test_rejected_query_never_reaches_store(self, store, logging_manager):
        executor = MagicMock()
        tool = DbQueryTool(store, executor=executor, logging_manager=logging_manager)
        list(tool.stream_events({'sql': "SELECT * FROM employees; DROP TABLE employees"}))
        executor.run.assert_not_called()
        executor.probe_columns.assert_not_called()

    def test_missing_sql_is_single_failure(self, tool):
        events = list(tool.stream_events({}))
        assert events == [QueryFailed(message=MISSING_SQL_MESSAGE, failed_at=events[0].failed_at)]

    def test_store_error_after_start(self, tool):
        events = list(tool.stream_events({'sql': "SELECT nope FROM employees"}))
        assert [type(e) for e in events] == [QueryStarted, QueryFailed]
        assert "no such column" in events[-1].message

    def test_chunk_size_from_config(self, store, logging_manager):
        tool = DbQueryTool(store, config=StreamingConfig(chunk_size=10),
                           logging_manager=logging_manager)
        chunks = [e for e in tool.stream_events({'sql': "SELECT * FROM employees"})
                  if isinstance(e, DataChunk)]
        assert [c.rows_in_chunk for c in chunks] == [10, 10, 5]


class TestLegacyExecute:
    """Buffered JSON document."""

    def test_success_document(self, tool):
        result = json.loads(tool.execute({'sql': "SELECT * FROM employees"}))
        assert result['success'] is True
        assert result['streaming'] is True
        assert result['streamChunkSize'] == 5
        types = [e['type'] for e in result['events']]
        assert types == ['query_start'] + ['data_chunk'] * 5 + ['query_complete']
        assert result['events'][-1]['data']['totalRows'] == 25
        assert result['timestamp'].endswith('Z')

    def test_rejected_query_document(self, tool):
        result = json.loads(tool.execute({'sql': "UPDATE employees SET salary = 1"}))
        assert result == {
            'error': True,
            'message': INVALID_QUERY_MESSAGE,
            'data': [],
            'totalRows': 0
        }

    def test_missing_sql_document(self, tool):
        result = json.loads(tool.execute({'limit': 3}))
        assert result['error'] is True
        assert result['message'] == MISSING_SQL_MESSAGE

    def test_store_error_still_succeeds(self, tool):
        result = json.loads(tool.execute({'sql': "SELECT nope FROM employees"}))
        assert result['success'] is True
        assert [e['type'] for e in result['events']] == ['query_start', 'query_error']
        assert result['events'][-1]['data']['error'] is True


class TestSchemaAndSamples:
    """Schema description and example queries."""

    def test_sample_queries_are_allowed_and_run(self, tool):
        queries = tool.get_sample_queries()
        assert len(queries) == 8
        for sql in queries:
            assert validate(sql), sql
            events = list(tool.stream_events({'sql': sql}))
            assert isinstance(events[-1], QueryCompleted), (sql, events[-1])

    def test_get_schema(self, tool):
        schema = tool.get_schema()
        assert schema['table'] == 'employees'
        assert len(schema['schema']) == 9
        assert len(schema['sampleData']) == 5
        assert schema['sampleData'][0]['employeeId'] == 1
        assert schema['sampleQueries'] == tool.get_sample_queries()
        json.dumps(schema)
