"""The ``dbQueryTool`` MCP tool.

Argument checking, the allow-list, and the two delivery modes: a lazy
per-event stream (preferred) and the legacy buffered JSON document.
"""

import json
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from .config_manager import StreamingConfig
from .encoder import QueryEventEncoder
from .error_handler import QueryValidationError
from .executor import TabularQueryExecutor
from .logging_manager import LoggingManager, get_logger, get_logging_manager
from .models import ChunkEvent, Query, QueryFailed, utc_timestamp
from .query_parser import QueryParser, get_query_parser
from .store import TabularStore

logger = get_logger(__name__)

TOOL_NAME = 'dbQueryTool'
MISSING_SQL_MESSAGE = 'SQL query is required and must be a string'


class DbQueryTool:
    """Streams allow-listed SELECT queries over the employee table as chunk events."""

    def __init__(self,
                 store: TabularStore,
                 executor: Optional[TabularQueryExecutor] = None,
                 config: Optional[StreamingConfig] = None,
                 parser: Optional[QueryParser] = None,
                 logging_manager: Optional[LoggingManager] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.config = config or StreamingConfig()
        self.executor = executor or TabularQueryExecutor(store, self.config.store_batch_size)
        self.parser = parser or get_query_parser()
        self._logging = logging_manager or get_logging_manager()
        self._sleep = sleep
        self._clock = clock

    @property
    def name(self) -> str:
        return TOOL_NAME

    def get_tool_definition(self) -> Dict[str, Any]:
        return {
            'name': TOOL_NAME,
            'description': (
                f"Execute SQL queries against the {self.store.table_name} table with streaming "
                "results. Only SELECT statements are allowed for security."
            ),
            'inputSchema': {
                'type': 'object',
                'properties': {
                    'sql': {
                        'type': 'string',
                        'description': f"SQL SELECT query to execute against the {self.store.table_name} table"
                    },
                    'limit': {
                        'type': 'integer',
                        'description': 'Optional limit for the number of results (default: no limit)',
                        'minimum': 1,
                        'maximum': self.config.max_row_limit
                    }
                },
                'required': ['sql'],
                'additionalProperties': False
            }
        }

    def parse_arguments(self, arguments: Any) -> Query:
        """Turn raw tool arguments into a Query.

        Raises:
            QueryValidationError: missing or malformed arguments, or SQL that
                fails the allow-list
        """
        if not isinstance(arguments, dict):
            raise QueryValidationError("Tool arguments must be an object")

        sql = arguments.get('sql')
        if not isinstance(sql, str) or not sql.strip():
            raise QueryValidationError(MISSING_SQL_MESSAGE)

        unknown = sorted(set(arguments) - {'sql', 'limit'})
        if unknown:
            raise QueryValidationError(f"Unknown parameter(s): {', '.join(unknown)}", query=sql)

        limit = arguments.get('limit')
        if limit is not None:
            # JSON clients may send 10.0 for an integer
            if isinstance(limit, float) and limit.is_integer():
                limit = int(limit)
            if isinstance(limit, bool) or not isinstance(limit, int) \
                    or not 1 <= limit <= self.config.max_row_limit:
                raise QueryValidationError(
                    f"Parameter 'limit' must be an integer between 1 and {self.config.max_row_limit}",
                    query=sql)

        try:
            self.parser.parse_and_validate(sql)
        except QueryValidationError as e:
            self._logging.log_security_event(
                "blocked_query", "medium", e.metadata.get('reason', e.message),
                query_preview=sql[:200])
            raise

        return Query(text=sql, row_limit=limit)

    def stream_events(self, arguments: Any,
                      cancel: Optional[threading.Event] = None,
                      session_id: Optional[str] = None) -> Iterator[ChunkEvent]:
        """Preferred mode: a lazy iterator over the query's chunk events.

        A query rejected before execution yields a single QueryFailed and
        no QueryStarted.
        """
        try:
            query = self.parse_arguments(arguments)
        except QueryValidationError as e:
            logger.info("Query rejected", reason=e.metadata.get('reason', e.message))
            return iter([QueryFailed(message=e.message)])

        return QueryEventEncoder(
            self.executor,
            query,
            chunk_size=self.config.chunk_size,
            pacing_delay=self.config.pacing_delay,
            query_timeout=self.config.query_timeout,
            cancel=cancel,
            sleep=self._sleep,
            clock=self._clock,
            logging_manager=self._logging,
            session_id=session_id,
        )

    def execute(self, arguments: Any) -> str:
        """Legacy mode: run the whole query and return every event in one JSON document."""
        try:
            query = self.parse_arguments(arguments)
        except QueryValidationError as e:
            return json.dumps({
                'error': True,
                'message': e.message,
                'data': [],
                'totalRows': 0
            }, indent=2)

        encoder = QueryEventEncoder(
            self.executor, query,
            chunk_size=self.config.chunk_size,
            pacing_delay=self.config.pacing_delay,
            query_timeout=self.config.query_timeout,
            sleep=self._sleep,
            clock=self._clock,
            logging_manager=self._logging,
        )
        events = [event.to_wire() for event in encoder]
        return json.dumps({
            'success': True,
            'streaming': True,
            'streamChunkSize': self.config.chunk_size,
            'events': events,
            'timestamp': utc_timestamp(datetime.now(timezone.utc)),
            'note': 'Events generated one-by-one by a pull-based encoder'
        }, indent=2)

    def get_sample_queries(self) -> List[str]:
        table = self.store.table_name
        return [
            f"SELECT * FROM {table} LIMIT 10",
            f"SELECT location, COUNT(*) as employee_count FROM {table} GROUP BY location ORDER BY employee_count DESC",
            f"SELECT * FROM {table} WHERE location = 'New York'",
            f"SELECT employeeName, location, startDate FROM {table} WHERE startDate >= '2020-01-01' ORDER BY startDate DESC",
            f"SELECT location, AVG(CAST(strftime('%Y', startDate) AS INTEGER)) as avg_start_year FROM {table} GROUP BY location",
            f"SELECT COUNT(*) as total_employees FROM {table}",
            f"SELECT * FROM {table} WHERE employeeName LIKE '%John%'",
            f"SELECT strftime('%Y', startDate) as start_year, COUNT(*) as hires FROM {table} GROUP BY start_year ORDER BY start_year",
        ]

    def get_schema(self) -> Dict[str, Any]:
        """Column list, five sample rows and example queries."""
        return {
            'table': self.store.table_name,
            'schema': self.store.describe(),
            'sampleData': [record.as_dict() for record in self.store.sample_rows(5)],
            'sampleQueries': self.get_sample_queries()
        }
