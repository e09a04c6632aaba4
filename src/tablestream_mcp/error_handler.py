"""Error hierarchy for TableStream MCP.

Every failure that can reach a client is a TableStreamError subclass carrying
a category, a severity and a human-readable message. Validation and execution
failures become terminal ``query_error`` events or tool errors; transport
failures are only logged; session failures are reported as "not found" or
"busy" results. Nothing here retries.
"""

import time
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(Enum):
    """Categories of errors for classification and handling."""
    VALIDATION = "validation"
    QUERY_EXECUTION = "query_execution"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    SESSION = "session"
    CONFIGURATION = "configuration"
    STORE = "store"


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TableStreamError(Exception):
    """Base exception for all TableStream MCP errors."""

    def __init__(self,
                 message: str,
                 category: ErrorCategory,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM,
                 query: Optional[str] = None,
                 metadata: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.query = query
        self.metadata = metadata or {}
        self.cause = cause
        self.timestamp = time.time()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging and serialization."""
        return {
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'query': self.query[:200] if self.query else None,
            'metadata': self.metadata,
            'cause': str(self.cause) if self.cause else None,
            'timestamp': self.timestamp
        }

    def __str__(self) -> str:
        return self.message


class QueryValidationError(TableStreamError):
    """Query rejected before execution (allow-list failure or malformed input)."""

    def __init__(self, message: str, query: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            severity=kwargs.pop('severity', ErrorSeverity.MEDIUM),
            query=query,
            **kwargs
        )


class QueryExecutionError(TableStreamError):
    """The store rejected the query or failed while rows were being read."""

    def __init__(self, message: str, query: Optional[str] = None,
                 rows_produced: int = 0, **kwargs):
        metadata = kwargs.pop('metadata', {})
        metadata['rows_produced'] = rows_produced
        super().__init__(
            message=message,
            category=kwargs.pop('category', ErrorCategory.QUERY_EXECUTION),
            severity=kwargs.pop('severity', ErrorSeverity.MEDIUM),
            query=query,
            metadata=metadata,
            **kwargs
        )
        self.rows_produced = rows_produced


class QueryTimeoutError(QueryExecutionError):
    """A query ran longer than the configured per-query timeout."""

    def __init__(self, timeout_limit: float, execution_time: float,
                 query: Optional[str] = None, rows_produced: int = 0):
        super().__init__(
            f"Query exceeded timeout of {timeout_limit:g} seconds",
            query=query,
            rows_produced=rows_produced,
            category=ErrorCategory.TIMEOUT,
            metadata={'timeout_limit': timeout_limit, 'execution_time': execution_time}
        )
        self.timeout_limit = timeout_limit
        self.execution_time = execution_time


class TransportError(TableStreamError):
    """Client disconnected or a write failed; never reported to the client."""

    def __init__(self, message: str, session_id: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            category=ErrorCategory.TRANSPORT,
            severity=ErrorSeverity.LOW,
            metadata={'session_id': session_id},
            **kwargs
        )
        self.session_id = session_id


class SessionNotFoundError(TableStreamError):
    """Operation referenced an unknown or expired session id."""

    def __init__(self, session_id: str):
        super().__init__(
            message=f"Session {session_id} not found",
            category=ErrorCategory.SESSION,
            severity=ErrorSeverity.LOW,
            metadata={'session_id': session_id}
        )
        self.session_id = session_id


class SessionBusyError(TableStreamError):
    """A session already has a query in flight."""

    def __init__(self, session_id: Optional[str] = None):
        super().__init__(
            message="Session busy: a query is already in flight for this session",
            category=ErrorCategory.SESSION,
            severity=ErrorSeverity.LOW,
            metadata={'session_id': session_id}
        )
        self.session_id = session_id


class ConfigurationError(TableStreamError):
    """Invalid runtime configuration (e.g. non-positive chunk size)."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.HIGH,
            metadata={'config_key': config_key}
        )
        self.config_key = config_key


class StoreLoadError(TableStreamError):
    """The dataset could not be loaded at startup; fatal."""

    def __init__(self, message: str, path: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.STORE,
            severity=ErrorSeverity.CRITICAL,
            metadata={'path': path},
            cause=cause
        )
        self.path = path


def error_message(error: BaseException) -> str:
    """Client-facing message for any exception."""
    if isinstance(error, TableStreamError):
        return error.message
    return str(error) or "Unknown error"
