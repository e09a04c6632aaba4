"""Structured logging and monitoring system for TableStream MCP.

Provides JSON-based logging with per-thread context, query and session
lifecycle events, and Prometheus metrics using structlog and prometheus_client.
"""

import hashlib
import sys
import uuid
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Any, Dict, Optional
from contextlib import contextmanager
from dataclasses import dataclass, field

import structlog
from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, REGISTRY
from prometheus_client import generate_latest

from .config_manager import LoggingConfig, LogLevel


@dataclass
class LogContext:
    """Context information for structured logging."""
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    session_id: Optional[str] = None
    operation: Optional[str] = None
    component: Optional[str] = None
    query_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary for logging."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


class MetricsCollector:
    """Prometheus metrics collector for TableStream MCP."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize metrics collector.

        Args:
            registry: Prometheus registry to use. Defaults to global registry.
        """
        self.registry = registry or REGISTRY

        self.query_counter = Counter(
            'tablestream_queries_total',
            'Total number of streamed queries by outcome',
            ['status'],
            registry=self.registry
        )

        self.query_duration = Histogram(
            'tablestream_query_duration_seconds',
            'Wall time from query_start to the terminal event',
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
            registry=self.registry
        )

        self.chunks_emitted = Counter(
            'tablestream_chunks_emitted_total',
            'Total number of data_chunk events emitted',
            registry=self.registry
        )

        self.rows_streamed = Counter(
            'tablestream_rows_streamed_total',
            'Total number of rows delivered inside data_chunk events',
            registry=self.registry
        )

        self.active_sessions = Gauge(
            'tablestream_active_sessions',
            'Number of live protocol sessions',
            registry=self.registry
        )

        self.sessions_expired = Counter(
            'tablestream_sessions_expired_total',
            'Sessions removed by the idle sweep',
            registry=self.registry
        )

        self.error_counter = Counter(
            'tablestream_errors_total',
            'Total number of errors',
            ['error_type', 'component'],
            registry=self.registry
        )

        self.security_events = Counter(
            'tablestream_security_events_total',
            'Total security events',
            ['event_type', 'severity'],
            registry=self.registry
        )

    def record_query(self, duration: float, status: str):
        """Record query execution metrics."""
        self.query_counter.labels(status=status).inc()
        self.query_duration.observe(duration)

    def record_chunk(self, rows: int):
        """Record one emitted data chunk."""
        self.chunks_emitted.inc()
        self.rows_streamed.inc(rows)

    def record_error(self, error_type: str, component: str):
        """Record error metrics."""
        self.error_counter.labels(error_type=error_type, component=component).inc()

    def record_security_event(self, event_type: str, severity: str):
        """Record security event metrics."""
        self.security_events.labels(event_type=event_type, severity=severity).inc()

    def set_active_sessions(self, count: int):
        """Update the live session gauge."""
        self.active_sessions.set(count)

    def record_expired_sessions(self, count: int):
        """Record sessions removed by the idle sweep."""
        if count > 0:
            self.sessions_expired.inc(count)

    def get_metrics(self) -> bytes:
        """Get metrics in Prometheus exposition format."""
        return generate_latest(self.registry)


class LoggingManager:
    """Centralized structured logging manager."""

    _instance: Optional['LoggingManager'] = None
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        """Singleton implementation."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
            return cls._instance

    def __init__(self, config: Optional[LoggingConfig] = None,
                 registry: Optional[CollectorRegistry] = None):
        """Initialize logging manager.

        Args:
            config: Logging configuration. Uses default if None.
            registry: Prometheus registry for the metrics collector.
        """
        # Prevent re-initialization in singleton
        if hasattr(self, '_initialized'):
            return

        self.config = config or LoggingConfig()
        self.metrics = MetricsCollector(registry)
        self._context = threading.local()
        self._initialized = True

        self._configure_structlog()
        self._configure_stdlib_logging()

        self.logger = structlog.get_logger("tablestream_mcp")

        self.logger.debug("Structured logging system initialized",
                          level=self.config.level.value,
                          file_path=self.config.file_path)

    def _configure_structlog(self):
        """Configure structlog with processors and renderers."""
        processors = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            self._add_context,
            self._add_correlation_id,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
        ]

        if self.config.level != LogLevel.DEBUG:
            processors.append(structlog.processors.format_exc_info)
            processors.append(structlog.processors.JSONRenderer())
        else:
            processors.append(structlog.dev.ConsoleRenderer(colors=True))

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.stdlib.BoundLogger,
            logger_factory=structlog.stdlib.LoggerFactory(),
            context_class=dict,
            cache_logger_on_first_use=True,
        )

    def _configure_stdlib_logging(self):
        """Configure standard library logging integration."""
        root_logger = logging.getLogger()
        root_logger.handlers.clear()

        level_map = {
            LogLevel.DEBUG: logging.DEBUG,
            LogLevel.INFO: logging.INFO,
            LogLevel.WARNING: logging.WARNING,
            LogLevel.ERROR: logging.ERROR,
            LogLevel.CRITICAL: logging.CRITICAL
        }
        root_logger.setLevel(level_map[self.config.level])

        # stdout carries the stdio transport's protocol, so logs go to stderr
        if self.config.console_output:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(level_map[self.config.level])
            console_handler.setFormatter(logging.Formatter('%(message)s'))
            root_logger.addHandler(console_handler)

        if self.config.file_path:
            file_path = Path(self.config.file_path)
            file_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                file_path,
                maxBytes=self.config.max_file_size,
                backupCount=self.config.backup_count
            )
            file_handler.setLevel(level_map[self.config.level])
            file_handler.setFormatter(logging.Formatter('%(message)s'))
            root_logger.addHandler(file_handler)

    def _add_context(self, logger, method_name, event_dict):
        """Add context information to log entries."""
        context = getattr(self._context, 'context', None)
        if context:
            for key, value in context.to_dict().items():
                event_dict.setdefault(key, value)
        return event_dict

    def _add_correlation_id(self, logger, method_name, event_dict):
        """Add correlation ID to log entries."""
        if 'request_id' not in event_dict:
            event_dict['request_id'] = str(uuid.uuid4())
        return event_dict

    @contextmanager
    def context(self, **kwargs):
        """Context manager for structured logging context.

        Example:
            with logging_manager.context(operation="query", session_id=sid):
                logger.info("Executing query")
        """
        old_context = getattr(self._context, 'context', None)

        if old_context:
            new_context = LogContext(**{**old_context.__dict__, **kwargs})
        else:
            new_context = LogContext(**kwargs)

        self._context.context = new_context

        try:
            yield new_context
        finally:
            self._context.context = old_context

    def clear_context(self):
        """Clear current thread context."""
        self._context.context = None

    def log_query_start(self, query: str, session_id: Optional[str] = None) -> str:
        """Log query execution start and return request ID for tracking."""
        request_id = str(uuid.uuid4())

        with self.context(
            request_id=request_id,
            session_id=session_id,
            operation="query_start",
            query_hash=query_hash(query)
        ):
            self.logger.info(
                "Query execution started",
                query_length=len(query),
                query_preview=query[:200]
            )

        return request_id

    def log_query_complete(self, request_id: str, duration: float,
                           row_count: int, chunk_count: int,
                           success: bool = True,
                           session_id: Optional[str] = None):
        """Log query completion (or failure) with totals."""
        status = "success" if success else "error"

        with self.context(
            request_id=request_id,
            session_id=session_id,
            operation="query_complete"
        ):
            log = self.logger.info
            if success and duration >= self.config.slow_query_threshold:
                log = self.logger.warning
            log(
                "Query execution completed",
                duration=duration,
                row_count=row_count,
                chunk_count=chunk_count,
                status=status,
                performance_category=self._categorize_performance(duration)
            )

        self.metrics.record_query(duration, status)

    def log_security_event(self, event_type: str, severity: str,
                           description: str, **context):
        """Log security events such as blocked queries."""
        if self.config.log_blocked_queries:
            with self.context(operation="security_event"):
                self.logger.warning(
                    f"Security event: {description}",
                    event_type=event_type,
                    severity=severity,
                    **context
                )

        self.metrics.record_security_event(event_type, severity)

    def log_session_event(self, event: str, session_id: str, active_sessions: int, **context):
        """Log a session lifecycle event (created, reused, terminated, expired)."""
        with self.context(operation=f"session_{event}", session_id=session_id):
            self.logger.info(
                f"Session {event}",
                active_sessions=active_sessions,
                **context
            )
        self.metrics.set_active_sessions(active_sessions)

    def log_error(self, error: Exception, component: str, **context):
        """Log error with structured information."""
        error_type = type(error).__name__

        with self.context(operation="error", component=component):
            self.logger.error(
                f"Error in {component}: {str(error)}",
                error_type=error_type,
                exc_info=error,
                **context
            )

        self.metrics.record_error(error_type, component)

    def _categorize_performance(self, duration: float) -> str:
        """Categorize query performance based on duration."""
        if duration < 0.1:
            return "fast"
        elif duration < 1.0:
            return "normal"
        elif duration < 5.0:
            return "slow"
        else:
            return "very_slow"

    def get_metrics(self) -> bytes:
        """Get Prometheus metrics."""
        return self.metrics.get_metrics()

    def get_logger(self, name: Optional[str] = None):
        """Get structured logger instance."""
        return structlog.get_logger(name)


def query_hash(query: str) -> str:
    """Short stable fingerprint of a query for log correlation."""
    return hashlib.sha1(query.encode('utf-8')).hexdigest()[:12]


# Global logging manager instance
_logging_manager: Optional[LoggingManager] = None


def get_logging_manager(config: Optional[LoggingConfig] = None) -> LoggingManager:
    """Get global logging manager instance.

    Args:
        config: Logging configuration for initialization

    Returns:
        Global LoggingManager instance
    """
    global _logging_manager

    if _logging_manager is None:
        _logging_manager = LoggingManager(config)

    return _logging_manager


def get_logger(name: Optional[str] = None):
    """Get structured logger instance.

    structlog resolves the configuration lazily, so module-level loggers
    created before the manager is configured still pick it up.
    """
    return structlog.get_logger(name)
