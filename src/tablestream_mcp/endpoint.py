"""Per-session protocol endpoint.

A session runs at most one query at a time. ``open_stream`` takes the
session's in-flight lock without blocking; a second request while a stream
is open is rejected with SessionBusyError instead of being interleaved.
"""

import threading
from typing import Any, Callable, Iterator, List, Optional

from .error_handler import SessionBusyError, SessionNotFoundError
from .logging_manager import get_logger
from .models import ChunkEvent
from .query_tool import DbQueryTool

logger = get_logger(__name__)


class EventStream:
    """Pull iterator over one query's events, bound to the session lock.

    The lock is released exactly once: when the terminal event has been
    handed out, when the events run out, or on ``close()``. ``close()`` may
    come from a different thread than the one pulling events.
    """

    def __init__(self, events: Iterator[ChunkEvent], on_close: Callable[['EventStream'], None],
                 cancel: Optional[threading.Event] = None):
        self._events = events
        self._on_close = on_close
        self._cancel = cancel
        self._close_lock = threading.Lock()
        self._closed = False
        self.events_delivered = 0
        self.terminal_event: Optional[ChunkEvent] = None

    @property
    def done(self) -> bool:
        return self._closed

    def __iter__(self):
        return self

    def __next__(self) -> ChunkEvent:
        if self._closed:
            raise StopIteration
        try:
            event = next(self._events)
        except Exception:
            self.close()
            raise

        self.events_delivered += 1
        if event.terminal:
            self.terminal_event = event
            self.close()
        return event

    def close(self):
        """Stop the query and release the session. Idempotent."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        if self._cancel is not None:
            self._cancel.set()
        close = getattr(self._events, 'close', None)
        try:
            if close is not None:
                close()
        finally:
            self._on_close(self)


class QueryEndpoint:
    """Protocol endpoint owned by one session."""

    def __init__(self, tool: DbQueryTool, session_id: Optional[str] = None):
        self.tool = tool
        self.session_id = session_id
        self._in_flight = threading.Lock()
        self._active: Optional[EventStream] = None
        self._cancel: Optional[threading.Event] = None
        self.closed = False

    @property
    def busy(self) -> bool:
        return self._in_flight.locked()

    def list_tools(self) -> List[dict]:
        return [self.tool.get_tool_definition()]

    def open_stream(self, arguments: Any) -> EventStream:
        """Start a query and return its event stream.

        Raises:
            SessionBusyError: another query is still in flight on this session
            SessionNotFoundError: the endpoint was closed by terminate or sweep
        """
        if self.closed:
            raise SessionNotFoundError(self.session_id)
        if not self._in_flight.acquire(blocking=False):
            logger.info("Rejected concurrent query", session_id=self.session_id)
            raise SessionBusyError(self.session_id)

        cancel = threading.Event()
        try:
            events = self.tool.stream_events(arguments, cancel=cancel, session_id=self.session_id)
        except Exception:
            self._in_flight.release()
            raise

        stream = EventStream(events, on_close=self._release, cancel=cancel)
        self._active = stream
        self._cancel = cancel
        return stream

    def _release(self, stream: EventStream):
        if self._active is stream:
            self._active = None
            self._cancel = None
        self._in_flight.release()

    def collect(self, arguments: Any) -> List[ChunkEvent]:
        """Buffered mode: run the query to its terminal event and return every event."""
        stream = self.open_stream(arguments)
        try:
            return list(stream)
        finally:
            stream.close()

    def close(self):
        """Cancel any active stream; the streaming side releases it on its next pull."""
        self.closed = True
        cancel = self._cancel
        if cancel is not None:
            cancel.set()
