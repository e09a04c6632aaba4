"""Event protocol encoder.

Turns the lifecycle of one query into the ordered chunk event sequence::

    QueryStarted, DataChunk*, (QueryCompleted | QueryFailed)

The encoder is a pull iterator driven by a small state machine
(Idle -> Started -> Streaming -> Completed | Failed). Nothing is read from the
store until the consumer asks for the next event, and each event is handed
over before the next one is produced. Cancelling (client gone) ends the
iteration without a terminal event.
"""

import threading
import time
from enum import Enum
from typing import Callable, Iterator, Optional

from .error_handler import QueryTimeoutError, TableStreamError, error_message
from .executor import RecordStream, TabularQueryExecutor
from .logging_manager import LoggingManager, get_logger, get_logging_manager
from .models import ChunkEvent, DataChunk, Query, QueryCompleted, QueryFailed, QueryStarted, Record
from .sequencer import ChunkSequencer, regroup

logger = get_logger(__name__)


class EncoderState(Enum):
    IDLE = "idle"
    STARTED = "started"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class _Cancelled(Exception):
    """Raised inside the record pipeline when the consumer has gone away."""


class QueryEventEncoder:
    """Pull iterator over the chunk events of one query."""

    def __init__(self,
                 executor: TabularQueryExecutor,
                 query: Query,
                 chunk_size: int = 5,
                 pacing_delay: float = 0.0,
                 query_timeout: Optional[float] = None,
                 cancel: Optional[threading.Event] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 logging_manager: Optional[LoggingManager] = None,
                 session_id: Optional[str] = None):
        if pacing_delay < 0:
            raise ValueError("pacing_delay must be non-negative")
        self.executor = executor
        self.query = query
        self.pacing_delay = pacing_delay
        self.query_timeout = query_timeout
        self.cancel = cancel or threading.Event()
        self.session_id = session_id
        self._sleep = sleep
        self._clock = clock
        self._logging = logging_manager or get_logging_manager()

        # fails fast on a bad chunk size; no record is pulled yet
        self._record_source = self._guarded_records()
        self._batches: ChunkSequencer = regroup(self._record_source, chunk_size)
        self._records: Optional[RecordStream] = None
        self._pending_failure: Optional[BaseException] = None
        self._started_at: Optional[float] = None
        self._request_id: Optional[str] = None
        self._closed = False
        self._released = False
        self._lock = threading.Lock()
        self.state = EncoderState.IDLE
        self.total_rows = 0
        self.total_chunks = 0

    @property
    def done(self) -> bool:
        return self._closed or self.state in (EncoderState.COMPLETED, EncoderState.FAILED)

    def __iter__(self) -> Iterator[ChunkEvent]:
        return self

    @property
    def _stopping(self) -> bool:
        return self._closed or self.cancel.is_set()

    def __next__(self) -> ChunkEvent:
        try:
            with self._lock:
                return self._next_event()
        finally:
            self._drain()

    def _next_event(self) -> ChunkEvent:
        if self.done:
            raise StopIteration
        if self._stopping:
            self._abandon()

        if self.state is EncoderState.IDLE:
            return self._start()
        return self._advance()

    def _start(self) -> QueryStarted:
        self._started_at = self._clock()
        self._request_id = self._logging.log_query_start(self.query.text, session_id=self.session_id)
        try:
            columns = self.executor.probe_columns(self.query)
        except TableStreamError as e:
            # reported as the terminal event right after QueryStarted
            self._pending_failure = e
            columns = ()
        self.state = EncoderState.STARTED
        return QueryStarted(query=self.executor.prepare_sql(self.query), columns=tuple(columns))

    def _advance(self) -> ChunkEvent:
        if self._pending_failure is not None:
            return self._fail(self._pending_failure)

        if self.state is EncoderState.STREAMING and self.pacing_delay > 0:
            self._sleep(self.pacing_delay)
            if self._stopping:
                self._abandon()

        try:
            self._check_deadline()
            batch = next(self._batches)
        except StopIteration:
            return self._complete()
        except _Cancelled:
            self._abandon()
        except TableStreamError as e:
            return self._fail(e)
        except Exception as e:
            self._logging.log_error(e, "encoder", query=self.query.text[:200])
            return self._fail(e)

        self.state = EncoderState.STREAMING
        self.total_chunks = batch.index
        self.total_rows = batch.rows_so_far
        self._logging.metrics.record_chunk(batch.rows_in_chunk)
        return DataChunk(rows=batch.rows, index=batch.index,
                         rows_in_chunk=batch.rows_in_chunk, rows_so_far=batch.rows_so_far)

    def _guarded_records(self) -> Iterator[Record]:
        self._records = self.executor.run(self.query)
        for record in self._records:
            if self._stopping:
                raise _Cancelled()
            self._check_deadline()
            yield record

    def _check_deadline(self):
        if self.query_timeout is None or self._started_at is None:
            return
        elapsed = self._clock() - self._started_at
        if elapsed > self.query_timeout:
            raise QueryTimeoutError(self.query_timeout, elapsed, query=self.query.text,
                                    rows_produced=self.total_rows)

    def _elapsed(self) -> float:
        return self._clock() - self._started_at if self._started_at is not None else 0.0

    def _complete(self) -> QueryCompleted:
        elapsed = self._elapsed()
        self.state = EncoderState.COMPLETED
        self._release()
        self._logging.log_query_complete(self._request_id, elapsed, self.total_rows,
                                         self.total_chunks, success=True,
                                         session_id=self.session_id)
        return QueryCompleted(total_rows=self.total_rows, total_chunks=self.total_chunks,
                              elapsed_millis=int(round(elapsed * 1000)))

    def _fail(self, error: BaseException) -> QueryFailed:
        self.state = EncoderState.FAILED
        self._release()
        logger.warning("Query failed", error=error_message(error),
                       rows_delivered=self.total_rows, chunks_delivered=self.total_chunks)
        self._logging.log_query_complete(self._request_id, self._elapsed(), self.total_rows,
                                         self.total_chunks, success=False,
                                         session_id=self.session_id)
        return QueryFailed(message=error_message(error))

    def _abandon(self):
        logger.info("Query stream cancelled", rows_delivered=self.total_rows,
                    chunks_delivered=self.total_chunks, session_id=self.session_id)
        self.close()
        raise StopIteration

    def _release(self):
        if self._released:
            return
        self._released = True
        try:
            self._record_source.close()
        finally:
            if self._records is not None:
                self._records.close()

    def _drain(self):
        # the cursor is released by whichever thread holds the lock last
        while self._closed and not self._released:
            if not self._lock.acquire(blocking=False):
                return
            try:
                self._release()
            finally:
                self._lock.release()

    def close(self):
        """Stop producing events and release the store cursor. Idempotent.

        May be called from another thread while a pull is running. The
        cancel event is set so the pull stops at its next record, and the
        pulling thread releases the cursor on its way out.
        """
        self._closed = True
        self.cancel.set()
        self._drain()
