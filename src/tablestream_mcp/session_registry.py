"""Session registry with idle expiry.

Maps opaque session ids to live QueryEndpoints. Sessions are created on an
absent or unknown id, and removed by an explicit terminate or by the
background sweep once ``now - last_accessed`` exceeds the TTL.
"""

import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .error_handler import ConfigurationError
from .endpoint import QueryEndpoint
from .logging_manager import LoggingManager, get_logger, get_logging_manager

logger = get_logger(__name__)


@dataclass
class StreamSession:
    id: str
    endpoint: QueryEndpoint
    created_at: float
    last_accessed: float


class SessionRegistry:
    """Owns every live session and the sweep thread that expires idle ones."""

    def __init__(self,
                 endpoint_factory: Callable[[str], QueryEndpoint],
                 ttl_seconds: float = 1800,
                 sweep_interval: float = 300,
                 clock: Callable[[], float] = time.monotonic,
                 logging_manager: Optional[LoggingManager] = None,
                 id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        if ttl_seconds <= 0:
            raise ConfigurationError("ttl_seconds must be positive", config_key='ttl_seconds')
        if sweep_interval <= 0:
            raise ConfigurationError("sweep_interval must be positive", config_key='sweep_interval')

        self._endpoint_factory = endpoint_factory
        self.ttl_seconds = ttl_seconds
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._logging = logging_manager or get_logging_manager()
        self._id_factory = id_factory

        self._sessions: Dict[str, StreamSession] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get(self, session_id: str) -> Optional[StreamSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def resolve(self, session_id: Optional[str] = None) -> Tuple[str, QueryEndpoint]:
        """Return the live session for ``session_id`` or create a new one.

        A known id has its ``last_accessed`` refreshed. An unknown id starts a
        new session under that id; an absent id gets a generated one.
        """
        now = self._clock()
        created = False
        with self._lock:
            session = self._sessions.get(session_id) if session_id else None
            if session is not None:
                session.last_accessed = now
            else:
                new_id = session_id or self._id_factory()
                session = StreamSession(new_id, self._endpoint_factory(new_id), now, now)
                self._sessions[new_id] = session
                created = True
            count = len(self._sessions)

        if created:
            self._logging.log_session_event("created", session.id, count,
                                            requested_id=session_id)
        else:
            logger.debug("Session reused", session_id=session.id)
        return session.id, session.endpoint

    def terminate(self, session_id: str) -> bool:
        """Remove a session and close its endpoint. False when the id is unknown."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
            count = len(self._sessions)
        if session is None:
            logger.info("Terminate for unknown session", session_id=session_id)
            return False

        session.endpoint.close()
        self._logging.log_session_event("terminated", session_id, count)
        return True

    def sweep(self) -> int:
        """Remove sessions idle for longer than the TTL; returns how many were removed.

        A session with a query in flight is kept until the query ends.
        """
        now = self._clock()
        with self._lock:
            expired = [
                session for session in self._sessions.values()
                if now - session.last_accessed > self.ttl_seconds and not session.endpoint.busy
            ]
            for session in expired:
                del self._sessions[session.id]
            count = len(self._sessions)

        for session in expired:
            session.endpoint.close()
            self._logging.log_session_event("expired", session.id, count,
                                            idle_seconds=round(now - session.last_accessed, 1))

        self._logging.metrics.record_expired_sessions(len(expired))
        self._logging.metrics.set_active_sessions(count)
        return len(expired)

    def close_all(self) -> int:
        with self._lock:
            sessions: List[StreamSession] = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.endpoint.close()
        self._logging.metrics.set_active_sessions(0)
        return len(sessions)

    def start(self):
        """Start the background sweep thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="tablestream-session-sweep",
                                        daemon=True)
        self._thread.start()
        logger.info("Session sweep started", ttl_seconds=self.ttl_seconds,
                    sweep_interval=self.sweep_interval)

    def _run(self):
        while not self._stop.wait(self.sweep_interval):
            try:
                removed = self.sweep()
            except Exception as e:
                self._logging.log_error(e, "session_registry")
                continue
            if removed:
                logger.info("Expired idle sessions", removed=removed)

    def stop(self, timeout: float = 5.0):
        """Stop the sweep thread and wait for it to exit."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
