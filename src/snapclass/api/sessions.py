"""In-memory registry of classification sessions driven over HTTP."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from snapclass.core.session import ClassificationSession
from snapclass.core.state import Analyzing

if TYPE_CHECKING:
    from snapclass.core.session import Dispatcher, ImageResolver
    from snapclass.core.state import PersistedState

logger = logging.getLogger(__name__)


@dataclass
class SessionHandle:
    """A session plus the one-shot messages waiting for the client."""

    session_id: str
    session: ClassificationSession = field(repr=False)
    messages: deque[str] = field(default_factory=deque)
    last_used: float = field(default_factory=time.monotonic)

    def drain_messages(self) -> list[str]:
        drained: list[str] = []
        while self.messages:
            drained.append(self.messages.popleft())
        return drained


class SessionRegistry:
    """Creates, restores, and looks up sessions by id.

    Sessions untouched for longer than ``session_ttl`` seconds are dropped by
    ``evict_idle``. A TTL of 0 keeps sessions until they are removed.
    """

    def __init__(self, image_source: ImageResolver, client: Dispatcher, session_ttl: int = 0) -> None:
        self._image_source = image_source
        self._client = client
        self._session_ttl = session_ttl
        self._lock = threading.Lock()
        self._handles: dict[str, SessionHandle] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def create(self) -> SessionHandle:
        messages: deque[str] = deque()
        session = ClassificationSession(self._image_source, self._client, messages.append)
        return self._register(session, messages)

    def restore(self, persisted: PersistedState) -> SessionHandle:
        messages: deque[str] = deque()
        session = ClassificationSession.restore(persisted, self._image_source, self._client, messages.append)
        return self._register(session, messages)

    def get(self, session_id: str) -> SessionHandle | None:
        with self._lock:
            handle = self._handles.get(session_id)
            if handle is not None:
                handle.last_used = time.monotonic()
            return handle

    def remove(self, session_id: str) -> bool:
        with self._lock:
            removed = self._handles.pop(session_id, None)
        if removed is not None:
            logger.info("Closed session %s", session_id)
        return removed is not None

    def evict_idle(self) -> int:
        """Drop sessions idle past the TTL. In-flight analyses are kept."""
        ttl = self._session_ttl
        if ttl == 0:
            return 0

        now = time.monotonic()
        with self._lock:
            expired = [
                session_id
                for session_id, handle in self._handles.items()
                if (now - handle.last_used) > ttl and not isinstance(handle.session.state, Analyzing)
            ]
            for session_id in expired:
                del self._handles[session_id]
                logger.info("Evicted idle session %s", session_id)
        return len(expired)

    def _register(self, session: ClassificationSession, messages: deque[str]) -> SessionHandle:
        handle = SessionHandle(session_id=uuid.uuid4().hex, session=session, messages=messages)
        with self._lock:
            self._handles[handle.session_id] = handle
        logger.info("Opened session %s (%s)", handle.session_id, session.state.status)
        return handle
