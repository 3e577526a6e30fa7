"""Task-scoped publish/subscribe router for live event connections.

Each connection watches at most one task id. ``publish(task_id, ...)``
reaches exactly the connections currently watching that id, found through
a ``task_id -> connection ids`` index kept in step with
subscribe/unsubscribe/unregister.

Outbound messages go through a per-connection FIFO queue. Every enqueue is
handed to the connection's event loop with ``call_soon_threadsafe``, so the
order in which publishers enqueue (they do so while holding the state lock)
is the order the client receives, whichever thread published.
"""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from loguru import logger

from ..constants import OUTBOX_CAPACITY
from ..domain.models import Principal


@dataclass
class Connection:
    id: str
    loop: asyncio.AbstractEventLoop
    # Holds messages and, last, a ``None`` marker that ends the writer.
    outbox: "asyncio.Queue[Optional[dict[str, Any]]]" = field(default_factory=asyncio.Queue)
    principal: Optional[Principal] = None
    task_id: Optional[str] = None
    connected_at: float = field(default_factory=time.time)
    capacity: int = OUTBOX_CAPACITY
    closed: bool = False
    close_code: int = 1000

    def deliver(self, message: dict[str, Any]) -> bool:
        if self.closed:
            return False
        if self.outbox.qsize() >= self.capacity:
            logger.warning("Connection {} outbox full ({} queued); closing", self.id, self.capacity)
            self.close(code=1013)
            return False
        return self._post(message)

    def close(self, message: Optional[dict[str, Any]] = None, *, code: int = 1000) -> None:
        """Queue an optional final message, then the end-of-stream marker."""
        if self.closed:
            return
        if message is not None:
            self._post(message)
        self.closed = True
        self.close_code = code
        self._post(None)

    def _post(self, item: Optional[dict[str, Any]]) -> bool:
        try:
            self.loop.call_soon_threadsafe(self.outbox.put_nowait, item)
        except RuntimeError:
            # Event loop already closed.
            return False
        return True


class TaskEventHub:
    """Connection registry plus the task subscription index.

    Usage::

        hub = TaskEventHub()

        # In a connection handler, on the event loop:
        conn = hub.register()
        hub.subscribe(conn.id, task_id)
        message = await conn.outbox.get()

        # From anywhere in the backend:
        hub.publish(task_id, {"type": "log", "taskId": task_id, "log": {...}})
    """

    def __init__(self, outbox_capacity: int = OUTBOX_CAPACITY) -> None:
        self._outbox_capacity = outbox_capacity
        self._connections: dict[str, Connection] = {}
        self._subscribers: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def register(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> Connection:
        conn = Connection(
            id=uuid.uuid4().hex,
            loop=loop or asyncio.get_running_loop(),
            capacity=self._outbox_capacity,
        )
        with self._lock:
            self._connections[conn.id] = conn
        return conn

    def get(self, conn_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(conn_id)

    def unregister(self, conn_id: str) -> None:
        """Remove a connection and its subscription in one step."""
        with self._lock:
            conn = self._connections.pop(conn_id, None)
            if conn is None:
                return
            conn.closed = True
            self._detach_locked(conn)

    def subscribe(self, conn_id: str, task_id: str) -> None:
        """Point the connection at ``task_id``, replacing any prior subscription."""
        with self._lock:
            conn = self._connections.get(conn_id)
            if conn is None:
                raise KeyError(conn_id)
            self._detach_locked(conn)
            conn.task_id = task_id
            self._subscribers.setdefault(task_id, set()).add(conn_id)

    def unsubscribe(self, conn_id: str) -> Optional[str]:
        with self._lock:
            conn = self._connections.get(conn_id)
            if conn is None:
                return None
            return self._detach_locked(conn)

    def close_topic(self, task_id: str) -> int:
        """Drop every subscription to ``task_id`` (used when a task is deleted)."""
        with self._lock:
            conn_ids = self._subscribers.pop(task_id, set())
            for conn_id in conn_ids:
                conn = self._connections.get(conn_id)
                if conn is not None:
                    conn.task_id = None
            return len(conn_ids)

    def subscribers(self, task_id: str) -> set[str]:
        with self._lock:
            return set(self._subscribers.get(task_id, ()))

    def publish(self, task_id: str, message: dict[str, Any]) -> int:
        """Deliver ``message`` to every connection watching ``task_id``.

        Best effort: connections whose loop is gone are dropped.
        Returns the number of connections the message was handed to.
        """
        with self._lock:
            targets = [self._connections[cid] for cid in self._subscribers.get(task_id, ()) if cid in self._connections]
        delivered = 0
        stale: list[str] = []
        for conn in targets:
            if conn.deliver(message):
                delivered += 1
            else:
                stale.append(conn.id)
        for conn_id in stale:
            logger.debug("Dropping stale connection {}", conn_id)
            self.unregister(conn_id)
        return delivered

    def send(self, conn_id: str, message: dict[str, Any]) -> bool:
        """Send to a single connection."""
        conn = self.get(conn_id)
        if conn is None:
            return False
        if not conn.deliver(message):
            self.unregister(conn_id)
            return False
        return True

    def drop_principal(self, username: str) -> int:
        """Close every connection authenticated as ``username``."""
        return self._close_where(lambda p: p.username == username)

    def drop_session(self, session_id: str) -> int:
        """Close every connection authenticated through ``session_id``."""
        if not session_id:
            return 0
        return self._close_where(lambda p: p.session_id == session_id)

    # -- internals ---------------------------------------------------------

    def _close_where(self, match: Callable[[Principal], bool]) -> int:
        with self._lock:
            doomed = [c for c in self._connections.values() if c.principal is not None and match(c.principal)]
            for conn in doomed:
                del self._connections[conn.id]
                self._detach_locked(conn)
                conn.principal = None
        for conn in doomed:
            conn.close({"type": "error", "error": "Session closed", "code": "unauthorized"}, code=1008)
        if doomed:
            logger.info("Closed {} connection(s) whose session ended", len(doomed))
        return len(doomed)

    def _detach_locked(self, conn: Connection) -> Optional[str]:
        previous = conn.task_id
        if previous is None:
            return None
        watchers = self._subscribers.get(previous)
        if watchers is not None:
            watchers.discard(conn.id)
            if not watchers:
                self._subscribers.pop(previous, None)
        conn.task_id = None
        return previous
