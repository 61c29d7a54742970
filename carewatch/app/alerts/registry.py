"""
registry.py — Live push connections, keyed by user.

═══════════════════════════════════════════════════════════════════════════
CONNECTION MODEL
═══════════════════════════════════════════════════════════════════════════

    user_id ──► (LiveConnection, LiveConnection, ...)     one per tab/device
                      │
                      └── bounded outbound queue ──► SSE stream generator

    • send() never blocks: it offers the frame to each connection's queue.
      A full queue or a closed/expired connection counts as dead and the
      handle is pruned on the spot. No retry at this layer.
    • Per-connection ordering is the queue's FIFO order.
    • The per-user tuple is replaced, never mutated (copy-on-write), so a
      send iterating a snapshot is unaffected by concurrent add/remove.
    • Every connection has a hard lifetime (SSE_CONNECTION_TIMEOUT_SECONDS)
      after which its stream ends and the client reconnects.

The registry knows nothing about alerts. Payloads are JSON-encoded once per
send and shared by every recipient connection.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

from carewatch.app.alerts.models import PushEvent
from carewatch.app.core.config import settings
from carewatch.app.core.errors import ServiceUnavailableError

logger = logging.getLogger(__name__)

_CLOSE = object()
_event_ids = itertools.count(1)


@dataclass(frozen=True)
class PushMessage:
    event: str
    data: str
    id: int

    def to_sse(self) -> str:
        return f"id: {self.id}\nevent: {self.event}\ndata: {self.data}\n\n"


def encode_message(event: str, payload: Any) -> PushMessage:
    if isinstance(event, PushEvent):
        event = event.value
    data = json.dumps(payload, default=str, ensure_ascii=False)
    return PushMessage(event=event, data=data, id=next(_event_ids))


class LiveConnection:
    """One open push stream for one user."""

    def __init__(
        self,
        user_id: int,
        *,
        lifetime_seconds: float,
        queue_max_size: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.id = uuid.uuid4().hex[:12]
        self.user_id = user_id
        self._clock = clock
        self.opened_at = clock()
        self.expires_at = self.opened_at + lifetime_seconds
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_max_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def expired(self) -> bool:
        return self._clock() >= self.expires_at

    def offer(self, message: PushMessage) -> bool:
        """Queue a frame; False means the connection is dead."""
        if self._closed or self.expired():
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake the stream. A full buffer drops its oldest frames to make room.
        while True:
            try:
                self._queue.put_nowait(_CLOSE)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    async def messages(self) -> AsyncIterator[PushMessage]:
        """Yield queued frames until closed or the lifetime runs out."""
        while True:
            remaining = self.expires_at - self._clock()
            if remaining <= 0:
                return
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=remaining)
            except asyncio.TimeoutError:
                return
            if item is _CLOSE:
                return
            yield item

    def __repr__(self) -> str:
        return f"<LiveConnection {self.id} user={self.user_id} closed={self._closed}>"


class ConnectionRegistry:
    """Process-wide map of user id → live connections."""

    def __init__(
        self,
        *,
        lifetime_seconds: Optional[float] = None,
        queue_max_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.lifetime_seconds = (
            settings.SSE_CONNECTION_TIMEOUT_SECONDS if lifetime_seconds is None else lifetime_seconds
        )
        self.queue_max_size = settings.SSE_QUEUE_MAX_SIZE if queue_max_size is None else queue_max_size
        self._clock = clock
        self._connections: Dict[int, Tuple[LiveConnection, ...]] = {}
        self._lock = threading.Lock()
        self._open = True

    # ── Membership ──

    def subscribe(self, user_id: int) -> LiveConnection:
        """Register a new handle and queue the `connected` acknowledgment."""
        if not self._open:
            raise ServiceUnavailableError("Live push is shutting down", user_id=user_id)
        conn = LiveConnection(
            user_id,
            lifetime_seconds=self.lifetime_seconds,
            queue_max_size=self.queue_max_size,
            clock=self._clock,
        )
        with self._lock:
            self._connections[user_id] = self._connections.get(user_id, ()) + (conn,)
            count = len(self._connections[user_id])

        conn.offer(encode_message(PushEvent.CONNECTED, {
            "message": "connected",
            "userId": user_id,
            "connectionId": conn.id,
            "timestamp": _utc_iso(),
        }))
        logger.info(
            "SSE connected: user=%s conn=%s (user connections=%d)",
            user_id, conn.id, count,
            extra={"user_id": user_id, "connection_count": count},
        )
        return conn

    def remove(self, conn: LiveConnection) -> None:
        """Drop one handle (stream ended, timed out, or send failed)."""
        conn.close()
        with self._lock:
            current = self._connections.get(conn.user_id, ())
            remaining = tuple(c for c in current if c is not conn)
            if len(remaining) == len(current):
                return
            if remaining:
                self._connections[conn.user_id] = remaining
            else:
                del self._connections[conn.user_id]
        logger.debug("SSE removed: user=%s conn=%s", conn.user_id, conn.id)

    def unsubscribe(self, user_id: int) -> int:
        """Force-close and drop every handle for a user."""
        with self._lock:
            handles = self._connections.pop(user_id, ())
        for conn in handles:
            conn.close()
        if handles:
            logger.info("SSE unsubscribed: user=%s (%d connections closed)", user_id, len(handles))
        return len(handles)

    # ── Delivery ──

    def send(self, user_id: int, event: str, payload: Any) -> bool:
        """True when at least one of the user's connections accepted the frame."""
        handles = self._connections.get(user_id, ())
        if not handles:
            logger.debug("No live connection for user %s (%s)", user_id, event)
            return False
        return self._deliver(handles, encode_message(event, payload)) > 0

    def send_many(self, user_ids: Iterable[int], event: str, payload: Any) -> int:
        """Send the same frame to several users; returns how many got it."""
        message = encode_message(event, payload)
        delivered = 0
        for user_id in user_ids:
            handles = self._connections.get(user_id, ())
            if handles and self._deliver(handles, message) > 0:
                delivered += 1
        return delivered

    def broadcast(self, event: str, payload: Any) -> int:
        message = encode_message(event, payload)
        return sum(self._deliver(handles, message) for handles in self._snapshot())

    def heartbeat(self) -> int:
        """Ping every handle; returns how many were pruned as dead."""
        message = encode_message(PushEvent.HEARTBEAT, {"timestamp": _utc_iso()})
        before = self.connection_count()
        for handles in self._snapshot():
            self._deliver(handles, message)
        pruned = before - self.connection_count()
        if pruned > 0:
            logger.info("Heartbeat pruned %d dead connection(s)", pruned)
        return max(pruned, 0)

    def _deliver(self, handles: Tuple[LiveConnection, ...], message: PushMessage) -> int:
        delivered = 0
        for conn in handles:
            if conn.offer(message):
                delivered += 1
            else:
                logger.info(
                    "SSE send failed, dropping conn=%s user=%s (%s)",
                    conn.id, conn.user_id, "expired" if conn.expired() else "dead",
                )
                self.remove(conn)
        return delivered

    def _snapshot(self) -> List[Tuple[LiveConnection, ...]]:
        with self._lock:
            return list(self._connections.values())

    # ── Introspection ──

    @property
    def closed(self) -> bool:
        return not self._open

    def is_connected(self, user_id: int) -> bool:
        return bool(self._connections.get(user_id))

    def connections_for(self, user_id: int) -> int:
        return len(self._connections.get(user_id, ()))

    def connected_user_count(self) -> int:
        return len(self._connections)

    def connection_count(self) -> int:
        return sum(len(h) for h in self._snapshot())

    def stats(self) -> Dict[str, Any]:
        return {
            "connected_users": self.connected_user_count(),
            "total_connections": self.connection_count(),
            "timestamp": _utc_iso(),
        }

    # ── Lifecycle ──

    def close_all(self) -> int:
        """Shutdown: force-close every handle and refuse new subscriptions."""
        self._open = False
        with self._lock:
            all_handles = [c for handles in self._connections.values() for c in handles]
            self._connections.clear()
        for conn in all_handles:
            conn.close()
        logger.info("Connection registry closed (%d connections)", len(all_handles))
        return len(all_handles)


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
