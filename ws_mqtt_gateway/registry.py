"""
Client registry for connected browser WebSockets.

Handles:
- Tracking OPEN/CLOSING connections keyed by connection id
- Broadcast to every open connection (serialize once, isolate failures)
- Unicast replies to a single connection
- Closing everything on shutdown
"""

import asyncio
import itertools
import logging
import threading
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .messages import encode

logger = logging.getLogger(__name__)

# Seconds a single send may take before the client is considered stalled
DEFAULT_SEND_TIMEOUT = 5.0

# Close code for clients dropped after a failed or stalled send (internal error)
SEND_FAILURE_CLOSE_CODE = 1011


class ConnectionState(str, Enum):
    """Liveness of a client connection."""
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class ClientConnection:
    """
    Handle for one browser WebSocket.

    Wraps anything with async `send_text(str)` and `close(code)` methods
    (a Starlette/FastAPI WebSocket in production).
    """

    def __init__(self, connection_id: str, websocket: Any, remote: Optional[str] = None):
        self.connection_id = connection_id
        self.websocket = websocket
        self.remote = remote
        self.state = ConnectionState.OPEN

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    async def send_text(self, text: str) -> None:
        if not self.is_open:
            raise ConnectionError(f"{self.connection_id} is {self.state.value}")
        await self.websocket.send_text(text)

    async def close(self, code: int = 1001) -> None:
        """Close the socket; the connection ends up CLOSED even if close fails."""
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSING
        try:
            await self.websocket.close(code=code)
        finally:
            self.state = ConnectionState.CLOSED

    def __repr__(self) -> str:
        return f"ClientConnection({self.connection_id!r}, {self.state.value})"


class ClientRegistry:
    """
    Set of connected clients.

    Membership is guarded by a threading.Lock that is only held while
    mutating or snapshotting, never across an await. Sends happen on a
    snapshot, so connections may come and go during a broadcast.

    Every send is bounded by send_timeout. A client that fails or stalls
    is unregistered and its socket closed, so one slow reader never holds
    up delivery to the others.
    """

    def __init__(self, send_timeout: float = DEFAULT_SEND_TIMEOUT):
        self.send_timeout = send_timeout
        self._connections: Dict[str, ClientConnection] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

        # Statistics
        self._broadcasts = 0
        self._send_failures = 0

    def next_connection_id(self) -> str:
        """Allocate a unique connection id."""
        with self._lock:
            return f"client_{next(self._ids)}"

    def register(self, conn: ClientConnection) -> None:
        """Add a connection; registering twice is a no-op."""
        with self._lock:
            if conn.connection_id in self._connections:
                return
            self._connections[conn.connection_id] = conn
            count = len(self._connections)
        logger.info(f"Client registered: {conn.connection_id} ({count} connected)")

    def unregister(self, conn: Union[ClientConnection, str]) -> bool:
        """
        Remove a connection by handle or id.

        Returns:
            True if the connection was a member
        """
        connection_id = conn if isinstance(conn, str) else conn.connection_id
        with self._lock:
            removed = self._connections.pop(connection_id, None)
            count = len(self._connections)
        if removed is None:
            return False
        logger.info(f"Client unregistered: {connection_id} ({count} connected)")
        return True

    def get(self, connection_id: str) -> Optional[ClientConnection]:
        with self._lock:
            return self._connections.get(connection_id)

    def connection_ids(self) -> List[str]:
        with self._lock:
            return list(self._connections)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, item: Union[ClientConnection, str]) -> bool:
        connection_id = item if isinstance(item, str) else item.connection_id
        with self._lock:
            return connection_id in self._connections

    def _open_connections(self) -> List[ClientConnection]:
        with self._lock:
            return [c for c in self._connections.values() if c.is_open]

    async def _deliver(self, conn: ClientConnection, text: str) -> bool:
        try:
            await asyncio.wait_for(conn.send_text(text), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            reason = f"no progress after {self.send_timeout}s"
        except Exception as e:
            reason = str(e)
        self._send_failures += 1
        logger.warning(f"Send to {conn.connection_id} failed, dropping client: {reason}")
        await self._drop(conn)
        return False

    async def _drop(self, conn: ClientConnection) -> None:
        """Unregister a connection and close its socket so its receive loop ends."""
        self.unregister(conn)
        if conn.state is not ConnectionState.OPEN:
            return
        try:
            await asyncio.wait_for(conn.close(code=SEND_FAILURE_CLOSE_CODE), timeout=self.send_timeout)
        except Exception as e:
            logger.debug(f"Error closing {conn.connection_id}: {e}")

    async def broadcast(self, message: Dict[str, Any]) -> int:
        """
        Send a message to every open connection.

        Failures are isolated: the failing connection is removed and the
        rest still receive the message.

        Returns:
            Number of connections the message was delivered to
        """
        text = encode(message)
        targets = self._open_connections()
        self._broadcasts += 1
        if not targets:
            return 0

        results = await asyncio.gather(*(self._deliver(conn, text) for conn in targets))
        return sum(1 for ok in results if ok)

    async def send(self, connection_id: str, message: Dict[str, Any]) -> bool:
        """
        Send a message to a single connection.

        Returns:
            True if delivered
        """
        conn = self.get(connection_id)
        if conn is None or not conn.is_open:
            logger.debug(f"Reply to {connection_id} dropped, connection is gone")
            return False
        return await self._deliver(conn, encode(message))

    async def close_all(self, code: int = 1001) -> None:
        """Close and unregister every connection."""
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()

        for conn in connections:
            try:
                await conn.close(code=code)
            except Exception as e:
                logger.debug(f"Error closing {conn.connection_id}: {e}")
        if connections:
            logger.info(f"Closed {len(connections)} client connection(s)")

    def get_stats(self) -> dict:
        """Get registry statistics."""
        return {
            "connected_clients": len(self),
            "broadcasts": self._broadcasts,
            "send_failures": self._send_failures,
        }
