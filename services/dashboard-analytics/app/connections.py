"""Registry of live-update connections.

A connection moves Connecting -> Connected -> Subscribed -> Disconnected.
Subscribed only means the connection has joined a group or holds a
subscription; leaving the last one returns it to Connected. Disconnected is
terminal: a client that reconnects gets a new connection.
"""

import asyncio
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .core.logging import get_logger
from .instrumentation import LIVE_CONNECTIONS, LIVE_MESSAGES_DROPPED

logger = get_logger("connections")

METRICS_GROUP = "metrics"

_CLOSED: Any = object()


class ConnectionState(str, Enum):
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    SUBSCRIBED = "Subscribed"
    DISCONNECTED = "Disconnected"


class ConnectionClosedError(RuntimeError):
    pass


class LiveConnection:
    """One client connection with its own bounded outbound buffer.

    ``send`` never blocks: when the buffer is full the oldest message is
    discarded, so a slow client only loses its own backlog.
    """

    def __init__(self, transport: str, user_id: Optional[str] = None, buffer_size: int = 100):
        self.id = str(uuid.uuid4())
        self.transport = transport
        self.user_id = user_id
        self.state = ConnectionState.CONNECTING
        self.groups: Set[str] = set()
        self.subscriptions: Dict[str, str] = {}
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)

    def __repr__(self) -> str:
        return f"<LiveConnection {self.id} {self.transport} {self.state.value}>"

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def send(self, message: Dict[str, Any]) -> bool:
        if self.state is ConnectionState.DISCONNECTED:
            return False
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            LIVE_MESSAGES_DROPPED.inc()
        self._queue.put_nowait(message)
        return True

    async def pump(self, write: Callable[[Dict[str, Any]], Awaitable[None]]) -> None:
        """Drain the buffer into ``write`` until the connection is closed."""
        while True:
            message = await self._queue.get()
            if message is _CLOSED:
                return
            await write(message)

    def close(self) -> None:
        self.state = ConnectionState.DISCONNECTED
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def refresh_state(self) -> None:
        if self.state in (ConnectionState.CONNECTED, ConnectionState.SUBSCRIBED):
            subscribed = bool(self.groups or self.subscriptions)
            self.state = ConnectionState.SUBSCRIBED if subscribed else ConnectionState.CONNECTED


class ConnectionRegistry:
    def __init__(self, buffer_size: int = 100):
        self.buffer_size = buffer_size
        self._connections: Dict[str, LiveConnection] = {}
        self._groups: Dict[str, Set[str]] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def open(self, transport: str, user_id: Optional[str] = None) -> LiveConnection:
        connection = LiveConnection(transport, user_id=user_id, buffer_size=self.buffer_size)
        self._connections[connection.id] = connection
        return connection

    def mark_connected(self, connection: LiveConnection) -> None:
        self._require_open(connection)
        if connection.state is ConnectionState.CONNECTING:
            connection.state = ConnectionState.CONNECTED
            LIVE_CONNECTIONS.labels(transport=connection.transport).inc()
            logger.info(f"Client connected: {connection.id} ({connection.transport}, user {connection.user_id})")

    def join_group(self, connection: LiveConnection, group: str) -> None:
        self._require_active(connection)
        connection.groups.add(group)
        self._groups.setdefault(group, set()).add(connection.id)
        connection.refresh_state()
        logger.info(f"Client {connection.id} joined group {group}")

    def leave_group(self, connection: LiveConnection, group: str) -> None:
        self._require_active(connection)
        connection.groups.discard(group)
        self._discard_member(group, connection.id)
        connection.refresh_state()
        logger.info(f"Client {connection.id} left group {group}")

    def subscribe(self, connection: LiveConnection, subscription_id: str, topic: str) -> None:
        self._require_active(connection)
        if subscription_id in connection.subscriptions:
            raise ValueError(f"Subscription {subscription_id} already exists")
        connection.subscriptions[subscription_id] = topic
        connection.refresh_state()

    def unsubscribe(self, connection: LiveConnection, subscription_id: str) -> bool:
        self._require_active(connection)
        removed = connection.subscriptions.pop(subscription_id, None) is not None
        connection.refresh_state()
        return removed

    def disconnect(self, connection: LiveConnection) -> None:
        """Remove the connection from every group and subscription. Idempotent."""
        if connection.state is ConnectionState.DISCONNECTED:
            return
        was_counted = connection.state is not ConnectionState.CONNECTING
        for group in list(connection.groups):
            self._discard_member(group, connection.id)
        connection.groups.clear()
        connection.subscriptions.clear()
        connection.close()
        self._connections.pop(connection.id, None)
        if was_counted:
            LIVE_CONNECTIONS.labels(transport=connection.transport).dec()
        logger.info(f"Client disconnected: {connection.id}")

    def group_members(self, group: str) -> List[LiveConnection]:
        return [self._connections[cid] for cid in self._groups.get(group, ()) if cid in self._connections]

    def subscribers(self, topic: str) -> List[Tuple[LiveConnection, str]]:
        matches: List[Tuple[LiveConnection, str]] = []
        for connection in self._connections.values():
            for subscription_id, subscribed_topic in connection.subscriptions.items():
                if subscribed_topic == topic:
                    matches.append((connection, subscription_id))
        return matches

    def close_all(self) -> int:
        connections = list(self._connections.values())
        for connection in connections:
            self.disconnect(connection)
        return len(connections)

    def _discard_member(self, group: str, connection_id: str) -> None:
        members = self._groups.get(group)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._groups[group]

    @staticmethod
    def _require_open(connection: LiveConnection) -> None:
        if connection.state is ConnectionState.DISCONNECTED:
            raise ConnectionClosedError(f"Connection {connection.id} is closed")

    @classmethod
    def _require_active(cls, connection: LiveConnection) -> None:
        cls._require_open(connection)
        if connection.state is ConnectionState.CONNECTING:
            raise ConnectionClosedError(f"Connection {connection.id} has not completed its handshake")
