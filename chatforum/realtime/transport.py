"""
Transport layer for the realtime channel.

Connection objects are the handles the rest of the realtime package
passes around. Delivery is fire-and-forget: a failed send marks the
connection closed and is otherwise ignored, and close() is a one-way
signal with no acknowledgement.
"""

import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect, status

from chatforum.logging_config import get_logger
from chatforum.realtime.events import encode_frame

logger = get_logger(__name__)

NORMAL_CLOSURE = status.WS_1000_NORMAL_CLOSURE
POLICY_VIOLATION = status.WS_1008_POLICY_VIOLATION


class Connection:
    """Handle for one live WebSocket."""

    def __init__(self, websocket: Optional[WebSocket] = None, connection_id: Optional[str] = None):
        self.id = connection_id or uuid.uuid4().hex
        self.websocket = websocket
        self.open = True
        self.groups: Set[str] = set()

    def __repr__(self) -> str:
        return f"<Connection {self.id[:8]} open={self.open}>"


class Transport(ABC):
    """Delivery and termination primitives the supervisor and broker rely on."""

    @abstractmethod
    async def send(self, handle: Connection, event: str, payload: Any) -> None:
        """Deliver one event to one connection."""

    @abstractmethod
    async def close(self, handle: Connection, code: int = NORMAL_CLOSURE) -> None:
        """Ask the connection to terminate. Idempotent."""

    @abstractmethod
    async def broadcast(self, event: str, payload: Any, exclude: Optional[Connection] = None) -> None:
        """Deliver to every open connection."""

    @abstractmethod
    async def broadcast_to_group(
        self,
        group_id: str,
        event: str,
        payload: Any,
        exclude: Optional[Connection] = None,
    ) -> None:
        """Deliver to every open connection that joined group_id."""

    @abstractmethod
    def join_group(self, group_id: str, handle: Connection) -> None:
        ...

    @abstractmethod
    def leave_group(self, group_id: str, handle: Connection) -> None:
        ...

    @abstractmethod
    def is_open(self, handle: Connection) -> bool:
        ...


class WebSocketTransport(Transport):
    """Transport over FastAPI/Starlette WebSockets, one process."""

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._groups: Dict[str, Set[Connection]] = {}

    def attach(self, websocket: WebSocket) -> Connection:
        """Track an accepted WebSocket and return its handle."""
        connection = Connection(websocket)
        self._connections[connection.id] = connection
        return connection

    def detach(self, handle: Connection) -> None:
        """Forget a connection once its socket is gone."""
        handle.open = False
        self._connections.pop(handle.id, None)
        for group_id in list(handle.groups):
            self.leave_group(group_id, handle)

    def connections(self) -> List[Connection]:
        return [c for c in self._connections.values() if c.open]

    def is_open(self, handle: Connection) -> bool:
        return handle.open and handle.id in self._connections

    async def send(self, handle: Connection, event: str, payload: Any) -> None:
        await self._deliver([handle], encode_frame(event, payload))

    async def close(self, handle: Connection, code: int = NORMAL_CLOSURE) -> None:
        if not handle.open:
            return
        handle.open = False
        if handle.websocket is None:
            return
        try:
            await handle.websocket.close(code=code)
        except (RuntimeError, OSError) as exc:
            # Socket already torn down by the peer
            logger.debug("Close on %r ignored: %s", handle, exc)

    async def broadcast(self, event: str, payload: Any, exclude: Optional[Connection] = None) -> None:
        frame = encode_frame(event, payload)
        await self._deliver((c for c in self.connections() if c is not exclude), frame)

    async def broadcast_to_group(
        self,
        group_id: str,
        event: str,
        payload: Any,
        exclude: Optional[Connection] = None,
    ) -> None:
        frame = encode_frame(event, payload)
        members = list(self._groups.get(group_id, ()))
        await self._deliver((c for c in members if c is not exclude), frame)

    def join_group(self, group_id: str, handle: Connection) -> None:
        self._groups.setdefault(group_id, set()).add(handle)
        handle.groups.add(group_id)

    def leave_group(self, group_id: str, handle: Connection) -> None:
        members = self._groups.get(group_id)
        if members is not None:
            members.discard(handle)
            if not members:
                del self._groups[group_id]
        handle.groups.discard(group_id)

    async def _deliver(self, targets: Iterable[Connection], frame: Dict[str, Any]) -> None:
        for connection in list(targets):
            if not connection.open or connection.websocket is None:
                continue
            try:
                await connection.websocket.send_json(frame)
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                connection.open = False
                logger.debug("Dropping %s to %r: %s", frame["event"], connection, exc)
