"""Live transport connections hosted by this instance.

A :class:`Connection` wraps one accepted WebSocket together with the identity
bound to it (user, room, join time). Room state itself lives in redis; the
occupant record only stores the connection id, which is resolved back to a
:class:`Connection` through the :class:`ConnectionRegistry` of the instance
that hosts it.

The registry is per process and is not shared across instances. Delivering
to a connection hosted elsewhere is the transport layer's fan-out concern and
is not handled here.
"""
import logging
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Lifecycle of a connection and the occupant record it owns.

    CONNECTED → JOINING → ACTIVE → LEAVING → GONE. A connection that never
    joins goes straight from CONNECTED to LEAVING on disconnect.
    """
    CONNECTED = "connected"
    JOINING = "joining"
    ACTIVE = "active"
    LEAVING = "leaving"
    GONE = "gone"


class Connection:
    """One client connection and the identity bound to it."""

    def __init__(
        self,
        websocket: Any,
        origin: Optional[str] = None,
        user_id: Optional[str] = None,
        connection_id: Optional[str] = None,
    ) -> None:
        self.id = connection_id or uuid.uuid4().hex
        self.websocket = websocket
        self.origin = origin
        self.user_id = user_id
        self.room_id: Optional[str] = None
        self.nickname: str = ""
        self.joined_at: Optional[float] = None
        self.state = ConnectionState.CONNECTED
        # Connection-counter increments taken by this connection and not yet released.
        self.leases = 0

    @property
    def identity(self) -> str:
        """Rate-limit identity: the user when known, else the connection itself."""
        return self.user_id or self.id

    @property
    def is_closing(self) -> bool:
        return self.state in (ConnectionState.LEAVING, ConnectionState.GONE)

    def begin_leaving(self) -> bool:
        """One-shot transition into LEAVING.

        Returns True exactly once per connection; every later call (a second
        disconnect signal, an eviction racing a disconnect) gets False. The
        check and the set happen without an intervening await, so they are
        atomic with respect to other tasks on the event loop.
        """
        if self.is_closing:
            return False
        self.state = ConnectionState.LEAVING
        return True

    def bind(self, room_id: str, user_id: str, nickname: str, joined_at: float) -> None:
        self.room_id = room_id
        self.user_id = user_id
        self.nickname = nickname
        self.joined_at = joined_at

    def unbind(self) -> None:
        self.room_id = None
        self.joined_at = None

    async def send(self, message: Dict[str, Any]) -> bool:
        """Send a JSON frame. Returns False instead of raising if the socket is gone."""
        try:
            await self.websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"[WS] Failed to send to connection {self.id}: {e}")
            return False

    async def close(self, code: int = 1000, reason: str = "") -> None:
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"[WS] Close on connection {self.id} failed: {e}")

    def __repr__(self) -> str:
        return f"<Connection {self.id} user={self.user_id} room={self.room_id} state={self.state.value}>"


class ConnectionRegistry:
    """Maps connection ids to the connections hosted by this process."""

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}

    def register(self, connection: Connection) -> None:
        self._connections[connection.id] = connection

    def unregister(self, connection: Connection) -> None:
        self._connections.pop(connection.id, None)

    def get(self, connection_id: Optional[str]) -> Optional[Connection]:
        if not connection_id:
            return None
        return self._connections.get(connection_id)

    def all(self) -> List[Connection]:
        return list(self._connections.values())

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections
