"""Presence records stored in the room hashes."""
from typing import Optional

from pydantic import BaseModel, Field


class Occupant(BaseModel):
    """One user present in a room.

    Stored as JSON under field ``userId`` of the redis hash ``room:{roomId}``.

    Attributes:
        userId: External identity of the user.
        connectionId: Handle of the transport connection that owns the record.
        nickname: Display name shown to the other peer.
        joinedAt: Join time (epoch seconds).
        lastHeartbeat: Last heartbeat time; None until the first heartbeat.
        leases: Relay connection-counter increments held by the connection.
    """
    userId: str
    connectionId: str
    nickname: str = ""
    joinedAt: float
    lastHeartbeat: Optional[float] = None
    leases: int = Field(default=0, ge=0)

    @property
    def last_seen(self) -> float:
        return self.lastHeartbeat if self.lastHeartbeat is not None else self.joinedAt


class Peer(BaseModel):
    """What one occupant learns about another."""
    id: str
    nickname: str = ""
