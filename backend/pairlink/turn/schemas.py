"""Pydantic schemas for relay (TURN) credential issuance."""
from typing import List, Optional

from pydantic import BaseModel, Field


class Credential(BaseModel):
    """Ephemeral relay credential. Never persisted.

    Attributes:
        username: ``"<expiryEpoch>:<userId>:<roomId>"``.
        password: base64(HMAC-SHA256(shared secret, username)).
        ttl: Lifetime in seconds, fixed by configuration.
        timestamp: Issue time (epoch seconds).
        realm: Relay server realm.
    """
    username: str
    password: str
    ttl: int
    timestamp: int
    realm: str


class QuotaStatus(BaseModel):
    """Today's relay byte usage for a user. ``limit`` is None when unbounded."""
    used: int = 0
    limit: Optional[int] = None
    remaining: Optional[int] = None
    percentage: int = 0
    unlimited: bool = True


class ConnectionLimitStatus(BaseModel):
    """Current relay connection count for a user. ``limit`` is None when unbounded."""
    allowed: bool = True
    current: int = 0
    limit: Optional[int] = None
    unlimited: bool = True


class IceServer(BaseModel):
    urls: str
    username: Optional[str] = None
    credential: Optional[str] = None


class CredentialGrant(BaseModel):
    """Result of a successful issuance: the credential plus the limits it was checked against."""
    credential: Credential
    quota: QuotaStatus
    connections: ConnectionLimitStatus
    iceServers: List[IceServer] = Field(default_factory=list)
    # True when issuance took a connection-counter increment the caller must account for.
    leased: bool = False
