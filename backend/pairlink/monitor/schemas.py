"""Pydantic schemas for the stats and metrics API."""
from typing import Dict, Optional

from pydantic import BaseModel, Field

from pairlink.turn.schemas import QuotaStatus


class RoomStats(BaseModel):
    relay: int = 0
    direct: int = 0
    srflx: int = 0
    host: int = 0
    failed: int = 0
    total: int = 0


class ConnectionCounts(BaseModel):
    relay: int = 0
    direct: int = 0
    failed: int = 0


class BandwidthUsage(BaseModel):
    used: int = 0
    limit: Optional[int] = None
    percentage: float = 0.0


class UserStats(BaseModel):
    lastAccess: int = 0
    lastRoom: Optional[str] = None
    connections: ConnectionCounts = Field(default_factory=ConnectionCounts)
    bandwidth: BandwidthUsage = Field(default_factory=BandwidthUsage)


class RealtimeMetrics(BaseModel):
    activeConnections: int = 0
    connectionTypes: Dict[str, int] = Field(default_factory=dict)
    liveSockets: int = 0
    uptime: float = 0.0


class RoomStatsResponse(BaseModel):
    success: bool = True
    roomId: str
    stats: RoomStats
    timestamp: int


class UserStatsResponse(BaseModel):
    success: bool = True
    userId: str
    stats: UserStats
    quota: QuotaStatus
    timestamp: int


class MetricsResponse(BaseModel):
    success: bool = True
    metrics: RealtimeMetrics
    totals: Dict[str, int] = Field(default_factory=dict)
    timestamp: int
