"""Relay usage and connection-outcome accounting.

The monitor never gates anything. Writes are fire-and-forget: a failure is
logged and dropped so it cannot reach the presence or credential paths.
Reads serve the HTTP stats API and may raise
:class:`~pairlink.errors.StoreUnavailable`.

Redis keys:
    turn:stats:room:{roomId}           hash of category counters (24h TTL)
    turn:stats:user:{userId}           lastAccess, lastRoom, {category}Count (24h TTL)
    turn:stats:global                  {category}Count, totalConnections, failureCount, lastUpdate
    turn:bandwidth:{direction}:{day}   bytes per direction per day (2-day TTL)
    turn:failures:{day}                newest N failure records, JSON (7-day TTL)

An in-memory index of recent connection events backs ``/metrics``. It is
advisory, per instance, and safe to lose.
"""
import json
import logging
import time
from typing import Callable, Dict, Optional

from pairlink.config import MonitorSettings
from pairlink.monitor.schemas import (
    BandwidthUsage,
    ConnectionCounts,
    RealtimeMetrics,
    RoomStats,
    UserStats,
)
from pairlink.store import StateStore
from pairlink.turn.credentials import QUOTA_KEY, QUOTA_TTL_SECONDS, utc_day

logger = logging.getLogger(__name__)

ROOM_STATS_KEY = "turn:stats:room:{room_id}"
USER_STATS_KEY = "turn:stats:user:{user_id}"
GLOBAL_STATS_KEY = "turn:stats:global"
BANDWIDTH_KEY = "turn:bandwidth:{direction}:{day}"
FAILURES_KEY = "turn:failures:{day}"

ROOM_CATEGORIES = ("relay", "direct", "srflx", "host", "failed")

# ICE candidate types reported by clients, folded into stats categories.
CANDIDATE_CATEGORIES = {
    "relay": "relay",
    "srflx": "srflx",
    "prflx": "srflx",
    "host": "host",
}

CONNECTED_STATES = frozenset({"connected", "completed"})
FAILED_STATES = frozenset({"failed"})


def categorize(state: str, candidate_type: Optional[str]) -> Optional[str]:
    """Map an ICE connection state report to a stats category, or None to ignore it."""
    state = (state or "").lower()
    if state in FAILED_STATES:
        return "failed"
    if state in CONNECTED_STATES:
        return CANDIDATE_CATEGORIES.get((candidate_type or "").lower(), "direct")
    return None


class UsageMonitor:
    """Connection-outcome and bandwidth accounting."""

    def __init__(
        self,
        store: StateStore,
        settings: MonitorSettings,
        quota_limit: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.quota_limit = quota_limit
        self._clock = clock
        self._started_at = clock()
        self._last_cleanup = self._started_at
        # "{userId}:{roomId}" -> latest connection event
        self._recent: Dict[str, dict] = {}

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    async def track_connection(self, user_id: str, room_id: str, category: str) -> None:
        now = self._clock()
        if now - self._last_cleanup >= self.settings.cleanup_interval_seconds:
            self.cleanup()
        self._recent[f"{user_id}:{room_id}"] = {
            "category": category,
            "timestamp": now,
            "userId": user_id,
            "roomId": room_id,
        }
        ttl = self.settings.stats_ttl_seconds
        try:
            room_key = ROOM_STATS_KEY.format(room_id=room_id)
            await self.store.hincrby(room_key, category)
            await self.store.expire(room_key, ttl)

            user_key = USER_STATS_KEY.format(user_id=user_id)
            await self.store.hset_many(user_key, {
                "lastAccess": str(int(now * 1000)),
                "lastRoom": room_id,
            })
            await self.store.hincrby(user_key, f"{category}Count")
            await self.store.expire(user_key, ttl)

            await self.store.hincrby(GLOBAL_STATS_KEY, f"{category}Count")
            await self.store.hincrby(GLOBAL_STATS_KEY, "totalConnections")
            await self.store.hset(GLOBAL_STATS_KEY, "lastUpdate", str(int(now * 1000)))
        except Exception as e:
            logger.warning(f"[Monitor] Failed to track connection of {user_id}: {e}")
            return
        logger.info("[Monitor] Connection tracked: %s in %s via %s", user_id, room_id, category)

    async def track_bandwidth(self, user_id: str, nbytes: int, direction: str = "both") -> None:
        if nbytes <= 0:
            return
        day = utc_day(self._clock())
        try:
            for d in ("upload", "download"):
                if direction in (d, "both"):
                    key = BANDWIDTH_KEY.format(direction=d, day=day)
                    await self.store.incrby(key, nbytes)
                    await self.store.expire(key, QUOTA_TTL_SECONDS)
        except Exception as e:
            logger.warning(f"[Monitor] Failed to track bandwidth of {user_id}: {e}")

    async def track_failure(self, user_id: str, room_id: Optional[str], reason: str) -> None:
        key = FAILURES_KEY.format(day=utc_day(self._clock()))
        record = json.dumps({
            "userId": user_id,
            "roomId": room_id,
            "reason": reason,
            "timestamp": int(self._clock() * 1000),
        })
        try:
            await self.store.lpush_capped(key, record, self.settings.failure_log_size)
            await self.store.expire(key, self.settings.failure_ttl_seconds)
            await self.store.hincrby(GLOBAL_STATS_KEY, "failureCount")
        except Exception as e:
            logger.warning(f"[Monitor] Failed to track failure of {user_id}: {e}")

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def get_room_stats(self, room_id: str) -> RoomStats:
        stats = await self.store.hgetall(ROOM_STATS_KEY.format(room_id=room_id))
        counts = {c: int(stats.get(c, 0)) for c in ROOM_CATEGORIES}
        return RoomStats(**counts, total=sum(int(v or 0) for v in stats.values()))

    async def get_user_stats(self, user_id: str) -> UserStats:
        stats = await self.store.hgetall(USER_STATS_KEY.format(user_id=user_id))
        day = utc_day(self._clock())
        used = int(await self.store.get(QUOTA_KEY.format(user_id=user_id, day=day)) or 0)
        limit = self.quota_limit
        return UserStats(
            lastAccess=int(stats.get("lastAccess", 0)),
            lastRoom=stats.get("lastRoom"),
            connections=ConnectionCounts(
                relay=int(stats.get("relayCount", 0)),
                direct=int(stats.get("directCount", 0)),
                failed=int(stats.get("failedCount", 0)),
            ),
            bandwidth=BandwidthUsage(
                used=used,
                limit=limit,
                percentage=(used / limit * 100) if limit else 0.0,
            ),
        )

    async def get_global_stats(self) -> Dict[str, int]:
        stats = await self.store.hgetall(GLOBAL_STATS_KEY)
        return {k: int(v) for k, v in stats.items()}

    def get_realtime_metrics(self, live_connections: int = 0) -> RealtimeMetrics:
        self.cleanup()
        now = self._clock()
        active = [
            m for m in self._recent.values()
            if now - m["timestamp"] < self.settings.active_window_seconds
        ]
        types: Dict[str, int] = {}
        for m in active:
            types[m["category"]] = types.get(m["category"], 0) + 1
        return RealtimeMetrics(
            activeConnections=len(active),
            connectionTypes=types,
            liveSockets=live_connections,
            uptime=now - self._started_at,
        )

    def cleanup(self) -> int:
        """Drop index entries older than the retention window. Returns how many were dropped."""
        now = self._clock()
        self._last_cleanup = now
        stale = [
            key for key, m in self._recent.items()
            if now - m["timestamp"] > self.settings.retention_seconds
        ]
        for key in stale:
            del self._recent[key]
        return len(stale)
