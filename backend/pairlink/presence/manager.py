"""Two-party room presence backed by redis.

Each room is a redis hash ``room:{roomId}`` whose fields are user ids and
whose values are JSON :class:`Occupant` records. The hash is the only
authority on who is in a room; this process keeps no room map of its own.
Rooms come into existence with the first HSET and disappear with the HDEL of
their last field (redis removes empty hashes).

Capacity:
    A room holds at most two occupants. The check is a read-then-write
    (HLEN, then HSET), so two joins racing on different instances can both
    pass it. This is accepted; the reaper and the next leave converge the
    room back.

Cleanup ordering:
    Exactly one path (leave, force_evict or the reaper) wins the HDEL of an
    occupant field. Only that path notifies the remaining peer and releases
    the relay connection leases recorded on the occupant.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from pairlink.errors import EventValidationError, RoomFullError, StoreUnavailable
from pairlink.presence.schemas import Occupant, Peer
from pairlink.signaling.connection import Connection, ConnectionRegistry, ConnectionState
from pairlink.store import StateStore
from pairlink.turn.credentials import CredentialIssuer

logger = logging.getLogger(__name__)

ROOM_CAPACITY = 2

ROOM_KEY_PREFIX = "room:"
ROOM_KEY_PATTERN = ROOM_KEY_PREFIX + "*"

# Kinds delivered to one addressed peer.
TARGETED_KINDS = frozenset({
    "signal",
    "file-meta",
    "file-accept",
    "file-decline",
    "file-cancel",
    "file-chunk",
})

# Kinds delivered to every other occupant, mapped to the type the peer receives.
BROADCAST_KINDS = {
    "chat": "chat",
    "media-state-update": "peer-state-updated",
}


def room_key(room_id: str) -> str:
    return f"{ROOM_KEY_PREFIX}{room_id}"


def room_id_from_key(key: str) -> str:
    return key[len(ROOM_KEY_PREFIX):]


def _decode(user_id: str, raw: str) -> Optional[Occupant]:
    try:
        return Occupant.model_validate_json(raw)
    except ValidationError:
        logger.warning("[Presence] Undecodable occupant record for %s", user_id)
        return None


class PresenceManager:
    """Join, relay, leave, heartbeat and eviction for two-party rooms."""

    def __init__(
        self,
        store: StateStore,
        registry: ConnectionRegistry,
        issuer: CredentialIssuer,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.registry = registry
        self.issuer = issuer
        self._clock = clock

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def room_snapshot(self, room_id: str) -> Tuple[Dict[str, Occupant], List[str]]:
        """Return the decodable occupants of a room and the ids of corrupt records."""
        raw = await self.store.hgetall(room_key(room_id))
        occupants: Dict[str, Occupant] = {}
        corrupt: List[str] = []
        for user_id, data in raw.items():
            occupant = _decode(user_id, data)
            if occupant is None:
                corrupt.append(user_id)
            else:
                occupants[user_id] = occupant
        return occupants, corrupt

    async def get_occupants(self, room_id: str) -> Dict[str, Occupant]:
        occupants, _ = await self.room_snapshot(room_id)
        return occupants

    async def get_occupant(self, room_id: str, user_id: str) -> Optional[Occupant]:
        raw = await self.store.hget(room_key(room_id), user_id)
        return _decode(user_id, raw) if raw is not None else None

    async def list_room_ids(self) -> List[str]:
        keys = await self.store.scan_keys(ROOM_KEY_PATTERN)
        return [room_id_from_key(k) for k in keys]

    # -----------------------------------------------------------------------
    # Join
    # -----------------------------------------------------------------------

    async def join(
        self, connection: Connection, room_id: str, user_id: str, nickname: str = ""
    ) -> List[Peer]:
        """Add the connection's user to a room and return the peers already there.

        Raises:
            RoomFullError: The room already holds two other occupants.
            EventValidationError: The connection cannot join this room.
            StoreUnavailable: redis failed; no occupant record is left behind.
        """
        if connection.is_closing:
            raise EventValidationError("Connection is closing", code="NOT_CONNECTED")
        if connection.user_id and connection.user_id != user_id:
            raise EventValidationError(
                "userId does not match the connection identity", code="IDENTITY_MISMATCH"
            )
        if connection.state == ConnectionState.ACTIVE and connection.room_id != room_id:
            raise EventValidationError(
                f"Already in room {connection.room_id}", code="ALREADY_IN_ROOM"
            )

        key = room_key(room_id)
        previous_state = connection.state
        connection.state = ConnectionState.JOINING
        written = False
        try:
            count = await self.store.hlen(key)
            logger.info("[Presence] JOIN %s -> %s (%s/%s)", user_id, room_id, count, ROOM_CAPACITY)

            stale_raw = await self.store.hget(key, user_id)
            if count >= ROOM_CAPACITY and stale_raw is None:
                logger.warning("[Presence] Room %s is full, rejecting %s", room_id, user_id)
                raise RoomFullError(room_id)

            stale = _decode(user_id, stale_raw) if stale_raw is not None else None
            now = self._clock()
            occupant = Occupant(
                userId=user_id,
                connectionId=connection.id,
                nickname=nickname,
                joinedAt=now,
                leases=connection.leases,
            )
            await self.store.hset(key, user_id, occupant.model_dump_json())
            written = True

            occupants = await self.get_occupants(room_id)
        except Exception:
            if written:
                await self._rollback_join(key, user_id, connection.id)
            connection.state = previous_state
            raise

        connection.bind(room_id, user_id, nickname, now)
        connection.state = ConnectionState.ACTIVE

        if stale is not None and stale.connectionId != connection.id and stale.leases:
            # The replaced record's connection is gone or superseded; its leases go with it.
            await self._release_leases(user_id, stale.leases)

        peers = [
            Peer(id=uid, nickname=occ.nickname)
            for uid, occ in occupants.items()
            if uid != user_id
        ]
        joined = {"type": "user-joined", "id": user_id, "nickname": nickname}
        for uid, occ in occupants.items():
            if uid != user_id:
                await self._deliver(occ, joined)

        logger.info("[Presence] %s (%s) joined %s with %s peer(s)", user_id, nickname, room_id, len(peers))
        return peers

    async def _rollback_join(self, key: str, user_id: str, connection_id: str) -> None:
        try:
            raw = await self.store.hget(key, user_id)
            occupant = _decode(user_id, raw) if raw is not None else None
            if occupant is not None and occupant.connectionId == connection_id:
                await self.store.hdel(key, user_id)
                logger.info("[Presence] Rolled back partial join of %s", user_id)
        except StoreUnavailable:
            logger.error("[Presence] Could not roll back join of %s; reaper will collect it", user_id)

    # -----------------------------------------------------------------------
    # Relay
    # -----------------------------------------------------------------------

    async def relay(
        self, connection: Connection, kind: str, to: Optional[str], data: Any
    ) -> int:
        """Forward a negotiation message. Returns the number of deliveries made."""
        if connection.state != ConnectionState.ACTIVE or not connection.room_id:
            logger.warning("[Presence] %s from %s outside a room, dropped", kind, connection.identity)
            return 0

        room_id = connection.room_id
        sender = connection.user_id

        if kind in TARGETED_KINDS:
            if not to or to == sender:
                logger.warning("[Presence] %s from %s has no valid target, dropped", kind, sender)
                return 0
            target = await self.get_occupant(room_id, to)
            if target is None:
                logger.warning("[Presence] Target %s not found in %s, %s dropped", to, room_id, kind)
                return 0
            delivered = await self._deliver(target, {"type": kind, "from": sender, "data": data})
            return int(delivered)

        if kind in BROADCAST_KINDS:
            message = {"type": BROADCAST_KINDS[kind], "from": sender, "data": data}
            sent = 0
            for uid, occ in (await self.get_occupants(room_id)).items():
                if uid != sender and await self._deliver(occ, message):
                    sent += 1
            return sent

        logger.warning("[Presence] Unknown message kind %r from %s, dropped", kind, sender)
        return 0

    # -----------------------------------------------------------------------
    # Heartbeat / leases
    # -----------------------------------------------------------------------

    async def _update_own_record(
        self, connection: Connection, change: Callable[[Occupant], None]
    ) -> bool:
        """Apply *change* to the connection's occupant record if it still owns one."""
        user_id = connection.user_id

        def rewrite(raw: str) -> Optional[str]:
            occupant = _decode(user_id, raw)
            if occupant is None or occupant.connectionId != connection.id:
                return None
            change(occupant)
            return occupant.model_dump_json()

        written = await self.store.hupdate(room_key(connection.room_id), user_id, rewrite)
        return written is not None

    async def heartbeat(self, connection: Connection) -> bool:
        """Refresh lastHeartbeat. False when the occupant is already gone."""
        if connection.state != ConnectionState.ACTIVE or not connection.room_id:
            return False
        now = self._clock()

        def touch(occupant: Occupant) -> None:
            occupant.lastHeartbeat = now

        return await self._update_own_record(connection, touch)

    async def add_lease(self, connection: Connection) -> bool:
        """Record that the connection took one relay connection-counter increment.

        Returns False when the connection is in a room but no longer owns its
        occupant record; the caller still holds the increment and must release
        it. Raises StoreUnavailable without recording anything.
        """
        if connection.state != ConnectionState.ACTIVE or not connection.room_id:
            # Not in a room: the lease is only tracked on the connection.
            connection.leases += 1
            return True

        leases = connection.leases + 1

        def take(occupant: Occupant) -> None:
            occupant.leases = leases

        if not await self._update_own_record(connection, take):
            return False
        connection.leases = leases
        return True

    # -----------------------------------------------------------------------
    # Leave / evict
    # -----------------------------------------------------------------------

    async def leave(self, connection: Connection, reason: str = "disconnect") -> bool:
        """Clean up after a connection. Only the first call per connection does anything."""
        if not connection.begin_leaving():
            logger.debug("[Presence] Duplicate leave for %s ignored", connection.id)
            return False

        room_id, user_id = connection.room_id, connection.user_id
        logger.info("[Presence] LEAVE %s from %s (reason=%s)", user_id, room_id, reason)

        if room_id and user_id:
            occupant = await self._remove_occupant(
                room_id, user_id, reason, expected_connection=connection.id
            )
            if occupant is not None and connection.joined_at:
                logger.info("[Presence] Session of %s lasted %.1fs",
                            user_id, self._clock() - connection.joined_at)
        elif connection.leases and user_id:
            # Never joined a room: the leases are only tracked on the connection.
            await self._release_leases(user_id, connection.leases)

        connection.leases = 0
        connection.unbind()
        connection.state = ConnectionState.GONE
        return True

    async def force_evict(
        self,
        room_id: str,
        target_user_id: str,
        reason: str = "evicted",
        expected_connection: Optional[str] = None,
        expected_last_seen: Optional[float] = None,
    ) -> bool:
        """Remove an occupant on someone else's behalf and sever its connection if hosted here.

        With *expected_last_seen*, the eviction is skipped if the occupant
        has sent a heartbeat since that reading.
        """
        occupant = await self.get_occupant(room_id, target_user_id)
        if occupant is None:
            logger.info("[Presence] Evict of %s from %s: not present", target_user_id, room_id)
            return False
        if expected_connection and occupant.connectionId != expected_connection:
            logger.info("[Presence] Evict of %s skipped: record was replaced", target_user_id)
            return False
        if expected_last_seen is not None and occupant.last_seen != expected_last_seen:
            logger.info("[Presence] Evict of %s skipped: heartbeat arrived meanwhile", target_user_id)
            return False

        target = self.registry.get(occupant.connectionId)
        if target is not None:
            target.begin_leaving()

        removed = await self._remove_occupant(
            room_id, target_user_id, reason, expected_connection=occupant.connectionId
        )

        if target is not None:
            await target.send({"type": "evicted", "roomId": room_id, "reason": reason})
            target.leases = 0
            target.unbind()
            target.state = ConnectionState.GONE
            await target.close(code=4000, reason=reason)

        if removed is not None:
            logger.info("[Presence] Evicted %s from %s (reason=%s)", target_user_id, room_id, reason)
        return removed is not None

    async def remove_corrupt(self, room_id: str, user_id: str) -> bool:
        """Drop an undecodable occupant field. No peer is notified."""
        removed = await self.store.hdel(room_key(room_id), user_id)
        if removed:
            logger.warning("[Presence] Removed corrupt occupant %s from %s", user_id, room_id)
        return bool(removed)

    async def _remove_occupant(
        self,
        room_id: str,
        user_id: str,
        reason: str,
        expected_connection: Optional[str] = None,
    ) -> Optional[Occupant]:
        """Delete an occupant record, retrying once if redis is unavailable."""
        for attempt in (1, 2):
            try:
                return await self._remove_occupant_once(room_id, user_id, reason, expected_connection)
            except StoreUnavailable:
                if attempt == 1:
                    logger.warning("[Presence] Cleanup of %s in %s failed, retrying once", user_id, room_id)
                    continue
                logger.error(
                    "[Presence] Cleanup of %s in %s abandoned; reaper will converge", user_id, room_id
                )
        return None

    async def _remove_occupant_once(
        self,
        room_id: str,
        user_id: str,
        reason: str,
        expected_connection: Optional[str],
    ) -> Optional[Occupant]:
        key = room_key(room_id)
        occupant = await self.get_occupant(room_id, user_id)
        if occupant is None:
            logger.debug("[Presence] No record for %s in %s", user_id, room_id)
            return None
        if expected_connection and occupant.connectionId != expected_connection:
            logger.info("[Presence] Record of %s in %s belongs to a newer connection, kept",
                        user_id, room_id)
            return None

        if not await self.store.hdel(key, user_id):
            # Another cleanup path got there first.
            return None

        remaining = await self.get_occupants(room_id)
        left = {"type": "user-left", "userId": user_id, "reason": reason}
        for occ in remaining.values():
            await self._deliver(occ, left)

        if not remaining:
            logger.info("[Presence] Room %s is empty and has been removed", room_id)

        await self._release_leases(user_id, occupant.leases)
        return occupant

    async def _release_leases(self, user_id: str, count: int) -> None:
        if count <= 0:
            return
        try:
            await self.issuer.release(user_id, count)
        except StoreUnavailable:
            logger.error("[Presence] Could not release %s lease(s) of %s", count, user_id)

    # -----------------------------------------------------------------------
    # Delivery
    # -----------------------------------------------------------------------

    async def _deliver(self, occupant: Occupant, message: dict) -> bool:
        connection = self.registry.get(occupant.connectionId)
        if connection is None or connection.is_closing:
            logger.debug("[Presence] Connection %s of %s not hosted here, %s not delivered",
                         occupant.connectionId, occupant.userId, message.get("type"))
            return False
        return await connection.send(message)
