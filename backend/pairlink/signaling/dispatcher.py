"""Routes validated inbound events to the presence, credential and monitor services.

Every event passes the rate limiter before it is parsed. Failures are
answered on the originating connection only; nothing raised while handling
one event closes the connection or affects any other connection.
"""
import logging
import time
from typing import Any, Callable, Optional

from pairlink.errors import (
    CapacityError,
    EventValidationError,
    RoomFullError,
    SignalingError,
    StoreUnavailable,
)
from pairlink.monitor.service import UsageMonitor, categorize
from pairlink.presence.manager import PresenceManager
from pairlink.ratelimit.limiter import RateLimiter
from pairlink.signaling.connection import Connection, ConnectionState
from pairlink.signaling.events import (
    BroadcastMessage,
    ForceLeave,
    Heartbeat,
    JoinRoom,
    ReportConnectionState,
    ReportTurnUsage,
    RequestTurnCredentials,
    TargetedMessage,
    parse_event,
)
from pairlink.turn.credentials import CredentialIssuer
from pairlink.turn.ice import FALLBACK_STUN_COUNT, stun_servers

logger = logging.getLogger(__name__)


def error_frame(code: str, message: str, **extra: Any) -> dict:
    frame = {"type": "error", "code": code, "message": message}
    frame.update(extra)
    return frame


class SignalingDispatcher:
    """Handles every inbound frame of every connection hosted by this instance."""

    def __init__(
        self,
        presence: PresenceManager,
        issuer: CredentialIssuer,
        limiter: RateLimiter,
        monitor: UsageMonitor,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.presence = presence
        self.issuer = issuer
        self.limiter = limiter
        self.monitor = monitor
        self._clock = clock
        self._handlers = {
            JoinRoom: self._on_join,
            TargetedMessage: self._on_relay,
            BroadcastMessage: self._on_relay,
            Heartbeat: self._on_heartbeat,
            ForceLeave: self._on_force_leave,
            RequestTurnCredentials: self._on_turn_credentials,
            ReportTurnUsage: self._on_turn_usage,
            ReportConnectionState: self._on_connection_state,
        }

    async def handle(self, connection: Connection, raw: Any) -> None:
        """Rate-limit, validate and route one inbound frame."""
        if connection.is_closing:
            return

        decision = await self.limiter.check(connection.origin, connection.identity)
        if not decision.allowed:
            await connection.send(error_frame(
                "RATE_LIMITED",
                f"Too many requests. Retry after {decision.retry_after} seconds.",
                retryAfter=decision.retry_after,
            ))
            return

        try:
            event = parse_event(raw)
        except EventValidationError as e:
            if e.code == "UNKNOWN_EVENT":
                logger.warning("[WS] %s from %s dropped", e.message, connection.identity)
                return
            logger.warning("[WS] Invalid event from %s: %s", connection.identity, e.message)
            await connection.send(error_frame(e.code, e.message))
            return
        except Exception as e:
            logger.error(f"[WS] Could not parse frame from {connection.identity}: {e}", exc_info=True)
            await connection.send(error_frame("INTERNAL_ERROR", "Internal server error"))
            return

        handler = self._handlers[type(event)]
        try:
            await handler(connection, event)
        except SignalingError as e:
            logger.warning("[WS] %s failed for %s: %s", event.type, connection.identity, e.message)
            await connection.send(error_frame(e.code, e.message))
        except Exception as e:
            logger.error(f"[WS] Error handling {event.type} from {connection.identity}: {e}",
                         exc_info=True)
            await connection.send(error_frame("INTERNAL_ERROR", "Internal server error"))

    async def disconnect(self, connection: Connection, reason: str = "disconnect") -> None:
        """Run leave cleanup for a closed transport and forget the connection."""
        try:
            await self.presence.leave(connection, reason=reason)
        except Exception as e:
            logger.error(f"[WS] Cleanup of {connection.id} failed: {e}", exc_info=True)
        finally:
            self.presence.registry.unregister(connection)

    # -----------------------------------------------------------------------
    # Handlers
    # -----------------------------------------------------------------------

    async def _on_join(self, connection: Connection, event: JoinRoom) -> None:
        try:
            peers = await self.presence.join(
                connection, event.roomId, event.userId, event.nickname
            )
        except RoomFullError:
            await connection.send({"type": "room-full", "roomId": event.roomId})
            return
        except SignalingError as e:
            await connection.send({"type": "join-error", **e.to_payload()})
            return
        except Exception as e:
            logger.error(f"[WS] Join of {event.userId} to {event.roomId} failed: {e}", exc_info=True)
            await connection.send({
                "type": "join-error",
                "code": "INTERNAL_ERROR",
                "message": "Internal server error",
            })
            return

        await connection.send({
            "type": "room-users",
            "users": [p.model_dump() for p in peers],
        })

    async def _on_relay(self, connection: Connection, event) -> None:
        await self.presence.relay(connection, event.type, getattr(event, "to", None), event.data)

    async def _on_heartbeat(self, connection: Connection, event: Heartbeat) -> None:
        try:
            await self.presence.heartbeat(connection)
        except StoreUnavailable:
            logger.warning("[WS] Heartbeat of %s not recorded, store unavailable", connection.identity)

    async def _on_force_leave(self, connection: Connection, event: ForceLeave) -> None:
        if connection.state != ConnectionState.ACTIVE or not connection.room_id:
            raise EventValidationError("Not in a room", code="NOT_IN_ROOM")
        if event.targetUserId == connection.user_id:
            await self.presence.leave(connection, reason="left")
            return
        await self.presence.force_evict(connection.room_id, event.targetUserId, reason="force-leave")

    async def _on_turn_credentials(
        self, connection: Connection, event: RequestTurnCredentials
    ) -> None:
        user_id = connection.user_id
        if not user_id:
            await connection.send({
                "type": "turn-credentials",
                "error": "User ID required",
                "code": "NO_USER_ID",
            })
            return

        room_id = connection.room_id or "default"
        try:
            grant = await self.issuer.issue(user_id, room_id)
        except CapacityError as e:
            await connection.send({
                "type": "turn-credentials",
                "error": e.message,
                "code": e.code,
            })
            return
        except Exception as e:
            logger.error(f"[TURN] Issuance for {user_id} failed: {e}", exc_info=True)
            await connection.send(self._fallback_credentials())
            return

        if grant.leased and not await self._record_lease(connection, user_id):
            await connection.send(self._fallback_credentials())
            return

        await connection.send({
            "type": "turn-credentials",
            "iceServers": [s.model_dump(exclude_none=True) for s in grant.iceServers],
            "ttl": grant.credential.ttl,
            "timestamp": int(self._clock() * 1000),
            "quota": grant.quota.model_dump(),
            "stats": {
                "connectionCount": grant.connections.current + (1 if grant.leased else 0),
                "connectionLimit": grant.connections.limit,
            },
        })

    async def _record_lease(self, connection: Connection, user_id: str) -> bool:
        """Attach a fresh counter increment to the connection, or give it back."""
        try:
            if await self.presence.add_lease(connection):
                return True
            logger.warning("[TURN] %s no longer owns its occupant record, lease returned", user_id)
        except Exception as e:
            logger.error(f"[TURN] Could not record lease of {user_id}: {e}", exc_info=True)
        try:
            await self.issuer.release(user_id)
        except StoreUnavailable:
            logger.error("[TURN] Could not return lease of %s", user_id)
        return False

    def _fallback_credentials(self) -> dict:
        """STUN-only ICE list served when relay credentials cannot be issued."""
        return {
            "type": "turn-credentials",
            "error": "Failed to generate TURN credentials",
            "code": "INTERNAL_ERROR",
            "fallback": True,
            "iceServers": [
                s.model_dump(exclude_none=True)
                for s in stun_servers(self.issuer.settings, limit=FALLBACK_STUN_COUNT)
            ],
        }

    async def _on_turn_usage(self, connection: Connection, event: ReportTurnUsage) -> None:
        user_id = connection.user_id
        nbytes = event.nbytes
        if not user_id or nbytes <= 0:
            return
        await self.issuer.record_usage(user_id, nbytes)
        await self.monitor.track_bandwidth(user_id, nbytes, event.direction)

    async def _on_connection_state(
        self, connection: Connection, event: ReportConnectionState
    ) -> None:
        user_id = connection.user_id
        room_id: Optional[str] = connection.room_id
        if not user_id or not room_id:
            return
        category = categorize(event.state, event.candidateType)
        if category is None:
            return
        await self.monitor.track_connection(user_id, room_id, category)
        if category == "failed":
            await self.monitor.track_failure(user_id, room_id, event.state)
