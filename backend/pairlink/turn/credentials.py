"""Relay (TURN) credential issuance.

Credentials follow the TURN REST API convention understood by coturn's
``use-auth-secret`` mode:

    username = "<unixExpirySeconds>:<userId>:<roomId>"
    password = base64(HMAC-SHA256(shared_secret, username))

They are stateless. The relay server (or :meth:`CredentialIssuer.verify`)
re-derives the password from the username and the shared secret, and the
expiry is encoded in the username itself.

Issuance is gated by two per-user limits tracked in redis:

    turn:connections:{userId}        live relay connection counter
    turn:quota:{userId}:{YYYY-MM-DD}  bytes relayed today (UTC), 2-day TTL
"""
import base64
import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from pairlink.config import TurnSettings
from pairlink.errors import ConnectionLimitExceeded, QuotaExceeded, StoreUnavailable
from pairlink.store import StateStore
from pairlink.turn.ice import build_ice_servers
from pairlink.turn.schemas import (
    ConnectionLimitStatus,
    Credential,
    CredentialGrant,
    QuotaStatus,
)

logger = logging.getLogger(__name__)

QUOTA_KEY = "turn:quota:{user_id}:{day}"
CONNECTIONS_KEY = "turn:connections:{user_id}"

QUOTA_TTL_SECONDS = 86400 * 2


def utc_day(epoch: float) -> str:
    """Calendar day (UTC) of an epoch timestamp, as used in quota keys."""
    return datetime.fromtimestamp(epoch, tz=timezone.utc).date().isoformat()


def sign(secret: str, username: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), username.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class CredentialIssuer:
    """Derives relay credentials and enforces per-user connection and quota limits."""

    def __init__(
        self,
        store: StateStore,
        settings: TurnSettings,
        shared_secret: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self._secret = shared_secret
        self._clock = clock
        if not shared_secret:
            logger.warning("[TURN] No shared secret configured; relay endpoints will not be offered")

    def _quota_key(self, user_id: str) -> str:
        return QUOTA_KEY.format(user_id=user_id, day=utc_day(self._clock()))

    # -----------------------------------------------------------------------
    # Limits
    # -----------------------------------------------------------------------

    async def check_connection_limit(self, user_id: str) -> ConnectionLimitStatus:
        if not self.settings.enable_connection_limit:
            return ConnectionLimitStatus()

        raw = await self.store.get(CONNECTIONS_KEY.format(user_id=user_id))
        current = int(raw) if raw else 0
        limit = self.settings.max_connections_per_user
        return ConnectionLimitStatus(
            allowed=current < limit,
            current=current,
            limit=limit,
            unlimited=False,
        )

    async def check_quota(self, user_id: str) -> QuotaStatus:
        if not self.settings.enable_quota:
            return QuotaStatus()

        raw = await self.store.get(self._quota_key(user_id))
        used = int(raw) if raw else 0
        limit = self.settings.quota_bytes_per_day
        return QuotaStatus(
            used=used,
            limit=limit,
            remaining=max(0, limit - used),
            percentage=round(used / limit * 100) if limit > 0 else 0,
            unlimited=False,
        )

    # -----------------------------------------------------------------------
    # Issuance
    # -----------------------------------------------------------------------

    def derive(self, user_id: str, room_id: str) -> Credential:
        """Derive a credential without checking any limit."""
        now = int(self._clock())
        username = f"{now + self.settings.ttl_seconds}:{user_id}:{room_id}"
        return Credential(
            username=username,
            password=sign(self._secret, username),
            ttl=self.settings.ttl_seconds,
            timestamp=now,
            realm=self.settings.realm,
        )

    async def issue(self, user_id: str, room_id: str) -> CredentialGrant:
        """Check both limits, derive a credential and take a connection lease.

        Raises:
            ConnectionLimitExceeded: The user already holds the maximum number
                of relay connections.
            QuotaExceeded: Today's byte quota is used up.
            StoreUnavailable: Limits could not be read; nothing was issued.
        """
        connections = await self.check_connection_limit(user_id)
        if not connections.allowed:
            logger.warning("[TURN] Connection limit exceeded for %s (%s/%s)",
                           user_id, connections.current, connections.limit)
            raise ConnectionLimitExceeded(connections.current, connections.limit)

        quota = await self.check_quota(user_id)
        if not quota.unlimited and quota.remaining <= 0:
            logger.warning("[TURN] Quota exceeded for %s (%s bytes used)", user_id, quota.used)
            raise QuotaExceeded(quota.used, quota.limit)

        credential = self.derive(user_id, room_id)
        relay_ok = bool(self._secret)
        # Without a secret no relay endpoint is handed out, so there is nothing to count.
        leased = relay_ok and self.settings.enable_connection_limit
        if leased:
            await self.store.incrby(CONNECTIONS_KEY.format(user_id=user_id))

        logger.info("[TURN] Credentials issued for %s in room %s (ttl=%ss)",
                    user_id, room_id, credential.ttl)
        return CredentialGrant(
            credential=credential,
            quota=quota,
            connections=connections,
            leased=leased,
            iceServers=build_ice_servers(
                self.settings,
                credential.username if relay_ok else None,
                credential.password if relay_ok else None,
            ),
        )

    def verify(self, username: str, password: str) -> bool:
        """Check a credential presented to the relay server.

        Fails for a malformed username, an expiry at or before now, or a
        password that does not match the recomputed HMAC.
        """
        expiry_part, sep, _ = username.partition(":")
        if not sep:
            return False
        try:
            expiry = int(expiry_part)
        except ValueError:
            return False
        if expiry <= self._clock():
            return False
        expected = sign(self._secret, username)
        return hmac.compare_digest(expected.encode("ascii"), password.encode("utf-8"))

    # -----------------------------------------------------------------------
    # Accounting
    # -----------------------------------------------------------------------

    async def record_usage(self, user_id: str, nbytes: int) -> Optional[int]:
        """Add relayed bytes to today's quota record. Never fails the caller."""
        if not self.settings.enable_quota or nbytes <= 0:
            return None

        key = self._quota_key(user_id)
        try:
            total = await self.store.incrby(key, nbytes)
            await self.store.expire(key, QUOTA_TTL_SECONDS)
        except StoreUnavailable:
            logger.error("[TURN] Failed to record %s bytes for %s", nbytes, user_id)
            return None
        logger.debug("[TURN] %s used %s bytes today", user_id, total)
        return total

    async def release(self, user_id: str, count: int = 1) -> None:
        """Give back *count* connection leases, never going below zero."""
        if not self.settings.enable_connection_limit or count <= 0:
            return

        key = CONNECTIONS_KEY.format(user_id=user_id)
        remaining = await self.store.decrby(key, count)
        if remaining < 0:
            logger.error("[TURN] Connection counter for %s went negative (%s); clamping to 0",
                         user_id, remaining)
            await self.store.set(key, "0")
