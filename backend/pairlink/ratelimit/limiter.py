"""Redis-backed distributed rate limiting.

Two independent scopes are checked for every inbound event, origin address
first and then user identity. Each scope is a fixed-window counter: the
first ``points`` events of a window are admitted, the next one blocks the
identity for ``block_duration`` seconds. All counters live in redis, so every
instance of the service shares one budget per identity.

Keys:
    {prefix}:{identity}:{window}    events seen in the window (TTL = duration)
    {prefix}:block:{identity}       block deadline, epoch seconds (TTL = block)

If redis is unreachable the limiter fails open and logs a warning.
"""
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from pairlink.config import RateLimitScope, RateLimitSettings
from pairlink.errors import StoreUnavailable
from pairlink.store import StateStore

logger = logging.getLogger(__name__)

USER_PREFIX = "rate_limit_user"
ORIGIN_PREFIX = "rate_limit_ip"


@dataclass
class RateLimitDecision:
    allowed: bool
    scope: Optional[str] = None
    retry_after: int = 0
    remaining: Optional[int] = None


class RateLimitBucket:
    """One rate-limit scope (user or origin)."""

    def __init__(
        self,
        store: StateStore,
        prefix: str,
        scope: RateLimitScope,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.prefix = prefix
        self.scope = scope
        self._clock = clock

    def _block_key(self, identity: str) -> str:
        return f"{self.prefix}:block:{identity}"

    def _window_key(self, identity: str, window: int) -> str:
        return f"{self.prefix}:{identity}:{window}"

    async def consume(self, identity: str) -> RateLimitDecision:
        """Spend one point for *identity*.

        Raises:
            StoreUnavailable: redis could not be reached.
        """
        now = self._clock()
        block_key = self._block_key(identity)

        blocked_until = await self.store.get(block_key)
        if blocked_until and float(blocked_until) > now:
            return RateLimitDecision(
                allowed=False,
                scope=self.prefix,
                retry_after=math.ceil(float(blocked_until) - now),
            )

        window = int(now // self.scope.duration)
        window_key = self._window_key(identity, window)
        count = await self.store.incrby(window_key)
        if count == 1:
            await self.store.expire(window_key, self.scope.duration)

        if count <= self.scope.points:
            return RateLimitDecision(
                allowed=True, scope=self.prefix, remaining=self.scope.points - count
            )

        # Budget exhausted: block, and start the next admission from a clean window.
        deadline = now + self.scope.block_duration
        await self.store.set(block_key, repr(deadline), ex=self.scope.block_duration)
        await self.store.delete(window_key)
        return RateLimitDecision(
            allowed=False, scope=self.prefix, retry_after=self.scope.block_duration
        )


class RateLimiter:
    """Origin + user rate limiting for inbound signaling events."""

    def __init__(
        self,
        store: StateStore,
        settings: RateLimitSettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.origin_bucket = RateLimitBucket(store, ORIGIN_PREFIX, settings.origin, clock)
        self.user_bucket = RateLimitBucket(store, USER_PREFIX, settings.user, clock)

    async def check(self, origin: Optional[str], user_id: Optional[str]) -> RateLimitDecision:
        """Admit or reject one event. Fails open when redis is unreachable."""
        if not self.settings.enabled:
            return RateLimitDecision(allowed=True)

        try:
            if origin:
                decision = await self.origin_bucket.consume(origin)
                if not decision.allowed:
                    self._log_rejection(origin, decision)
                    return decision
            if user_id:
                decision = await self.user_bucket.consume(user_id)
                if not decision.allowed:
                    self._log_rejection(user_id, decision)
                    return decision
        except StoreUnavailable:
            logger.warning("[RateLimiter] Store unavailable, admitting event (fail-open)")
            return RateLimitDecision(allowed=True)

        return RateLimitDecision(allowed=True)

    async def check_origin(self, origin: str) -> RateLimitDecision:
        """Origin-only check used by the HTTP API."""
        return await self.check(origin, None)

    @staticmethod
    def _log_rejection(key: str, decision: RateLimitDecision) -> None:
        logger.warning(
            "[RateLimiter] Rate limit exceeded key=%s scope=%s retry_after=%ss",
            key, decision.scope, decision.retry_after,
        )
