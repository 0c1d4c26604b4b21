"""Zombie session reaper.

Transport layers do not always report a dead connection. The reaper is the
backstop: every ``interval_seconds`` it walks all room hashes and evicts any
occupant whose last heartbeat (or join time, if it never sent one) is older
than ``zombie_timeout_seconds``. Evictions go through
:meth:`PresenceManager.force_evict`, so the remaining peer is notified and the
relay connection leases are released exactly as on a normal leave.

The sweep shares no in-process state with request handling; everything goes
through redis. It is skipped while the service shuts down and whenever redis
does not answer a PING, to avoid acting on partial reads.
"""
import asyncio
import logging
import time
from typing import Callable, Optional

from pairlink.config import ReaperSettings
from pairlink.errors import StoreUnavailable
from pairlink.presence.manager import PresenceManager
from pairlink.store import StateStore

logger = logging.getLogger(__name__)


class ZombieReaper:
    """Periodic liveness sweep over all rooms."""

    def __init__(
        self,
        presence: PresenceManager,
        store: StateStore,
        settings: ReaperSettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.presence = presence
        self.store = store
        self.settings = settings
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> int:
        """Run one pass. Returns the number of occupants evicted."""
        if self._stopping:
            logger.debug("[Reaper] Shutting down, sweep skipped")
            return 0
        if not await self.store.ping():
            logger.warning("[Reaper] Store unreachable, sweep skipped")
            return 0

        evicted = 0
        room_ids = []
        try:
            room_ids = await self.presence.list_room_ids()
            for room_id in room_ids:
                if self._stopping:
                    break
                evicted += await self._sweep_room(room_id)
        except StoreUnavailable:
            logger.warning("[Reaper] Store became unreachable mid-sweep, stopping this pass")

        if evicted:
            logger.info("[Reaper] Sweep evicted %s zombie occupant(s) across %s room(s)",
                        evicted, len(room_ids))
        return evicted

    async def _sweep_room(self, room_id: str) -> int:
        occupants, corrupt = await self.presence.room_snapshot(room_id)
        for user_id in corrupt:
            await self.presence.remove_corrupt(room_id, user_id)

        now = self._clock()
        evicted = 0
        for user_id, occupant in occupants.items():
            idle = now - occupant.last_seen
            if idle <= self.settings.zombie_timeout_seconds:
                continue
            logger.info("[Reaper] %s in %s idle for %.1fs, evicting", user_id, room_id, idle)
            if await self.presence.force_evict(
                room_id, user_id, reason="heartbeat-timeout",
                expected_connection=occupant.connectionId,
                expected_last_seen=occupant.last_seen,
            ):
                evicted += 1
        return evicted

    # -----------------------------------------------------------------------
    # Task lifecycle
    # -----------------------------------------------------------------------

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name="zombie-reaper")
        logger.info("[Reaper] Started (interval=%ss, timeout=%ss)",
                    self.settings.interval_seconds, self.settings.zombie_timeout_seconds)

    async def stop(self) -> None:
        """Stop the sweep loop. Must be awaited before the store is closed."""
        self._stopping = True
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[Reaper] Stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.settings.interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"[Reaper] Sweep failed: {e}", exc_info=True)
