"""Process-wide service wiring.

All components share one :class:`StateStore` and one clock. The assembled
:class:`Services` bundle is installed once at startup and looked up by the
routers through :func:`get_services`.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from pairlink.config import AppSettings
from pairlink.monitor.service import UsageMonitor
from pairlink.presence.manager import PresenceManager
from pairlink.ratelimit.limiter import RateLimiter
from pairlink.reaper.service import ZombieReaper
from pairlink.signaling.connection import ConnectionRegistry
from pairlink.signaling.dispatcher import SignalingDispatcher
from pairlink.store import StateStore
from pairlink.turn.credentials import CredentialIssuer

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppSettings
    store: StateStore
    registry: ConnectionRegistry
    issuer: CredentialIssuer
    limiter: RateLimiter
    presence: PresenceManager
    monitor: UsageMonitor
    reaper: ZombieReaper
    dispatcher: SignalingDispatcher


def build_services(
    config: AppSettings,
    store: Optional[StateStore] = None,
    clock: Callable[[], float] = time.time,
) -> Services:
    """Assemble every component over one store. Opens no connection yet."""
    store = store or StateStore.from_settings(config)
    registry = ConnectionRegistry()
    issuer = CredentialIssuer(store, config.turn, config.secrets.turn.shared_secret, clock)
    limiter = RateLimiter(store, config.rate_limit, clock)
    presence = PresenceManager(store, registry, issuer, clock)
    monitor = UsageMonitor(
        store,
        config.monitor,
        quota_limit=config.turn.quota_bytes_per_day if config.turn.enable_quota else None,
        clock=clock,
    )
    reaper = ZombieReaper(presence, store, config.reaper, clock)
    dispatcher = SignalingDispatcher(presence, issuer, limiter, monitor, clock)
    return Services(
        config=config,
        store=store,
        registry=registry,
        issuer=issuer,
        limiter=limiter,
        presence=presence,
        monitor=monitor,
        reaper=reaper,
        dispatcher=dispatcher,
    )


# Global services instance (installed on startup)
_services: Optional[Services] = None


def get_services() -> Optional[Services]:
    """Get the global services instance."""
    return _services


def set_services(services: Optional[Services]) -> None:
    """Set (or clear, with None) the global services instance."""
    global _services
    _services = services
