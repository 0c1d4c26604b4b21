"""ICE server list construction."""
from typing import List, Optional

from pairlink.config import TurnSettings
from pairlink.turn.schemas import IceServer

# Served when issuance fails; public discovery only, no relay.
FALLBACK_STUN_COUNT = 2


def stun_servers(settings: TurnSettings, limit: Optional[int] = None) -> List[IceServer]:
    urls = settings.stun_urls if limit is None else settings.stun_urls[:limit]
    return [IceServer(urls=url) for url in urls]


def build_ice_servers(
    settings: TurnSettings,
    username: Optional[str] = None,
    credential: Optional[str] = None,
) -> List[IceServer]:
    """Build the ICE server list handed to a peer.

    STUN endpoints are always included. Relay endpoints are added only when a
    server URL, a username and a credential are all present, one per enabled
    transport.
    """
    servers = stun_servers(settings)

    if not (settings.server_url and username and credential):
        return servers

    host = settings.server_url
    if settings.enable_udp:
        servers.append(IceServer(
            urls=f"turn:{host}:{settings.ports.udp}?transport=udp",
            username=username,
            credential=credential,
        ))
    if settings.enable_tcp:
        servers.append(IceServer(
            urls=f"turn:{host}:{settings.ports.tcp}?transport=tcp",
            username=username,
            credential=credential,
        ))
    if settings.enable_tls:
        servers.append(IceServer(
            urls=f"turns:{host}:{settings.ports.tls}?transport=tcp",
            username=username,
            credential=credential,
        ))
    return servers
