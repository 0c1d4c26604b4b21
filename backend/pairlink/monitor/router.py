"""Read-only usage statistics API.

    GET /stats/room/{room_id}   connection outcome counters of one room
    GET /stats/user/{user_id}   a user's last access, outcomes and quota
    GET /metrics                live connection mix of this instance

All endpoints share the origin rate-limit scope with the signaling socket.
"""
import logging
import time

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from pairlink.errors import StoreUnavailable
from pairlink.monitor.schemas import MetricsResponse, RoomStatsResponse, UserStatsResponse
from pairlink.ratelimit.dependencies import limit_by_origin
from pairlink.services import get_services

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(limit_by_origin)], tags=["stats"])


def _now_ms() -> int:
    return int(time.time() * 1000)


def _unavailable(what: str) -> JSONResponse:
    logger.warning("[Monitor] %s unavailable, store unreachable", what)
    return JSONResponse(
        status_code=503,
        content={"success": False, "error": "State store unavailable"},
    )


@router.get("/stats/room/{room_id}", response_model=RoomStatsResponse)
async def room_stats(room_id: str):
    services = get_services()
    try:
        stats = await services.monitor.get_room_stats(room_id)
    except StoreUnavailable:
        return _unavailable(f"Stats of room {room_id}")
    return RoomStatsResponse(roomId=room_id, stats=stats, timestamp=_now_ms())


@router.get("/stats/user/{user_id}", response_model=UserStatsResponse)
async def user_stats(user_id: str):
    """Return the user's accounting together with today's relay quota."""
    services = get_services()
    try:
        stats = await services.monitor.get_user_stats(user_id)
        quota = await services.issuer.check_quota(user_id)
    except StoreUnavailable:
        return _unavailable(f"Stats of user {user_id}")
    return UserStatsResponse(userId=user_id, stats=stats, quota=quota, timestamp=_now_ms())


@router.get("/metrics", response_model=MetricsResponse)
async def metrics():
    services = get_services()
    realtime = services.monitor.get_realtime_metrics(live_connections=len(services.registry))
    try:
        totals = await services.monitor.get_global_stats()
    except StoreUnavailable:
        logger.warning("[Monitor] Global totals unavailable, serving live metrics only")
        totals = {}
    return MetricsResponse(metrics=realtime, totals=totals, timestamp=_now_ms())
