"""FastAPI dependency applying the origin rate-limit scope to HTTP endpoints."""
from fastapi import HTTPException, Request

from pairlink.services import get_services


async def limit_by_origin(request: Request) -> None:
    """Reject the request with 429 once the client address exhausts its budget."""
    services = get_services()
    if services is None or request.client is None:
        return

    decision = await services.limiter.check_origin(request.client.host)
    if not decision.allowed:
        raise HTTPException(
            status_code=429,
            detail=f"Too many requests. Retry after {decision.retry_after} seconds.",
            headers={"Retry-After": str(decision.retry_after)},
        )
