"""Rate limiting dependency for read-only and account endpoints."""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, Response

from routers.auth_scope import get_optional_identity
from services.generation import Identity
from services.plans import DEFAULT_TIER
from services.rate_limiter import get_rate_limiter, rate_limit_headers


def _client_identifier(request: Request, identity: Optional[Identity]) -> str:
    if identity is not None:
        return f"user:{identity.user_id}"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "ip:unknown"


def rate_limit(action_class: str) -> Callable[..., None]:
    """Return a FastAPI dependency that enforces per-caller request quotas."""

    async def _dependency(
        request: Request,
        response: Response,
        identity: Optional[Identity] = Depends(get_optional_identity),
    ):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        decision = await get_rate_limiter().check(_client_identifier(request, identity), DEFAULT_TIER, action_class)
        headers = rate_limit_headers(decision)
        if not decision.allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Too many requests. Please wait {decision.retry_after} seconds.",
                headers=headers,
            )
        response.headers.update(headers)

    return _dependency
