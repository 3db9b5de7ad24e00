"""Shared FastAPI dependencies: principal, shop access, rate limiting."""
from typing import Optional

from fastapi import Depends, HTTPException, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from marketplace.auth import Principal, decode_access_token, require_admin, require_shop_access
from marketplace.config import get_settings
from marketplace.database import get_db
from marketplace.exceptions import NotFoundError
from marketplace.models.shop import Shop
from marketplace.services.ip_blocker import IPBlocker
from marketplace.services.rate_limiter import (
    KEY_BY_ENDPOINT,
    KEY_BY_USER,
    RateLimiter,
    RateLimitPolicy,
)

bearer_scheme = HTTPBearer(auto_error=False)


def client_ip(request: Request) -> str:
    """
    Client address used for rate limiting and blocking.

    X-Forwarded-For is only read when the direct peer is a trusted proxy;
    hops are walked right to left and the first untrusted one wins.
    """
    peer = request.client.host if request.client else "unknown"
    trusted = set(get_settings().trusted_proxies)
    if peer not in trusted:
        return peer

    forwarded = request.headers.get("x-forwarded-for", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return hops[0] if hops else peer


def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    principal = decode_access_token(credentials.credentials)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    request.state.principal = principal
    return principal


def get_admin_principal(principal: Principal = Depends(get_current_principal)) -> Principal:
    require_admin(principal)
    return principal


def get_owned_shop(
    shop_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> Shop:
    """Load the path's shop and check the caller may act on it."""
    shop = db.get(Shop, shop_id)
    if not shop:
        raise NotFoundError("Shop not found")
    require_shop_access(principal, shop)
    return shop


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_ip_blocker(request: Request) -> IPBlocker:
    return request.app.state.ip_blocker


def rate_limit(
    window_seconds: Optional[int] = None,
    max_requests: Optional[int] = None,
    key_by: str = "ip",
    prefix: str = "ratelimit",
    skip=None,
    settings_prefix: str = "rate_limit",
):
    """
    Build a dependency enforcing a fixed-window limit on a route.

    Sets X-RateLimit-* headers on allowed responses and raises 429 with
    Retry-After once the window's budget is spent. Defaults come from
    settings at request time, read from
    ``{settings_prefix}_window_seconds`` and ``{settings_prefix}_max_requests``.
    """

    async def dependency(request: Request, response: Response) -> None:
        settings = get_settings()
        policy = RateLimitPolicy(
            window_seconds=window_seconds
            or getattr(settings, f"{settings_prefix}_window_seconds"),
            max_requests=max_requests
            or getattr(settings, f"{settings_prefix}_max_requests"),
            key_by=key_by,
            prefix=prefix,
            skip=skip,
            whitelist=frozenset(settings.rate_limit_whitelist),
        )
        if policy.skip and policy.skip(request):
            return

        ip = client_ip(request)
        principal = getattr(request.state, "principal", None)
        if principal is None:
            auth = request.headers.get("authorization", "")
            if auth.lower().startswith("bearer "):
                principal = decode_access_token(auth[7:].strip())

        identifier = ip
        if key_by == KEY_BY_USER and principal:
            identifier = f"user:{principal.user_id}"
        elif key_by == KEY_BY_ENDPOINT:
            owner = f"user:{principal.user_id}" if principal else ip
            identifier = f"{owner}:{request.method}:{request.url.path}"

        limiter = get_rate_limiter(request)
        result = await limiter.check(identifier, request.url.path, policy, offender=ip)

        headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(int(result.reset_at)),
        }
        if not result.allowed:
            headers["Retry-After"] = str(result.retry_after)
            raise HTTPException(
                status_code=429,
                detail=f"Too many requests. Try again in {result.retry_after} seconds.",
                headers=headers,
            )
        response.headers.update(headers)

    return dependency


standard_rate_limit = rate_limit()
