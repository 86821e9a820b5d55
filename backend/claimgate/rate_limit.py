"""
Claimgate - Request Rate Limiting

slowapi limiter keyed by client origin. Limits apply per origin:
a default allowance for every /api route plus a tighter one on
submit-observation. The limiter is process-wide; create_app() installs
the limit strings of the settings it was built with.
"""
import logging
from typing import Dict, List

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

_active_limits: Dict[str, str] = {}


def configure_rate_limits(settings: Settings) -> None:
    _active_limits["default"] = settings.rate_limit_default
    _active_limits["submit"] = settings.rate_limit_submit
    logger.info(
        f"Rate limits: default={settings.rate_limit_default} "
        f"submit={settings.rate_limit_submit}"
    )


def default_limit() -> str:
    return _active_limits.get("default") or get_settings().rate_limit_default


def submit_limit() -> str:
    return _active_limits.get("submit") or get_settings().rate_limit_submit


def _request_settings(request: Request) -> Settings:
    services = getattr(request.app.state, "services", None)
    if services is not None:
        return services.settings
    return get_settings()


def forwarded_origin(forwarded: str, trusted_hops: int) -> str:
    """
    Pick the client address out of an X-Forwarded-For chain.

    Each proxy appends the peer it saw, so only the last ``trusted_hops``
    entries were written by infrastructure we run; everything to their left
    is whatever the client sent.
    """
    hops: List[str] = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    if not hops:
        return ""
    depth = min(max(trusted_hops, 1), len(hops))
    return hops[-depth]


def client_origin(request: Request) -> str:
    """Client IP, honouring X-Forwarded-For only when running behind a trusted proxy."""
    settings = _request_settings(request)
    if settings.trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            origin = forwarded_origin(forwarded, settings.trusted_proxy_hops)
            if origin:
                return origin
    if request.client is not None:
        return request.client.host
    return "unknown"


limiter = Limiter(key_func=client_origin, default_limits=[default_limit])


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    origin = client_origin(request)
    logger.warning(f"Rate limit exceeded for {origin} on {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "error": "Too many requests, please try again later.",
            "limit": str(exc.detail),
        },
    )
