"""
Rate limiting for carrier-backed endpoints

Every /rates call costs a Stallion API request, so it carries its own limit
(RATE_LIMIT_RATES) on top of the app default. Counters live in
RATE_LIMIT_STORAGE_URI: memory:// for a single worker, a redis:// URI when
several workers share the limit.
"""
import logging

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

from shipping_bridge.core.config import settings

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Caller IP behind the platform proxy; the first X-Forwarded-For hop wins."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_client_ip,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
)


def _window_seconds(exc: RateLimitExceeded) -> int:
    item = getattr(getattr(exc, "limit", None), "limit", None)
    if item is None:
        return 60
    return int(item.get_expiry())


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 in the same envelope as every other shipping error."""
    window = _window_seconds(exc)
    logger.warning(f"[RateLimit] {get_client_ip(request)} exceeded {exc.detail} on {request.url.path}")

    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "message": f"Too many requests, limit is {exc.detail}",
            "code": "RATE_LIMITED",
            "retryable": True,
        },
        headers={"Retry-After": str(window)},
    )
