"""
Rate limiting setup using slowapi.

Uses Redis as storage backend when REDIS_URL is set so limits hold across
workers, otherwise in-memory storage.
"""

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from ..config import get_settings


def _make_limiter() -> Limiter:
    """Create a Limiter with Redis (preferred) or in-memory backend."""
    settings = get_settings()
    storage_uri = f"{settings.redis_url}/1" if settings.redis_url else "memory://"

    return Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit_global],
        storage_uri=storage_uri,
        strategy="fixed-window",
        enabled=settings.rate_limit_enabled,
    )


limiter = _make_limiter()


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return a 429 in the same shape as domain errors."""
    retry_after = getattr(exc, "retry_after", 60)
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "detail": f"Rate limit exceeded: {exc.detail}",
            "retryable": True,
        },
        headers={"Retry-After": str(retry_after)},
    )
