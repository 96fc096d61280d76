"""Rate limiting for the rental services using SlowAPI.

Requests are bucketed per acting user when the ``X-Actor-Id`` header is
present, falling back to the client address for anonymous reads.
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .config import get_settings


def actor_or_address(request: Request) -> str:
    actor_id = request.headers.get("X-Actor-Id")
    if actor_id:
        return f"actor:{actor_id}"
    return get_remote_address(request)


settings = get_settings()
limiter = Limiter(
    key_func=actor_or_address,
    default_limits=[settings.default_rate_limit],
    enabled=settings.rate_limiting_enabled,
)


def rate_limit_handler(_: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"code": "rate_limited", "detail": f"Rate limit exceeded: {exc.detail}"},
    )


def apply_rate_limiter(app: FastAPI) -> None:
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
