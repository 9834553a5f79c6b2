"""
Auth dependencies, rate limiting, and request logging middleware.
"""

import logging
import math
import os
import time
import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from binmarket.api_errors import APIError
from binmarket.auth import User


ADMIN_KEY = os.environ.get("BINMARKET_ADMIN_KEY", "")
RATE_LIMIT_PER_MIN = int(os.environ.get("RATE_LIMIT_PER_MIN", "60"))

request_logger = logging.getLogger("binmarket.request")


# ---------------------------------------------------------------------------
# Rate limiting: one token bucket per API key
# ---------------------------------------------------------------------------

@dataclass
class _Bucket:
    tokens: float
    updated: float


class RateLimiter:
    """
    Token buckets keyed by API key hash. Each bucket holds up to `rate`
    tokens and refills continuously at `rate` per minute; a request
    spends one.
    """

    def __init__(self, rate: int = 60):
        self.rate = rate
        self.buckets: dict[str, _Bucket] = {}

    def _refilled(self, key_hash: str, now: float) -> _Bucket:
        bucket = self.buckets.get(key_hash)
        if bucket is None:
            bucket = self.buckets[key_hash] = _Bucket(float(self.rate), now)
        per_second = self.rate / 60.0
        bucket.tokens = min(float(self.rate),
                            bucket.tokens + (now - bucket.updated) * per_second)
        bucket.updated = now
        return bucket

    def check(self, key_hash: str) -> tuple[bool, dict[str, str]]:
        """Spend a token if one is available. Returns (allowed, headers)."""
        bucket = self._refilled(key_hash, time.monotonic())
        allowed = bucket.tokens >= 1.0
        if allowed:
            bucket.tokens -= 1.0

        headers = {
            "X-RateLimit-Limit": str(self.rate),
            "X-RateLimit-Remaining": str(int(bucket.tokens)),
        }
        if not allowed:
            wait = (1.0 - bucket.tokens) * 60.0 / self.rate
            headers["Retry-After"] = str(max(1, math.ceil(wait)))
        return allowed, headers


rate_limiter = RateLimiter(RATE_LIMIT_PER_MIN)


# ---------------------------------------------------------------------------
# Request logging
# ---------------------------------------------------------------------------

class RequestLogMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and latency with a short request id."""

    async def dispatch(self, request: Request,
                       call_next: RequestResponseEndpoint) -> Response:
        request.state.request_id = f"req_{uuid.uuid4().hex[:12]}"

        start = time.perf_counter()
        response: Response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000

        request_logger.info(
            "[%s] %s -> %d (%.0fms) %s",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request.state.request_id,
        )
        return response


# ---------------------------------------------------------------------------
# Auth dependencies
# ---------------------------------------------------------------------------

def _bearer(request: Request) -> str:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise APIError(401, "auth_required",
                       "Send 'Authorization: Bearer <api key>'")
    return token


async def require_auth(request: Request, response: Response) -> User:
    """Resolve the caller's API key to a User and charge its rate bucket."""
    token = _bearer(request)
    if ADMIN_KEY and token == ADMIN_KEY:
        raise APIError(401, "invalid_api_key",
                       "The admin key is not a user key; register at "
                       "/v1/auth/register for one")

    user = request.app.state.auth_store.authenticate(token)
    if user is None:
        raise APIError(401, "invalid_api_key", "Unknown or rotated API key")

    allowed, headers = rate_limiter.check(user.api_key_hash)
    response.headers.update(headers)
    if not allowed:
        raise APIError(429, "rate_limited",
                       f"More than {rate_limiter.rate} requests per minute",
                       details={"retry_after": headers["Retry-After"]})
    return user


async def require_admin(request: Request) -> None:
    if not ADMIN_KEY:
        raise APIError(500, "admin_required",
                       "Server has no BINMARKET_ADMIN_KEY configured")
    if _bearer(request) != ADMIN_KEY:
        raise APIError(403, "admin_required", "Admin key required")


AuthUser = Annotated[User, Depends(require_auth)]
AdminDep = Annotated[None, Depends(require_admin)]
