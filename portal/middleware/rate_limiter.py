from __future__ import annotations

import time
from typing import Optional, Tuple

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from portal.core.config import settings
from portal.core.logging import get_structlog_logger
from portal.services.redis import get_redis_client

logger = get_structlog_logger(__name__)


class RateLimitingMiddleware(BaseHTTPMiddleware):
    """Fixed-window rate limiting per client using Redis. Fails open."""

    def __init__(self, app, exempt_paths: Optional[list[str]] = None):
        super().__init__(app)
        self.redis = None
        self.rate_limit_requests = settings.rate_limit_requests
        self.rate_limit_period = settings.rate_limit_period
        self.exempt_paths = exempt_paths or [
            "/health",
            "/metrics",
            "/docs",
            "/redoc",
            "/openapi.json",
            f"{settings.api_prefix}/webhooks/stripe",
        ]

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths or "/health" in request.url.path:
            return await call_next(request)

        client_id = self._get_client_id(request)
        allowed, remaining, reset_time = await self._check_rate_limit(client_id, request)

        if not allowed:
            retry_after = max(reset_time - int(time.time()), 0)
            logger.warning(
                "rate_limit.exceeded",
                client_id=client_id[:50],
                path=request.url.path,
                method=request.method,
                retry_after=retry_after,
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "code": "rate_limited",
                    "message": "Rate limit exceeded",
                    "details": {
                        "limit": self.rate_limit_requests,
                        "period": self.rate_limit_period,
                        "retry_after": retry_after,
                    },
                },
                headers={"Retry-After": str(retry_after)},
            )

        response = await call_next(request)

        response.headers["X-RateLimit-Limit"] = str(self.rate_limit_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(reset_time)

        return response

    def _get_client_id(self, request: Request) -> str:
        user = getattr(request.state, "user", None)
        if user and user.get("id"):
            return f"user:{user['id']}"

        client_ip = request.client.host if request.client else "unknown"
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            client_ip = forwarded_for.split(",")[0].strip()

        return f"ip:{client_ip}"

    async def _check_rate_limit(self, client_id: str, request: Request) -> Tuple[bool, int, int]:
        window = int(time.time() // self.rate_limit_period)
        reset_time = (window + 1) * self.rate_limit_period
        key = f"ratelimit:{client_id}:{window}"

        try:
            if not self.redis:
                self.redis = await get_redis_client()

            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, self.rate_limit_period)
                results = await pipe.execute()
                current_count = results[0]

        except Exception as e:
            logger.error("rate_limit.error", error=str(e), client_id=client_id[:50], path=request.url.path)
            return True, self.rate_limit_requests, reset_time

        remaining = max(0, self.rate_limit_requests - current_count)
        return current_count <= self.rate_limit_requests, remaining, reset_time
