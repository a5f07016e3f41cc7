import logging
import time
from dataclasses import dataclass
from typing import Optional, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from biensperience.core.errors import RateLimitError, app_error_handler
from biensperience.core.logging import get_request_id
from biensperience.core.ratelimit import InMemoryRateLimiter, RateLimitConfig, build_rate_limit_config

logger = logging.getLogger("biensperience")

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
STRICT_PREFIXES = ("/api/invites", "/api/permissions")


@dataclass
class RoutePolicy:
    per_minute: int
    burst: int
    category: str


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Token-bucket rate limiting middleware (opt-in via settings)."""

    def __init__(self, app, *, config: Optional[RateLimitConfig] = None, time_fn: Optional[Callable[[], float]] = None):
        super().__init__(app)
        self.config = config or build_rate_limit_config()
        self.limiter = InMemoryRateLimiter(self.config, time_fn=time_fn or time.monotonic)
        if hasattr(app, "state"):
            setattr(app.state, "rate_limiter", self.limiter)

    def _policy_for_request(self, request: Request) -> Optional[RoutePolicy]:
        path = request.url.path
        method = request.method.upper()

        if path.startswith("/health"):
            return None

        # Invite issuance/redemption and permission changes
        if method in MUTATING_METHODS and path.startswith(STRICT_PREFIXES):
            factor = self.config.mutation_factor
            return RoutePolicy(
                per_minute=max(1, int(self.config.per_minute_default * factor)),
                burst=max(1, int(self.config.burst_default * factor)),
                category="strict",
            )

        category = "mutation" if method in MUTATING_METHODS else "read"
        return RoutePolicy(
            per_minute=self.config.per_minute_default,
            burst=self.config.burst_default,
            category=category,
        )

    def _client_key(self, request: Request, category: str) -> str:
        user_id = request.headers.get("X-User-Id")
        if user_id:
            return f"user:{user_id}:{category}"

        ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "unknown")
        return f"ip:{ip}:{category}"

    async def dispatch(self, request: Request, call_next):
        if not self.config.enabled:
            return await call_next(request)

        policy = self._policy_for_request(request)
        if not policy:
            return await call_next(request)

        key = self._client_key(request, policy.category)
        if self.limiter.allow(key, per_minute=policy.per_minute, burst=policy.burst):
            return await call_next(request)

        rid = getattr(request.state, "request_id", None) or get_request_id()
        logger.warning(
            "rate_limit.blocked",
            extra={"request_id": rid, "path": request.url.path, "method": request.method, "category": policy.category},
        )

        response = await app_error_handler(
            request,
            RateLimitError("Rate limit exceeded for this endpoint", request_id=rid),
        )
        retry_after = max(1, int(60 / max(1, policy.per_minute)))
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-RateLimit-Limit"] = str(policy.per_minute)
        response.headers["X-RateLimit-Remaining"] = "0"
        response.headers["X-RateLimit-Reset"] = "60"
        return response
