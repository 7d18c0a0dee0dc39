"""
Fixed-window rate limiter for the Gateway.
"""

from typing import Dict, Any, Optional, TYPE_CHECKING

from fastapi import Request

from shared.logging import get_logger
from ..caching.store import KeyValueStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_LIMITS = {
    "public": 100,          # per IP
    "authenticated": 1000,  # per user
    "admin": 30,            # per admin user
}


class FixedWindowRateLimiter:
    """Distributed fixed-window request counter kept in the key-value store."""

    def __init__(
        self,
        store: KeyValueStore,
        limits: Optional[Dict[str, int]] = None,
        window_seconds: int = 60,
        *,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.window_seconds = window_seconds
        self.metrics = metrics
        self.logger = get_logger("gateway.rate_limiter")
        self.default_limits = dict(DEFAULT_LIMITS)
        if limits:
            self.default_limits.update(limits)

    def _make_key(self, client_id: str, category: str) -> str:
        """Generate rate limit key."""
        return f"rate_limit:{category}:{client_id}"

    def _limit_for(self, category: str) -> int:
        return self.default_limits.get(category, self.default_limits["authenticated"])

    async def check_rate_limit(self, client_id: str, category: str = "authenticated") -> Dict[str, Any]:
        """Count one request and report whether it fits in the current window."""
        limit = self._limit_for(category)
        key = self._make_key(client_id, category)

        try:
            count, reset_in = await self.store.increment(key, self.window_seconds)
        except Exception as e:
            self.logger.error("Rate limit check error", error=str(e), client_id=client_id)
            return {
                "allowed": True,
                "current_count": 0,
                "limit": limit,
                "remaining": limit,
                "reset_in_seconds": self.window_seconds,
                "error": str(e)
            }

        if count > limit:
            self.logger.warning(
                "Rate limit exceeded",
                client_id=client_id,
                category=category,
                current_count=count,
                limit=limit
            )
            if self.metrics:
                self.metrics.increment_counter("rate_limit_hits_total", category=category)
            return {
                "allowed": False,
                "current_count": count,
                "limit": limit,
                "remaining": 0,
                "reset_in_seconds": reset_in,
                "retry_after": reset_in
            }

        return {
            "allowed": True,
            "current_count": count,
            "limit": limit,
            "remaining": max(0, limit - count),
            "reset_in_seconds": reset_in
        }

    async def reset_rate_limit(self, client_id: str, category: str = "authenticated") -> bool:
        """Reset rate limit for a client."""
        try:
            await self.store.delete(self._make_key(client_id, category))
            self.logger.info("Rate limit reset", client_id=client_id, category=category)
            return True
        except Exception as e:
            self.logger.error("Rate limit reset error", error=str(e))
            return False


class RateLimitMiddleware:
    """Maps requests onto rate limit identities and categories."""

    EXEMPT_PATHS = ("/health", "/metrics")

    def __init__(self, rate_limiter: FixedWindowRateLimiter):
        self.rate_limiter = rate_limiter
        self.logger = get_logger("gateway.rate_limit_middleware")

    def is_exempt(self, request: Request) -> bool:
        return request.url.path in self.EXEMPT_PATHS

    async def check_request(self, request: Request) -> Dict[str, Any]:
        """Check rate limit for request."""
        client_id = self._get_client_id(request)
        category = self._categorize_endpoint(request)
        return await self.rate_limiter.check_rate_limit(client_id, category)

    def _get_client_id(self, request: Request) -> str:
        """Extract client ID from request."""
        # user_id is set on request.state by the auth middleware
        user_info = getattr(request.state, 'user_info', None)
        if isinstance(user_info, dict) and user_info.get('user_id'):
            return f"user:{user_info['user_id']}"

        forwarded_for = request.headers.get('X-Forwarded-For')
        if forwarded_for:
            return forwarded_for.split(',')[0].strip()

        real_ip = request.headers.get('X-Real-IP')
        if real_ip:
            return real_ip

        return request.client.host if request.client else 'unknown'

    def _categorize_endpoint(self, request: Request) -> str:
        """Categorize endpoint for rate limiting."""
        path = request.url.path
        authenticated = isinstance(getattr(request.state, 'user_info', None), dict)

        if path.startswith('/api/admin'):
            return 'admin'
        if path.startswith('/api/') and authenticated:
            return 'authenticated'
        return 'public'
