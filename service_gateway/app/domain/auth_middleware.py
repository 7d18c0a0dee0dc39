"""
Authentication middleware for Gateway.
"""

import hashlib
import time
from typing import Any, Callable, Dict, TYPE_CHECKING

from fastapi import Depends, Request
from jose import JWTError, jwt

from shared.errors import AuthenticationError, AuthorizationError
from shared.logging import get_logger, set_user_context
from ..caching.policy import TOKEN_CLAIMS

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..caching.cache_manager import CacheManager
    from ..caching.model_cache import CacheableRepository


class AuthMiddleware:
    """Authentication middleware for Gateway.

    Bearer tokens are verified locally; their claims are cached for the
    shorter of the token's remaining lifetime and the claims TTL. The user
    record is then read through the cached users repository so that a
    suspended account is rejected as soon as its cache entry is invalidated.
    """

    def __init__(
        self,
        cache_manager: "CacheManager",
        users: "CacheableRepository",
        *,
        jwt_secret: str,
        jwt_algorithm: str = "HS256",
    ):
        self.cache_manager = cache_manager
        self.users = users
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.logger = get_logger("gateway.auth_middleware")

    async def authenticate_request(self, request: Request) -> Dict[str, Any]:
        """Authenticate incoming request with a JWT bearer token."""
        auth_header = request.headers.get("Authorization")
        if not auth_header:
            raise AuthenticationError("Authorization header required")

        if not auth_header.startswith("Bearer "):
            raise AuthenticationError("Invalid authorization header format")

        token = auth_header[7:]  # Remove "Bearer " prefix
        claims = await self.verify_token(token)

        user_id = claims.get("sub") or claims.get("id")
        if user_id is None:
            raise AuthenticationError("Token has no subject")

        user = await self.users.find_by_pk(user_id)
        if user is None:
            self.logger.warning("Token subject not found", user_id=user_id)
            raise AuthenticationError("User not found")

        if user.status != "active":
            self.logger.warning("Inactive user rejected", user_id=user.id, status=user.status)
            raise AuthenticationError("User account is not active")

        user_info = {
            "user_id": user.id,
            "username": user.username,
            "tenant_id": user.tenant_id,
            "roles": list(user.roles),
        }
        request.state.user_info = user_info
        set_user_context(user_id=str(user.id), tenant_id=user.tenant_id)

        self.logger.info(
            "Request authenticated with JWT",
            user_id=user.id,
            tenant_id=user.tenant_id
        )
        return user_info

    async def verify_token(self, token: str) -> Dict[str, Any]:
        """Decode ``token``, serving repeated verifications from the cache."""
        cache_key = self.token_cache_key(token)
        claims = await self.cache_manager.get(TOKEN_CLAIMS.prefix, cache_key)
        if isinstance(claims, dict):
            return claims

        try:
            claims = jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
        except JWTError as e:
            self.logger.warning("JWT authentication failed", error=str(e))
            raise AuthenticationError("Invalid or expired token") from e

        ttl = int(TOKEN_CLAIMS.ttl)
        expires_at = claims.get("exp")
        if expires_at is not None:
            ttl = min(ttl, int(expires_at - time.time()))
        if ttl > 0:
            await self.cache_manager.set(TOKEN_CLAIMS.prefix, cache_key, claims, ttl)

        return claims

    def issue_token(self, user_id: Any, expires_in: int = 3600, **extra_claims) -> str:
        """Sign a token for ``user_id``."""
        now = int(time.time())
        claims = {"sub": str(user_id), "iat": now, "exp": now + expires_in}
        claims.update(extra_claims)
        return jwt.encode(claims, self.jwt_secret, algorithm=self.jwt_algorithm)

    async def revoke_token(self, token: str) -> bool:
        """Drop cached claims so the next request re-verifies the token."""
        return await self.cache_manager.delete(TOKEN_CLAIMS.prefix, self.token_cache_key(token))

    @staticmethod
    def token_cache_key(token: str) -> str:
        return f"auth:{hashlib.sha256(token.encode('utf-8')).hexdigest()}"


async def get_current_user(request: Request) -> Dict[str, Any]:
    """FastAPI dependency for getting current user."""
    user_info = getattr(request.state, "user_info", None)
    if not user_info:
        message = getattr(request.state, "auth_error", None) or "Authentication required"
        raise AuthenticationError(message)
    return user_info


def require_roles(*roles: str) -> Callable[..., Any]:
    """Dependency factory admitting users holding any of ``roles``; admins always pass."""
    allowed = set(roles) | {"admin"}

    async def check_roles(user_info: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if not allowed.intersection(user_info.get("roles") or []):
            raise AuthorizationError(
                "Insufficient role",
                details={"required": sorted(roles)}
            )
        return user_info

    return check_roles
