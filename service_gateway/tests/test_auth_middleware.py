"""
Unit tests for AuthMiddleware.
"""

import time
from unittest.mock import MagicMock, patch

import pytest
import pytest_asyncio
from fastapi import Request
from jose import jwt

from service_gateway.app.caching.model_cache import AutoClearRepository, ModelCacheOptions
from service_gateway.app.domain.auth_middleware import AuthMiddleware, get_current_user, require_roles
from service_gateway.app.persistence import MemoryRepository, User
from shared.errors import AuthenticationError, AuthorizationError

SECRET = "test-secret"


class TestAuthMiddleware:
    """Test cases for AuthMiddleware."""

    @pytest.fixture
    def users(self, cache_manager):
        return AutoClearRepository(MemoryRepository(User), cache_manager, ModelCacheOptions.for_entity("User"))

    @pytest.fixture
    def auth_middleware(self, cache_manager, users):
        """Create AuthMiddleware instance."""
        return AuthMiddleware(cache_manager, users, jwt_secret=SECRET)

    @pytest_asyncio.fixture
    async def user(self, users):
        return await users.create({
            "username": "john.doe",
            "email": "john.doe@example.com",
            "tenant_id": "tenant-1",
            "roles": ["user", "merchant"],
        })

    @pytest.fixture
    def mock_request(self):
        """Create mock request."""
        request = MagicMock(spec=Request)
        request.headers = {}
        request.state = MagicMock(spec=[])
        return request

    @pytest.mark.asyncio
    async def test_authenticate_request_jwt_success(self, auth_middleware, mock_request, user):
        """Test successful JWT authentication."""
        token = auth_middleware.issue_token(user.id)
        mock_request.headers = {"Authorization": f"Bearer {token}"}

        user_info = await auth_middleware.authenticate_request(mock_request)

        assert user_info == {
            "user_id": user.id,
            "username": "john.doe",
            "tenant_id": "tenant-1",
            "roles": ["user", "merchant"],
        }
        assert mock_request.state.user_info == user_info

    @pytest.mark.asyncio
    async def test_authenticate_request_no_header(self, auth_middleware, mock_request):
        with pytest.raises(AuthenticationError, match="Authorization header required"):
            await auth_middleware.authenticate_request(mock_request)

    @pytest.mark.asyncio
    async def test_authenticate_request_invalid_format(self, auth_middleware, mock_request):
        mock_request.headers = {"Authorization": "Basic abc"}

        with pytest.raises(AuthenticationError, match="Invalid authorization header format"):
            await auth_middleware.authenticate_request(mock_request)

    @pytest.mark.asyncio
    async def test_invalid_signature_is_rejected(self, auth_middleware, mock_request, user):
        token = jwt.encode({"sub": str(user.id)}, "other-secret", algorithm="HS256")
        mock_request.headers = {"Authorization": f"Bearer {token}"}

        with pytest.raises(AuthenticationError, match="Invalid or expired token"):
            await auth_middleware.authenticate_request(mock_request)

    @pytest.mark.asyncio
    async def test_expired_token_is_rejected(self, auth_middleware, mock_request, user):
        token = auth_middleware.issue_token(user.id, expires_in=-10)
        mock_request.headers = {"Authorization": f"Bearer {token}"}

        with pytest.raises(AuthenticationError):
            await auth_middleware.authenticate_request(mock_request)

    @pytest.mark.asyncio
    async def test_unknown_user_is_rejected(self, auth_middleware, mock_request):
        mock_request.headers = {"Authorization": f"Bearer {auth_middleware.issue_token(404)}"}

        with pytest.raises(AuthenticationError, match="User not found"):
            await auth_middleware.authenticate_request(mock_request)

    @pytest.mark.asyncio
    async def test_suspended_user_is_rejected_after_update(self, auth_middleware, mock_request, users, user):
        """Updating the user invalidates the cached record the middleware reads."""
        mock_request.headers = {"Authorization": f"Bearer {auth_middleware.issue_token(user.id)}"}
        await auth_middleware.authenticate_request(mock_request)

        await users.update(user.id, {"status": "suspended"})

        with pytest.raises(AuthenticationError, match="not active"):
            await auth_middleware.authenticate_request(mock_request)

    @pytest.mark.asyncio
    async def test_claims_cached_under_token_hash(self, auth_middleware, store, user):
        token = auth_middleware.issue_token(user.id, expires_in=120)

        claims = await auth_middleware.verify_token(token)

        key = f"token:{AuthMiddleware.token_cache_key(token)}"
        assert key in store.data
        assert token not in key
        assert 0 < store.ttl(key) <= 120
        assert claims["sub"] == str(user.id)

    @pytest.mark.asyncio
    async def test_cached_claims_skip_decoding(self, auth_middleware, user):
        token = auth_middleware.issue_token(user.id)
        await auth_middleware.verify_token(token)

        with patch("service_gateway.app.domain.auth_middleware.jwt.decode") as decode:
            claims = await auth_middleware.verify_token(token)

        decode.assert_not_called()
        assert claims["sub"] == str(user.id)

    @pytest.mark.asyncio
    async def test_claims_ttl_capped_by_token_lifetime(self, auth_middleware, store, user):
        token = auth_middleware.issue_token(user.id, expires_in=3600)

        await auth_middleware.verify_token(token)

        assert store.ttl(f"token:{AuthMiddleware.token_cache_key(token)}") == 300

    @pytest.mark.asyncio
    async def test_tokens_with_shared_prefix_do_not_collide(self, auth_middleware):
        first = jwt.encode({"sub": "1", "exp": int(time.time()) + 60}, SECRET, algorithm="HS256")
        second = jwt.encode({"sub": "2", "exp": int(time.time()) + 60}, SECRET, algorithm="HS256")
        assert first[:10] == second[:10]

        assert (await auth_middleware.verify_token(first))["sub"] == "1"
        assert (await auth_middleware.verify_token(second))["sub"] == "2"

    @pytest.mark.asyncio
    async def test_revoke_token_drops_cached_claims(self, auth_middleware, store, user):
        token = auth_middleware.issue_token(user.id)
        await auth_middleware.verify_token(token)

        assert await auth_middleware.revoke_token(token) is True
        assert store.data.get(f"token:{AuthMiddleware.token_cache_key(token)}") is None


class TestAuthDependencies:
    """Test cases for the user and role dependencies."""

    @pytest.fixture
    def mock_request(self):
        request = MagicMock(spec=Request)
        request.state = MagicMock(spec=[])
        return request

    @pytest.mark.asyncio
    async def test_get_current_user(self, mock_request):
        mock_request.state.user_info = {"user_id": 1, "roles": ["user"]}

        assert (await get_current_user(mock_request))["user_id"] == 1

    @pytest.mark.asyncio
    async def test_get_current_user_reports_auth_error(self, mock_request):
        mock_request.state.auth_error = "User account is not active"

        with pytest.raises(AuthenticationError, match="not active"):
            await get_current_user(mock_request)

    @pytest.mark.asyncio
    async def test_require_roles(self):
        check = require_roles("merchant")

        assert await check({"user_id": 1, "roles": ["merchant"]})
        assert await check({"user_id": 2, "roles": ["admin"]})
        with pytest.raises(AuthorizationError):
            await check({"user_id": 3, "roles": ["user"]})
