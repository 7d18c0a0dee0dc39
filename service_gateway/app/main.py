"""
API Gateway service for the Tenant Gateway.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import AuthenticationError, NotFoundError, RateLimitError, ValidationError
from .caching import (
    AutoClearRepository,
    CacheManager,
    CachePrefix,
    CacheTTL,
    ModelCacheOptions,
    RedisStore,
    RouteCache,
    RouteCacheOptions,
    clear_route_cache,
)
from .caching.policy import REGISTER_CONFIG, ROUTE_RESPONSES, USER_BY_USERNAME
from .caching.route_cache import CACHE_BYPASS, CACHE_STATUS_HEADER, principal_id
from .caching.store import KeyValueStore
from .domain.auth_middleware import AuthMiddleware, get_current_user, require_roles
from .persistence import MemoryRepository, Product, RegisterConfig, Shop, User
from .ratelimit.fixed_window import FixedWindowRateLimiter, RateLimitMiddleware

REGISTER_CONFIG_CACHE_KEY = "register-config"


class ProfileUpdate(BaseModel):
    username: Optional[str] = Field(default=None, min_length=3, max_length=50)
    email: Optional[str] = None


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    stock: int = Field(default=0, ge=0)
    shop_id: Optional[int] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    price: Optional[float] = Field(default=None, ge=0)
    stock: Optional[int] = Field(default=None, ge=0)


class RegisterConfigUpdate(BaseModel):
    real_name_verification: Optional[bool] = None
    real_name_required: Optional[bool] = None
    phone_verification: Optional[bool] = None
    phone_required: Optional[bool] = None
    captcha_type: Optional[str] = None


class CacheClearRequest(BaseModel):
    cache_type: str = "all"


class GatewayService(BaseService):
    """API Gateway service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, store: Optional[KeyValueStore] = None):
        super().__init__("gateway", 8000, config)
        self.store = store or RedisStore(
            self.config.redis_url,
            max_connections=self.config.redis_max_connections,
        )
        self.cache_manager = CacheManager(
            self.store,
            metrics=self.metrics,
            enabled=self.config.cache_enabled,
        )

        self.users = AutoClearRepository(
            MemoryRepository(User), self.cache_manager, ModelCacheOptions.for_entity("User")
        )
        self.products = AutoClearRepository(
            MemoryRepository(Product), self.cache_manager, ModelCacheOptions.for_entity("Product")
        )
        self.shops = AutoClearRepository(
            MemoryRepository(Shop), self.cache_manager, ModelCacheOptions.for_entity("Shop")
        )
        self.register_configs = MemoryRepository(RegisterConfig)

        self.auth_middleware = AuthMiddleware(
            self.cache_manager,
            self.users,
            jwt_secret=self.config.jwt_secret,
            jwt_algorithm=self.config.jwt_algorithm,
        )
        self.rate_limiter = FixedWindowRateLimiter(
            self.store,
            limits=self.config.rate_limits,
            window_seconds=self.config.rate_limit_window_seconds,
            metrics=self.metrics,
        )
        self.rate_limit_middleware = RateLimitMiddleware(self.rate_limiter)

        bypass_param = self.config.route_cache_bypass_param
        self.profile_cache = RouteCache(
            self.cache_manager,
            RouteCacheOptions(ttl=CacheTTL.SHORT, prefix=CachePrefix.API, bypass_param=bypass_param),
        )
        self.merchant_cache = RouteCache(
            self.cache_manager,
            RouteCacheOptions(ttl=ROUTE_RESPONSES.ttl, prefix=ROUTE_RESPONSES.prefix, bypass_param=bypass_param),
        )

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.cache_manager.drain()
            await self.store.close()

        self._setup_gateway_middleware()
        self._setup_gateway_routes()
        self._setup_user_routes()
        self._setup_merchant_routes()
        self._setup_admin_routes()

    def _setup_gateway_middleware(self):
        """Set up rate limiting and authentication.

        Authentication is registered last so it runs first: the principal must
        be on ``request.state`` before rate limiting and route caching see the
        request.
        """

        @self.app.middleware("http")
        async def enforce_rate_limit(request: Request, call_next):
            if self.rate_limit_middleware.is_exempt(request):
                return await call_next(request)

            rate_result = await self.rate_limit_middleware.check_request(request)
            if not rate_result.get("allowed", False):
                error = RateLimitError(details={
                    "limit": rate_result.get("limit"),
                    "current_count": rate_result.get("current_count"),
                    "reset_in_seconds": rate_result.get("reset_in_seconds"),
                })
                response = JSONResponse(
                    status_code=error.status_code,
                    content=error.to_response(request.headers.get("X-Request-ID")).model_dump(),
                )
                response.headers["Retry-After"] = str(rate_result.get("retry_after", 0))
            else:
                response = await call_next(request)

            self._set_rate_limit_headers(response, rate_result)
            return response

        @self.app.middleware("http")
        async def authenticate(request: Request, call_next):
            if request.headers.get("Authorization"):
                try:
                    await self.auth_middleware.authenticate_request(request)
                except AuthenticationError as exc:
                    request.state.auth_error = exc.message
            return await call_next(request)

    def _set_rate_limit_headers(self, response: Response, rate_result: Dict[str, Any]) -> None:
        """Propagate rate limiting metadata via standard headers."""
        limit = rate_result.get("limit")
        remaining = rate_result.get("remaining")
        reset = rate_result.get("reset_in_seconds")

        if limit is not None:
            response.headers["X-RateLimit-Limit"] = str(limit)
        if remaining is not None:
            response.headers["X-RateLimit-Remaining"] = str(remaining)
        if reset is not None:
            response.headers["X-RateLimit-Reset"] = str(reset)

    def _format_iso(self, value: datetime) -> str:
        """Format datetime values as ISO-8601 strings with millisecond precision."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        else:
            value = value.astimezone(timezone.utc)
        return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def _setup_gateway_routes(self):
        """Set up gateway-specific routes."""

        @self.app.get("/")
        async def root():
            return {
                "service": "gateway",
                "message": "Tenant Gateway",
                "version": "1.0.0",
                "cache_enabled": self.cache_manager.enabled,
            }

        @self.app.post("/api/auth/logout")
        async def logout(request: Request, user_info: Dict[str, Any] = Depends(get_current_user)):
            token = request.headers.get("Authorization", "")[7:]
            await self.auth_middleware.revoke_token(token)
            return {"user_id": user_info["user_id"], "logged_out": True}

        @self.app.get("/api/config/register")
        async def get_register_config():
            config = await self.cache_manager.get_or_fetch(
                REGISTER_CONFIG.prefix,
                REGISTER_CONFIG_CACHE_KEY,
                self._load_register_config,
                REGISTER_CONFIG.ttl,
            )
            return {"config": config}

        @self.app.post("/api/config/register")
        async def update_register_config(
            update: RegisterConfigUpdate,
            user_info: Dict[str, Any] = Depends(require_roles("admin")),
        ):
            current = await self.register_configs.find_one()
            if current is None:
                current = await self.register_configs.create({})

            changes = update.model_dump(exclude_none=True)
            changes["updated_at"] = datetime.now(timezone.utc)
            updated = await self.register_configs.update(current.id, changes)

            config = updated.model_dump(mode="json")
            await self.cache_manager.set(
                REGISTER_CONFIG.prefix, REGISTER_CONFIG_CACHE_KEY, config, REGISTER_CONFIG.ttl
            )
            self.logger.info("Register config updated", user_id=user_info["user_id"])
            return {"config": config}

    async def _load_register_config(self) -> Dict[str, Any]:
        config = await self.register_configs.find_one()
        if config is None:
            config = await self.register_configs.create({})
        return config.model_dump(mode="json")

    def _setup_user_routes(self):
        """Set up user profile and cached user lookup routes."""
        profile = APIRouter(prefix="/api/user", route_class=self.profile_cache.route_class())

        @profile.get("/profile")
        async def get_profile(user_info: Dict[str, Any] = Depends(get_current_user)):
            user = await self.users.find_by_pk(user_info["user_id"])
            if user is None:
                raise NotFoundError("User not found")
            return {"user": user.model_dump(mode="json")}

        def own_profile_entries(request: Request) -> str:
            return f"user:{principal_id(request)}:GET:/api/user/profile"

        profile_writes = APIRouter(prefix="/api/user")

        @profile_writes.put(
            "/profile",
            dependencies=[Depends(clear_route_cache(self.cache_manager, CachePrefix.API, own_profile_entries))],
        )
        async def update_profile(update: ProfileUpdate, user_info: Dict[str, Any] = Depends(get_current_user)):
            changes = update.model_dump(exclude_none=True)
            if not changes:
                raise ValidationError("No profile fields to update")

            if "username" in changes:
                taken = await self.users.find_one({"username": changes["username"]}, disable_cache=True)
                if taken is not None and taken.id != user_info["user_id"]:
                    raise ValidationError("Username already taken")

            user = await self.users.update(user_info["user_id"], changes)
            if user is None:
                raise NotFoundError("User not found")
            await self.cache_manager.delete(USER_BY_USERNAME.prefix, f"username:{user_info['username']}")
            return {"user": user.model_dump(mode="json")}

        cached_users = APIRouter(prefix="/api/users/cached")

        @cached_users.get("/username/{username}")
        async def get_user_by_username(username: str, user_info: Dict[str, Any] = Depends(get_current_user)):
            user = await self.cache_manager.get_or_fetch(
                USER_BY_USERNAME.prefix,
                f"username:{username}",
                lambda: self._find_user_by_username(username),
                USER_BY_USERNAME.ttl,
            )
            if user is None or not self._same_tenant(user_info, user["tenant_id"]):
                raise NotFoundError("User not found", details={"username": username})
            return {"user": user}

        @cached_users.get("/{user_id}")
        async def get_cached_user(
            user_id: int,
            response: Response,
            user_info: Dict[str, Any] = Depends(get_current_user),
            nocache: bool = Query(default=False),
        ):
            start_time = time.time()
            user = await self.users.find_by_pk(user_id, disable_cache=nocache)
            query_time_ms = round((time.time() - start_time) * 1000, 2)

            if user is None or not self._same_tenant(user_info, user.tenant_id):
                raise NotFoundError("User not found", details={"user_id": user_id})

            if nocache:
                response.headers[CACHE_STATUS_HEADER] = CACHE_BYPASS
            return {
                "user": user.model_dump(mode="json"),
                "meta": {
                    "cache": CACHE_BYPASS if nocache else "ENABLED",
                    "query_time_ms": query_time_ms,
                },
            }

        @cached_users.post("/clear/{user_id}")
        async def clear_cached_user(user_id: int, user_info: Dict[str, Any] = Depends(require_roles("admin"))):
            cleared = await self.users.clear_cache(user_id)
            self.logger.info("User cache cleared", user_id=user_id, cleared_count=len(cleared))
            return {
                "user_id": user_id,
                "cleared_count": len(cleared),
                "timestamp": self._format_iso(datetime.now(timezone.utc)),
            }

        @cached_users.post("/clear-all")
        async def clear_all_cached_users(user_info: Dict[str, Any] = Depends(require_roles("admin"))):
            cleared = await self.users.clear_cache()
            self.logger.info("All user cache entries cleared", cleared_count=len(cleared))
            return {
                "cleared_count": len(cleared),
                "timestamp": self._format_iso(datetime.now(timezone.utc)),
            }

        self.app.include_router(profile)
        self.app.include_router(profile_writes)
        self.app.include_router(cached_users)

    async def _find_user_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        # The username entry is the cache here; find_one entries outlive renames.
        user = await self.users.find_one({"username": username}, disable_cache=True)
        return user.model_dump(mode="json") if user else None

    def _same_tenant(self, user_info: Dict[str, Any], tenant_id: str) -> bool:
        return "admin" in (user_info.get("roles") or []) or user_info.get("tenant_id") == tenant_id

    def _setup_merchant_routes(self):
        """Set up merchant shop and product routes."""
        merchant_only = Depends(require_roles("merchant"))

        merchant_reads = APIRouter(
            prefix="/api/merchant",
            route_class=self.merchant_cache.route_class(),
            dependencies=[merchant_only],
        )

        @merchant_reads.get("/shops")
        async def list_shops(user_info: Dict[str, Any] = Depends(get_current_user)):
            shops = await self.shops.find_all({"merchant_id": user_info["user_id"]})
            return {"shops": [shop.model_dump(mode="json") for shop in shops]}

        @merchant_reads.get("/products/{product_id}")
        async def get_product(product_id: int, user_info: Dict[str, Any] = Depends(get_current_user)):
            product = await self.products.find_by_pk(product_id)
            if product is None or not self._owns(user_info, product.merchant_id):
                raise NotFoundError("Product not found", details={"product_id": product_id})
            return {"product": product.model_dump(mode="json")}

        merchant_writes = APIRouter(
            prefix="/api/merchant",
            dependencies=[
                merchant_only,
                Depends(clear_route_cache(self.cache_manager, ROUTE_RESPONSES.prefix, "/api/merchant/")),
            ],
        )

        @merchant_writes.post("/products", status_code=201)
        async def create_product(product: ProductCreate, user_info: Dict[str, Any] = Depends(get_current_user)):
            if product.shop_id is not None:
                shop = await self.shops.find_by_pk(product.shop_id)
                if shop is None or not self._owns(user_info, shop.merchant_id):
                    raise ValidationError("Unknown shop", details={"shop_id": product.shop_id})

            created = await self.products.create({
                **product.model_dump(),
                "merchant_id": user_info["user_id"],
                "tenant_id": user_info["tenant_id"],
            })
            return {"product": created.model_dump(mode="json")}

        @merchant_writes.put("/products/{product_id}")
        async def update_product(
            product_id: int,
            update: ProductUpdate,
            user_info: Dict[str, Any] = Depends(get_current_user),
        ):
            current = await self.products.find_by_pk(product_id, disable_cache=True)
            if current is None or not self._owns(user_info, current.merchant_id):
                raise NotFoundError("Product not found", details={"product_id": product_id})

            changes = update.model_dump(exclude_none=True)
            changes["updated_at"] = datetime.now(timezone.utc)
            updated = await self.products.update(product_id, changes)
            return {"product": updated.model_dump(mode="json")}

        self.app.include_router(merchant_reads)
        self.app.include_router(merchant_writes)

    def _owns(self, user_info: Dict[str, Any], merchant_id: int) -> bool:
        return "admin" in (user_info.get("roles") or []) or user_info.get("user_id") == merchant_id

    def _setup_admin_routes(self):
        """Set up admin cache management routes."""
        admin = APIRouter(prefix="/api/admin/system", dependencies=[Depends(require_roles("admin"))])

        @admin.post("/cache/clear")
        async def clear_cache(body: Optional[CacheClearRequest] = None):
            cache_type = (body.cache_type if body else "all") or "all"

            if cache_type == "all":
                prefixes = list(CachePrefix)
            else:
                try:
                    prefixes = [CachePrefix.coerce(cache_type)]
                except ValueError as exc:
                    raise ValidationError(
                        "Unknown cache type",
                        details={"cache_type": cache_type, "allowed": ["all"] + [p.value for p in CachePrefix]},
                    ) from exc

            cleared_by_prefix = {}
            for prefix in prefixes:
                keys = await self.cache_manager.clear_by_type(prefix)
                cleared_by_prefix[prefix.value] = len(keys)

            cleared_count = sum(cleared_by_prefix.values())
            self.logger.info("Admin cache clear", cache_type=cache_type, cleared_count=cleared_count)
            return {
                "cache_type": cache_type,
                "cleared_count": cleared_count,
                "cleared_by_prefix": cleared_by_prefix,
            }

        @admin.get("/cache/stats")
        async def cache_stats():
            return await self.cache_manager.stats()

        self.app.include_router(admin)

    async def _check_dependencies(self):
        """Check gateway dependencies."""
        dependencies = {}
        try:
            dependencies["redis"] = "ok" if await self.store.ping() else "error"
        except Exception as e:
            self.logger.warning("Redis health check failed", error=str(e))
            dependencies["redis"] = "error"

        # Rate limiter shares Redis, reuse status to avoid duplicate checks
        dependencies["rate_limit_store"] = dependencies["redis"]
        return dependencies


def create_app():
    """Create FastAPI application."""
    service = GatewayService()
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
