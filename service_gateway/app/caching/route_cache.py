"""
Route-level response caching for the gateway.

A :class:`RouteCache` wraps route handlers: it fingerprints the request,
replays a stored response on a hit and captures the fresh response on a
miss. It plugs into FastAPI as a custom ``APIRoute`` class, so every route
registered on a router built with ``route_class=route_cache.route_class()``
shares one caching policy.
"""

import base64
import hashlib
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union
from urllib.parse import urlencode

from fastapi import Request, Response
from fastapi.routing import APIRoute
from starlette.responses import StreamingResponse

from shared.logging import get_logger
from .cache_manager import CacheManager, KeyPattern
from .policy import CachePrefix, CacheTTL

CACHE_STATUS_HEADER = "X-Cache"
CACHE_HIT = "HIT"
CACHE_MISS = "MISS"
CACHE_BYPASS = "BYPASS"

# Recomputed by the transport layer, or must never be shared between callers.
EXCLUDED_HEADERS = frozenset({
    "content-length",
    "content-encoding",
    "transfer-encoding",
    "set-cookie",
    CACHE_STATUS_HEADER.lower(),
})

TRUTHY = frozenset({"1", "true", "yes", "on"})

KeyGenerator = Callable[[Request], Awaitable[str]]
ShouldCache = Callable[[Request, Response], bool]
CallNext = Callable[[Request], Awaitable[Response]]


@dataclass(frozen=True)
class RouteCacheOptions:
    """Caching policy applied to a group of routes.

    ttl: lifetime of stored responses in seconds.
    prefix: cache namespace the responses are stored under.
    key_generator: coroutine computing the request fingerprint; defaults to
        :meth:`RouteCache.fingerprint`.
    should_cache: predicate deciding whether a fresh response is stored;
        defaults to ``status_code < 400``.
    cache_non_get_requests: also cache methods other than GET.
    bypass_param: query flag that skips the cache for one request.
    """

    ttl: int = CacheTTL.MEDIUM
    prefix: CachePrefix = CachePrefix.API
    key_generator: Optional[KeyGenerator] = None
    should_cache: Optional[ShouldCache] = None
    cache_non_get_requests: bool = False
    bypass_param: str = "nocache"


def principal_id(request: Request) -> Optional[str]:
    """Identifier of the authenticated caller, if the auth layer set one."""
    user_info = getattr(request.state, "user_info", None)
    if isinstance(user_info, dict) and user_info.get("user_id") is not None:
        return str(user_info["user_id"])
    return None


def principal_roles(request: Request) -> List[str]:
    """Sorted roles of the authenticated caller."""
    user_info = getattr(request.state, "user_info", None)
    if not isinstance(user_info, dict):
        return []
    return sorted(str(role) for role in user_info.get("roles") or [])


async def body_digest(request: Request) -> Optional[str]:
    """MD5 of the request body, canonicalised when the body is JSON."""
    body = await request.body()
    if not body:
        return None

    try:
        canonical = json.dumps(json.loads(body), sort_keys=True, separators=(",", ":")).encode("utf-8")
    except ValueError:
        canonical = body
    return hashlib.md5(canonical).hexdigest()


class RouteCache:
    """Serve, capture and store full HTTP responses keyed by request fingerprint."""

    def __init__(self, cache_manager: CacheManager, options: Optional[RouteCacheOptions] = None):
        self.cache_manager = cache_manager
        self.options = options or RouteCacheOptions()
        self.logger = get_logger("gateway.route_cache")

    def is_bypassed(self, request: Request) -> bool:
        flag = request.query_params.get(self.options.bypass_param)
        return flag is not None and flag.lower() in TRUTHY

    async def fingerprint(self, request: Request) -> str:
        """Method + path (+ sorted query) [+ principal and roles] [+ body hash for non-GET].

        Route dependencies only run on a miss, so an entry is stored only for
        the principal and role set that passed them. Keying on both makes a
        revoked role miss and fail its check again. Suffixes start with ``#``,
        which never appears in a request path.
        """
        if self.options.key_generator is not None:
            return await self.options.key_generator(request)

        query = sorted(
            (name, value)
            for name, value in request.query_params.multi_items()
            if name != self.options.bypass_param
        )
        target = request.url.path
        if query:
            target = f"{target}?{urlencode(query)}"

        key = f"{request.method}:{target}"

        user_id = principal_id(request)
        if user_id:
            key = f"user:{user_id}:{key}#roles={','.join(principal_roles(request))}"

        if request.method != "GET":
            digest = await body_digest(request)
            if digest:
                key = f"{key}#body={digest}"

        return key

    def should_cache(self, request: Request, response: Response) -> bool:
        if self.options.should_cache is not None:
            return self.options.should_cache(request, response)
        return response.status_code < 400

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        if request.method != "GET" and not self.options.cache_non_get_requests:
            return await call_next(request)

        if self.is_bypassed(request):
            response = await call_next(request)
            response.headers[CACHE_STATUS_HEADER] = CACHE_BYPASS
            return response

        try:
            key = await self.fingerprint(request)
            cached = await self.cache_manager.get(self.options.prefix, key)
        except Exception as exc:
            self.logger.error("Route cache lookup failed", path=request.url.path, error=str(exc))
            return await call_next(request)

        if cached is not None:
            replayed = self._replay(cached)
            if replayed is not None:
                self.logger.debug("Route cache hit", key=key)
                return replayed

        response = await call_next(request)
        response.headers[CACHE_STATUS_HEADER] = CACHE_MISS

        if self.should_cache(request, response):
            entry = self._capture(response)
            if entry is not None:
                self.cache_manager.submit_set(self.options.prefix, key, entry, self.options.ttl)

        return response

    def route_class(self) -> Type[APIRoute]:
        """Build an ``APIRoute`` subclass that runs every handler through this cache."""
        route_cache = self

        class CachedRoute(APIRoute):
            def get_route_handler(self) -> Callable[[Request], Awaitable[Response]]:
                handler = super().get_route_handler()

                async def cached_route_handler(request: Request) -> Response:
                    return await route_cache(request, handler)

                return cached_route_handler

        return CachedRoute

    def _capture(self, response: Response) -> Optional[Dict[str, Any]]:
        body = getattr(response, "body", None)
        if isinstance(response, StreamingResponse) or body is None:
            return None

        headers = {
            name: value
            for name, value in response.headers.items()
            if name.lower() not in EXCLUDED_HEADERS
        }

        try:
            return {
                "status": response.status_code,
                "headers": headers,
                "body": bytes(body).decode("utf-8"),
                "body_encoding": "utf-8",
            }
        except UnicodeDecodeError:
            return {
                "status": response.status_code,
                "headers": headers,
                "body": base64.b64encode(bytes(body)).decode("ascii"),
                "body_encoding": "base64",
            }

    def _replay(self, entry: Any) -> Optional[Response]:
        if not isinstance(entry, dict) or "status" not in entry or "body" not in entry:
            self.logger.warning("Ignoring malformed route cache entry")
            return None

        body = entry["body"]
        if entry.get("body_encoding") == "base64":
            content = base64.b64decode(body)
        elif isinstance(body, str):
            content = body.encode("utf-8")
        else:
            content = json.dumps(body, separators=(",", ":")).encode("utf-8")

        headers = {
            name: str(value)
            for name, value in (entry.get("headers") or {}).items()
            if name.lower() not in EXCLUDED_HEADERS
        }
        response = Response(content=content, status_code=int(entry["status"]), headers=headers)
        response.headers[CACHE_STATUS_HEADER] = CACHE_HIT
        return response


PatternSource = Union[KeyPattern, Callable[[Request], KeyPattern], None]


def clear_route_cache(
    cache_manager: CacheManager,
    prefix: CachePrefix = CachePrefix.API,
    pattern: PatternSource = None,
) -> Callable[[Request], Awaitable[None]]:
    """Build a FastAPI dependency that invalidates cached responses.

    The clear runs before the route handler. ``pattern`` may be computed
    from the request; without one the whole prefix is swept. Failures are
    logged and the request proceeds.
    """
    logger = get_logger("gateway.route_cache")

    async def clear_cached_responses(request: Request) -> None:
        try:
            resolved = pattern(request) if callable(pattern) else pattern
            if resolved:
                keys = await cache_manager.clear_by_pattern(prefix, resolved)
                logger.info("Cleared matching route cache entries", prefix=CachePrefix.coerce(prefix).value, count=len(keys))
            else:
                keys = await cache_manager.clear_by_type(prefix)
                logger.info("Cleared route cache prefix", prefix=CachePrefix.coerce(prefix).value, count=len(keys))
        except Exception as exc:
            logger.error("Failed to clear route cache", prefix=str(prefix), error=str(exc))

    return clear_cached_responses
