"""
API Gateway Service package for the Tenant Gateway.

The gateway fronts client requests, enforcing:
- Authentication: bearer JWTs with claims and user records served from cache
- Rate limiting: fixed request windows per caller and endpoint category
- Response caching: route-level and model-level, backed by Redis

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.caching: Cache manager, route cache, model cache and TTL/prefix policy.
- app.persistence: Hookable repositories and record models.
- app.ratelimit: Fixed-window limiter and middleware.
- app.domain: Cross-cutting domain helpers (e.g., auth middleware).
"""
