"""
Shared utilities for the Tenant Gateway.

This package aggregates the building blocks every gateway component uses:

- config: Service configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- base_service: FastAPI application scaffolding

Do not import from service_gateway into shared/.
"""
