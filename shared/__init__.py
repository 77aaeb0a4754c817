"""
Shared utilities for the entitlement engine.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator for idempotent collaborator calls
- circuit_breaker: Resilient external call protection
- base_service: FastAPI service shell (health, metrics, error rendering)

Do not import from service packages into shared/.
"""
