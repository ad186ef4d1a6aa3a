"""
Shared substrate for the Bhandara platform services.

This package aggregates the building blocks every service handler relies on:

- context: Request-scoped context propagation (request id, session, counters)
- cache: Namespaced TTL cache over Redis with single-flight computation
- pagination: Dual offset / cursor pagination over ordered query sources
- query / sources: Filter model plus PostgreSQL and PostgREST sources
- http_auth: Bearer credential injection for outbound data API calls
- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error kinds and responses

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into platform_shared/.
"""
