"""
Shared utilities for the Exam Access Layer.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request/user correlation
- metrics: Prometheus metrics helpers
- observability: Business-event logging tied to metrics and spans
- errors: Canonical error types and responses
- retry: Retry decorators and management
- circuit_breaker: Resilient external call protection

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""
