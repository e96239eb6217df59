"""
Shared utilities for the Flashcards LLM Gateway.

This package aggregates common building blocks consumed by the gateway:

- config: Gateway configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Backoff policy and the per-call attempt state machine

Any cross-cutting logic should live here to avoid import cycles. Do not
import from service_* packages into shared/.
"""
