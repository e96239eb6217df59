"""
Chat-completion gateway for the flashcards application.

The gateway is the single entry point for model calls, enforcing:
- Input validation: messages and structured-output schemas are checked locally
- Rate limiting: one in-process token bucket shared by every caller of a client
- Retries: per-attempt timeouts with exponential backoff or provider retry_after
- Typed failures: every error carries a kind the caller can branch on

Structure:
- app.adapters: HTTP client for the OpenRouter-style provider.
- app.ratelimit: Token bucket and named presets.
- app.domain: Request and configuration types.
- app.observability: Request lifecycle logger.
- app.generation: Flashcard generation built on the client.
"""

from service_llm_gateway.app.adapters.openrouter_client import OpenRouterClient, create_gateway_client
from service_llm_gateway.app.domain.models import ChatCompletionRequest, ChatMessage, ModelParams
from service_llm_gateway.app.ratelimit.token_bucket import TokenBucketRateLimiter, create_rate_limiter

__all__ = [
    "OpenRouterClient",
    "create_gateway_client",
    "ChatCompletionRequest",
    "ChatMessage",
    "ModelParams",
    "TokenBucketRateLimiter",
    "create_rate_limiter",
]
