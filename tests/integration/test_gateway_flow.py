"""
Integration tests for the gateway client end to end: shared rate limiting,
retries against a flaky provider and flashcard generation.
"""

import asyncio
import json
import time
from unittest.mock import AsyncMock

import httpx
import pytest

from shared.errors import RateLimitError
from shared.metrics import MetricsCollector
from service_llm_gateway.app.adapters.openrouter_client import OpenRouterClient
from service_llm_gateway.app.domain.models import RateLimiterConfig
from service_llm_gateway.app.generation.flashcards import generate_flashcards_from_text
from service_llm_gateway.app.ratelimit.token_bucket import TokenBucketRateLimiter


class FlakyProvider:
    """Fake provider that fails every ``fail_every``-th request with a 503."""

    def __init__(self, fail_every: int = 0, content: str = "ok"):
        self.fail_every = fail_every
        self.content = content
        self.calls = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((time.monotonic(), json.loads(request.content)))
        if self.fail_every and len(self.calls) % self.fail_every == 0:
            return httpx.Response(503, json={"error": {"message": "overloaded"}})
        return httpx.Response(200, json={
            "choices": [{"message": {"role": "assistant", "content": self.content}}],
            "usage": {"total_tokens": 10},
        })


class TestGatewayFlow:
    """Integration tests for the gateway client."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_bucket(self):
        """Test concurrent calls beyond capacity wait for refills instead of failing."""
        limiter = TokenBucketRateLimiter(
            RateLimiterConfig(capacity=2, refill_rate=1, refill_interval_ms=100, max_wait_time_ms=2000)
        )
        provider = FlakyProvider()
        client = OpenRouterClient(api_key="sk-test", rate_limiter=limiter,
                                  transport=httpx.MockTransport(provider))

        started = time.monotonic()
        results = await asyncio.gather(*(
            client.chat_completion(messages=[{"role": "user", "content": f"question {i}"}])
            for i in range(5)
        ))
        elapsed = time.monotonic() - started

        assert results == ["ok"] * 5
        assert len(provider.calls) == 5
        # Three calls had to wait for one 100ms interval each
        assert elapsed >= 0.25

    @pytest.mark.asyncio
    async def test_bucket_exhaustion_is_reported_per_call(self):
        """Test callers past the wait budget fail while the rest succeed."""
        limiter = TokenBucketRateLimiter(
            RateLimiterConfig(capacity=2, refill_rate=1, refill_interval_ms=10000, max_wait_time_ms=50)
        )
        provider = FlakyProvider()
        client = OpenRouterClient(api_key="sk-test", rate_limiter=limiter,
                                  transport=httpx.MockTransport(provider))

        results = await asyncio.gather(
            *(client.chat_completion(messages=[{"role": "user", "content": "hi"}]) for _ in range(4)),
            return_exceptions=True
        )

        successes = [result for result in results if result == "ok"]
        failures = [result for result in results if isinstance(result, RateLimitError)]
        assert len(successes) == 2
        assert len(failures) == 2
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_flaky_provider_recovers(self):
        """Test intermittent 503s are absorbed by retries."""
        provider = FlakyProvider(fail_every=2)
        metrics = MetricsCollector()
        client = OpenRouterClient(
            api_key="sk-test",
            transport=httpx.MockTransport(provider),
            metrics=metrics,
            sleep=AsyncMock()
        )

        for i in range(3):
            assert await client.chat_completion(messages=[{"role": "user", "content": f"q{i}"}]) == "ok"

        assert metrics.get_sample_value("llm_retries_total", reason="status") == 2
        assert metrics.get_sample_value(
            "llm_requests_total", model="gpt-3.5-turbo", outcome="success"
        ) == 3

    @pytest.mark.asyncio
    async def test_flashcard_generation_end_to_end(self):
        """Test generation through a structured-output round trip."""
        cards = [
            {"front": "What is the capital of France?", "back": "Paris."},
            {"front": "Which river flows through Paris?", "back": "The Seine."},
        ]
        provider = FlakyProvider(content=json.dumps({"flashcards": cards}))
        client = OpenRouterClient(api_key="sk-test", transport=httpx.MockTransport(provider))
        source_text = ("Paris is the capital of France and sits on the river Seine. " * 20).strip()

        result = await generate_flashcards_from_text(client, source_text, model="openai/gpt-4o-mini")

        assert [proposal.back for proposal in result.proposals] == ["Paris.", "The Seine."]
        assert result.model == "openai/gpt-4o-mini"
        assert provider.calls[0][1]["response_format"]["type"] == "json_schema"
