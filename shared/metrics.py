"""
Shared metrics configuration for the Flashcards LLM Gateway.
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest, start_http_server
from typing import Dict, Any, Optional
import threading


class MetricsCollector:
    """Centralized metrics collector for gateway clients.

    Each collector owns its own registry unless one is supplied, so several
    clients (and tests) can coexist in one process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up gateway metrics."""

        self._metrics["llm_requests_total"] = Counter(
            "llm_requests_total",
            "Total chat-completion calls by outcome",
            ["model", "outcome"],
            registry=self.registry
        )

        self._metrics["llm_request_duration_seconds"] = Histogram(
            "llm_request_duration_seconds",
            "Chat-completion call duration in seconds, including retries",
            ["model"],
            registry=self.registry
        )

        self._metrics["llm_request_attempts_total"] = Counter(
            "llm_request_attempts_total",
            "Total HTTP attempts issued to the provider",
            ["model"],
            registry=self.registry
        )

        self._metrics["llm_retries_total"] = Counter(
            "llm_retries_total",
            "Total retries scheduled",
            ["reason"],
            registry=self.registry
        )

        self._metrics["llm_rate_limit_waits_total"] = Counter(
            "llm_rate_limit_waits_total",
            "Total rate limit waits",
            ["source"],
            registry=self.registry
        )

        self._metrics["llm_tokens_used_total"] = Counter(
            "llm_tokens_used_total",
            "Total tokens reported by the provider",
            ["model"],
            registry=self.registry
        )

        self._metrics["llm_rate_limiter_available_tokens"] = Gauge(
            "llm_rate_limiter_available_tokens",
            "Tokens available in the local bucket",
            registry=self.registry
        )

    def get_sample_value(self, name: str, **labels) -> Optional[float]:
        """Read back a sample value from this collector's registry."""
        return self.registry.get_sample_value(name, labels)

    def export(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)

    def start_metrics_server(self, port: int = 9090):
        """Start the Prometheus metrics server."""
        start_http_server(port, registry=self.registry)

    def record_request(self, model: str, outcome: str, duration: float):
        """Record a finished chat-completion call."""
        with self._lock:
            self._metrics["llm_requests_total"].labels(model=model, outcome=outcome).inc()
            self._metrics["llm_request_duration_seconds"].labels(model=model).observe(duration)

    def record_attempt(self, model: str):
        self._metrics["llm_request_attempts_total"].labels(model=model).inc()

    def record_retry(self, reason: str):
        self._metrics["llm_retries_total"].labels(reason=reason).inc()

    def record_rate_limit_wait(self, source: str):
        self._metrics["llm_rate_limit_waits_total"].labels(source=source).inc()

    def record_tokens_used(self, model: str, tokens: Optional[int]):
        if tokens:
            self._metrics["llm_tokens_used_total"].labels(model=model).inc(tokens)

    def set_available_tokens(self, value: float):
        self._metrics["llm_rate_limiter_available_tokens"].set(value)


def get_metrics_collector(port: Optional[int] = None,
                          registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Build a collector, exposing it over HTTP when a port is given."""
    collector = MetricsCollector(registry)
    if port is not None:
        collector.start_metrics_server(port)
    return collector
