"""
OpenRouter chat-completion client for the flashcards gateway.

Every call is validated locally, admitted through the shared token bucket,
sent with a per-attempt timeout and retried with exponential backoff (or the
provider's ``retry_after`` for 429s) until it succeeds or hits a terminal
error.
"""

import asyncio
import json
import random
import string
import time
from typing import Dict, Any, List, Mapping, Optional, Callable, Awaitable, Union

import httpx

from shared.config import GatewaySettings, get_gateway_settings
from shared.errors import (
    GatewayError,
    ValidationError,
    RateLimitError,
    ModelNotSupportedError,
    AuthenticationError,
    StructuredOutputError,
)
from shared.logging import request_context
from shared.metrics import MetricsCollector
from shared.retry import AttemptState, RetryConfig, next_delay
from service_llm_gateway.app.domain.models import (
    VALID_ROLES,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    CompletionUsage,
    JSONSchema,
    ModelParams,
    RateLimitStatus,
)
from service_llm_gateway.app.observability.request_logger import (
    GatewayRequestLogger,
    NullRequestLogger,
    get_request_logger,
)
from service_llm_gateway.app.ratelimit.token_bucket import TokenBucketRateLimiter, create_rate_limiter


DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_RETRY_AFTER_SECONDS = 60
STRUCTURED_RESPONSE_NAME = "structured_response"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def validate_schema(schema: Any) -> bool:
    """Structurally validate a JSON Schema descriptor.

    ``type`` must be a non-empty string; object schemas need mapping-shaped
    ``properties`` and list-shaped ``required`` when present; array schemas
    validate ``items`` recursively.
    """
    if not isinstance(schema, Mapping):
        return False

    schema_type = schema.get("type")
    if not isinstance(schema_type, str) or not schema_type.strip():
        return False

    if schema_type == "object":
        properties = schema.get("properties")
        if properties is not None and not isinstance(properties, Mapping):
            return False
        required = schema.get("required")
        if required is not None and not isinstance(required, (list, tuple)):
            return False

    if schema_type == "array":
        items = schema.get("items")
        if items is not None and not validate_schema(items):
            return False

    return True


class OpenRouterClient:
    """Rate-limited, retrying client for the ``/chat/completions`` endpoint."""

    def __init__(self,
                 api_key: Optional[str],
                 base_url: str = DEFAULT_BASE_URL,
                 default_model: str = DEFAULT_MODEL,
                 timeout_ms: int = 30000,
                 max_retries: int = 3,
                 retry_delay_ms: int = 1000,
                 rate_limiter: Optional[TokenBucketRateLimiter] = None,
                 logger: Optional[GatewayRequestLogger] = None,
                 metrics: Optional[MetricsCollector] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
                 site_url: Optional[str] = None,
                 app_name: Optional[str] = None):
        if not api_key or not api_key.strip():
            raise ValidationError("API key is required")
        if timeout_ms <= 0:
            raise ValidationError("timeout_ms must be positive")

        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.timeout_ms = timeout_ms
        self.retry_config = RetryConfig(
            max_retries=max_retries,
            base_delay=retry_delay_ms / 1000.0,
            exponential_base=2.0,
            jitter=False
        )
        self.site_url = site_url
        self.app_name = app_name

        self.rate_limiter = rate_limiter or create_rate_limiter("conservative")
        self.logger = logger or NullRequestLogger()
        self.metrics = metrics
        self._transport = transport
        self._sleep = sleep or asyncio.sleep

        self.logger.info(
            "OpenRouter service initialized",
            base_url=self.base_url,
            default_model=self.default_model,
            timeout_ms=self.timeout_ms,
            max_retries=max_retries
        )

    @property
    def max_retries(self) -> int:
        return self.retry_config.max_retries

    @property
    def timeout(self) -> float:
        """Per-attempt timeout in seconds."""
        return self.timeout_ms / 1000.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def chat_completion(self, request: Optional[ChatCompletionRequest] = None, **kwargs: Any) -> Any:
        """Run one chat completion.

        Returns the raw completion text, or the parsed JSON document when a
        ``response_schema`` was requested. Accepts either a
        ``ChatCompletionRequest`` or its fields as keyword arguments.
        """
        if request is None:
            try:
                request = ChatCompletionRequest(**kwargs)
            except TypeError as e:
                raise ValidationError(f"Invalid chat completion request: {e}") from e
        elif kwargs:
            raise ValidationError("Pass either a ChatCompletionRequest or keyword arguments, not both")

        request_id = request.request_id or self.generate_request_id()
        model = request.model or self.default_model

        with request_context(request_id, model=model):
            return await self._complete(request, request_id, model)

    async def _complete(self, request: ChatCompletionRequest, request_id: str, model: str) -> Any:
        started = time.monotonic()

        try:
            messages = self._validate_request(request)

            self.logger.log_request_start(
                request_id=request_id,
                model=model,
                operation="chat_completion",
                message_count=len(messages),
                has_schema=request.response_schema is not None,
                user_id=request.user_id
            )

            await self._acquire_capacity(request_id)

            body = self.build_request_body(request, messages)
            response = await self._execute_with_retry(body, request_id)
            result = self.parse_response(response.payload, request.response_schema)

            duration_ms = self._elapsed_ms(started)
            tokens_used = response.usage.total_tokens if response.usage else None
            self.logger.log_request_success(
                request_id=request_id,
                model=model,
                operation="chat_completion",
                duration=duration_ms,
                tokens_used=tokens_used,
                user_id=request.user_id
            )
            if self.metrics:
                self.metrics.record_request(model, "success", duration_ms / 1000.0)
                self.metrics.record_tokens_used(model, tokens_used)

            return result

        except GatewayError as e:
            e.request_id = request_id
            duration_ms = self._elapsed_ms(started)
            self.logger.log_request_error(
                request_id=request_id,
                model=model,
                operation="chat_completion",
                duration=duration_ms,
                error_type=type(e).__name__,
                status_code=e.status_code,
                attempts=e.attempts,
                user_id=request.user_id
            )
            if self.metrics:
                self.metrics.record_request(model, e.kind.value.lower(), duration_ms / 1000.0)
            raise

        except Exception:
            duration_ms = self._elapsed_ms(started)
            self.logger.log_request_error(
                request_id=request_id,
                model=model,
                operation="chat_completion",
                duration=duration_ms,
                error_type="UnknownError",
                user_id=request.user_id
            )
            if self.metrics:
                self.metrics.record_request(model, "unknown_error", duration_ms / 1000.0)
            raise

    def create_system_message(self, content: str) -> ChatMessage:
        """Create a system message."""
        return self._create_message("system", content)

    def create_user_message(self, content: str) -> ChatMessage:
        """Create a user message."""
        return self._create_message("user", content)

    def create_assistant_message(self, content: str) -> ChatMessage:
        """Create an assistant message, e.g. for few-shot examples."""
        return self._create_message("assistant", content)

    def validate_schema(self, schema: Any) -> bool:
        """Validate JSON schema structure."""
        return validate_schema(schema)

    # ------------------------------------------------------------------
    # Rate limit management
    # ------------------------------------------------------------------

    def get_rate_limit_status(self) -> RateLimitStatus:
        """Get current rate limiting status."""
        status = RateLimitStatus(
            available_tokens=self.rate_limiter.get_available_tokens(),
            time_until_next_token_ms=self.rate_limiter.get_time_until_next_token(),
            can_make_request=self.rate_limiter.can_acquire(1)
        )
        if self.metrics:
            self.metrics.set_available_tokens(status.available_tokens)
        return status

    def update_rate_limit_config(self, **changes: Any) -> None:
        """Update rate limiter configuration."""
        self.rate_limiter.update_config(**changes)
        self.logger.log_config_change(property="rate_limiter", new_value=dict(changes))

    def reset_rate_limit(self) -> None:
        """Reset rate limiter, e.g. after a long idle period."""
        self.rate_limiter.reset()
        self.logger.info("Rate limiter reset")

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def generate_request_id(self) -> str:
        """Generate a unique request ID for tracking."""
        suffix = "".join(random.choices(_ID_ALPHABET, k=6))
        return f"or_{int(time.time() * 1000)}_{suffix}"

    def build_request_body(self,
                           request: ChatCompletionRequest,
                           messages: Optional[List[ChatMessage]] = None) -> Dict[str, Any]:
        """Map a request onto the provider's wire format."""
        if messages is None:
            messages = self._normalize_messages(request.messages)

        body: Dict[str, Any] = {
            "model": request.model or self.default_model,
            "messages": [message.to_payload() for message in messages],
        }

        params = self._coerce_model_params(request.model_params)
        if params is not None:
            body.update(params.to_payload())

        if request.response_schema is not None:
            body["response_format"] = self.build_response_format(request.response_schema)

        return body

    @staticmethod
    def build_response_format(schema: JSONSchema) -> Dict[str, Any]:
        """Wrap a schema as a structured-output directive."""
        return {
            "type": "json_schema",
            "json_schema": {
                "name": STRUCTURED_RESPONSE_NAME,
                "strict": True,
                "schema": dict(schema),
            },
        }

    def build_headers(self, request_id: str) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "X-Request-ID": request_id,
        }
        if self.site_url:
            headers["HTTP-Referer"] = self.site_url
        if self.app_name:
            headers["X-Title"] = self.app_name
        return headers

    # ------------------------------------------------------------------
    # Response handling
    # ------------------------------------------------------------------

    def parse_response(self, payload: Mapping[str, Any], schema: Optional[JSONSchema] = None) -> Any:
        """Extract completion content, decoding JSON when a schema was requested."""
        choices = payload.get("choices") if isinstance(payload, Mapping) else None
        if not isinstance(choices, list) or not choices:
            raise GatewayError("Invalid response: no choices returned", api_response=payload, retryable=False)

        content = None
        for choice in choices:
            message = choice.get("message") if isinstance(choice, Mapping) else None
            candidate = message.get("content") if isinstance(message, Mapping) else None
            if isinstance(candidate, str) and candidate:
                content = candidate
                break

        if content is None:
            raise GatewayError("Invalid response: no content in message", api_response=payload, retryable=False)

        if schema is None:
            return content

        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise StructuredOutputError(
                f"Failed to parse structured response: {e}",
                content=content,
                schema=dict(schema)
            ) from e

    def classify_error(self, response: httpx.Response, model: str) -> GatewayError:
        """Translate a non-2xx provider response into a gateway error."""
        status = response.status_code
        try:
            error_data = response.json()
        except ValueError:
            error_data = {}
        if not isinstance(error_data, dict):
            error_data = {}

        error_obj = error_data.get("error") if isinstance(error_data.get("error"), dict) else {}
        message = error_obj.get("message") or error_data.get("message") or "Unknown API error"
        if not isinstance(message, str):
            message = str(message)

        if status == 401:
            return AuthenticationError("Invalid API key", api_response=error_data)

        if status == 429:
            retry_after = self._retry_after(error_obj, response)
            return RateLimitError(
                f"Rate limit exceeded. Retry after {retry_after:g} seconds",
                retry_after=retry_after,
                api_response=error_data
            )

        if status == 400:
            lowered = message.lower()
            if "schema" in lowered or "json" in lowered:
                return ValidationError(f"JSON Schema error: {message}", status_code=status, api_response=error_data)
            if "model" in lowered or "support" in lowered:
                return ModelNotSupportedError(f"Model not supported: {message}", model,
                                              status_code=status, api_response=error_data)
            return ValidationError(f"Validation error: {message}", status_code=status, api_response=error_data)

        if status == 404:
            return ModelNotSupportedError(f"Model not found: {model}", model,
                                          status_code=status, api_response=error_data)

        return GatewayError(f"API error ({status}): {message}", status_code=status,
                            api_response=error_data, retryable=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create_message(self, role: str, content: str) -> ChatMessage:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError(f"{role.capitalize()} message content cannot be empty")
        return ChatMessage(role=role, content=content.strip())

    def _normalize_messages(self, messages: Any) -> List[ChatMessage]:
        if messages is None or isinstance(messages, (str, bytes, Mapping)):
            raise ValidationError("Messages must be a sequence of chat messages")

        normalized: List[ChatMessage] = []
        for message in messages:
            if isinstance(message, ChatMessage):
                role, content = message.role, message.content
            elif isinstance(message, Mapping):
                role, content = message.get("role"), message.get("content")
            else:
                raise ValidationError("Each message must have role and content")

            if not role or not isinstance(content, str) or not content.strip():
                raise ValidationError("Each message must have role and content")
            if role not in VALID_ROLES:
                raise ValidationError(f"Invalid message role: {role}")

            normalized.append(message if isinstance(message, ChatMessage) else ChatMessage(role=role, content=content))

        return normalized

    def _validate_request(self, request: ChatCompletionRequest) -> List[ChatMessage]:
        if not request.messages:
            raise ValidationError("Messages array cannot be empty")

        messages = self._normalize_messages(request.messages)

        if request.response_schema is not None and not validate_schema(request.response_schema):
            raise ValidationError("Invalid JSON schema provided")

        self._coerce_model_params(request.model_params)
        return messages

    @staticmethod
    def _coerce_model_params(params: Union[ModelParams, Mapping[str, Any], None]) -> Optional[ModelParams]:
        if params is None or isinstance(params, ModelParams):
            return params
        if not isinstance(params, Mapping):
            raise ValidationError("model_params must be a mapping")
        try:
            return ModelParams(**params)
        except TypeError as e:
            raise ValidationError(f"Unsupported model parameter: {e}") from e

    async def _acquire_capacity(self, request_id: str) -> None:
        if not self.rate_limiter.can_acquire(1):
            self.logger.log_rate_limit(
                request_id=request_id,
                wait_time=self.rate_limiter.get_time_until_next_token(),
                tokens_available=self.rate_limiter.get_available_tokens()
            )
            if self.metrics:
                self.metrics.record_rate_limit_wait("local")

        await self.rate_limiter.acquire(1)

    async def _execute_with_retry(self, body: Dict[str, Any], request_id: str) -> ChatCompletionResponse:
        model = body["model"]
        max_attempts = self.retry_config.max_attempts
        last_error: Optional[GatewayError] = None
        state = AttemptState.PENDING

        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport) as client:
            for attempt in range(max_attempts):
                state = AttemptState.IN_FLIGHT
                self.logger.debug(
                    "Executing HTTP request",
                    request_id=request_id,
                    attempt=attempt + 1,
                    model=model,
                    timeout_ms=self.timeout_ms,
                    state=state.value
                )
                if self.metrics:
                    self.metrics.record_attempt(model)

                try:
                    response = await self._send(client, body, request_id, model)
                except GatewayError as e:
                    last_error = e
                    state = AttemptState.RETRYABLE_FAILURE if e.retryable else AttemptState.TERMINAL_FAILURE
                    delay = next_delay(e, attempt, self.retry_config)

                    self.logger.debug(
                        "HTTP request failed",
                        request_id=request_id,
                        attempt=attempt + 1,
                        error_type=type(e).__name__,
                        error_message=e.message,
                        status_code=e.status_code,
                        state=state.value
                    )

                    if delay is None:
                        if not e.retryable or isinstance(e, RateLimitError):
                            e.attempts = attempt + 1
                            raise
                        break

                    state = AttemptState.BACKOFF
                    if isinstance(e, RateLimitError):
                        self.logger.log_rate_limit(
                            request_id=request_id,
                            wait_time=delay * 1000,
                            tokens_available=self.rate_limiter.get_available_tokens(),
                            retry_after=e.retry_after
                        )
                        if self.metrics:
                            self.metrics.record_rate_limit_wait("provider")
                            self.metrics.record_retry("rate_limit")
                    else:
                        self.logger.debug(
                            "Retrying request after delay",
                            request_id=request_id,
                            attempt=attempt + 1,
                            delay_ms=delay * 1000,
                            state=state.value
                        )
                        if self.metrics:
                            self.metrics.record_retry("status" if e.status_code else "transport")

                    await self._sleep(delay)
                    continue

                state = AttemptState.SUCCESS
                self.logger.debug(
                    "HTTP request completed successfully",
                    request_id=request_id,
                    attempt=attempt + 1,
                    status_code=response.status_code,
                    state=state.value
                )
                return response

        last_message = last_error.message if last_error else "unknown error"
        raise GatewayError(
            f"Failed to complete request after {max_attempts} attempts: {last_message}",
            status_code=last_error.status_code if last_error else None,
            api_response=last_error.api_response if last_error else None,
            attempts=max_attempts,
            retryable=False,
            details={"last_error": type(last_error).__name__ if last_error else None}
        )

    async def _send(self,
                    client: httpx.AsyncClient,
                    body: Dict[str, Any],
                    request_id: str,
                    model: str) -> ChatCompletionResponse:
        url = f"{self.base_url}/chat/completions"
        try:
            response = await asyncio.wait_for(
                client.post(url, json=body, headers=self.build_headers(request_id)),
                timeout=self.timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise GatewayError(f"Request timed out after {self.timeout_ms}ms") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"Network error: {e}") from e

        if not response.is_success:
            error = self.classify_error(response, model)
            self.logger.error(
                "OpenRouter API error",
                request_id=request_id,
                status_code=response.status_code,
                error_message=error.message,
                model=model
            )
            raise error

        try:
            payload = response.json()
        except ValueError as e:
            raise GatewayError(
                "Provider returned a non-JSON response",
                status_code=response.status_code,
                api_response=response.text[:500]
            ) from e

        if not isinstance(payload, dict):
            raise GatewayError(
                "Provider returned an unexpected payload",
                status_code=response.status_code,
                api_response=payload
            )

        return ChatCompletionResponse(
            payload=payload,
            status_code=response.status_code,
            usage=CompletionUsage.from_payload(payload.get("usage"))
        )

    @staticmethod
    def _retry_after(error_obj: Mapping[str, Any], response: httpx.Response) -> float:
        for candidate in (error_obj.get("retry_after"), response.headers.get("Retry-After")):
            if candidate is None:
                continue
            try:
                value = float(candidate)
            except (TypeError, ValueError):
                continue
            if value > 0:
                return value
        return float(DEFAULT_RETRY_AFTER_SECONDS)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)


def create_gateway_client(settings: Optional[GatewaySettings] = None, **overrides: Any) -> OpenRouterClient:
    """Build a client wired with the configured rate limiter preset and a structlog request logger."""
    settings = settings or get_gateway_settings()
    development = settings.log_development or settings.is_development

    options: Dict[str, Any] = {
        "api_key": settings.api_key,
        "base_url": settings.base_url,
        "default_model": settings.default_model,
        "timeout_ms": settings.timeout_ms,
        "max_retries": settings.max_retries,
        "retry_delay_ms": settings.retry_delay_ms,
        "site_url": settings.site_url,
        "app_name": settings.app_name,
    }
    options.update(overrides)
    options.setdefault("rate_limiter", create_rate_limiter(settings.rate_limit_preset))
    options.setdefault("logger", get_request_logger(
        development=development,
        log_level=None if development else settings.log_level
    ))

    return OpenRouterClient(**options)
