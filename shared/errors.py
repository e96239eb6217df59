"""
Shared error handling for the Flashcards LLM Gateway.

Every failure surfaced by the gateway is a ``GatewayError`` carrying a
discriminant (``kind``) so callers can branch on the kind instead of the
exception class.
"""

from enum import Enum
from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorKind(str, Enum):
    """Discriminant shared by all gateway errors."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    MODEL_NOT_SUPPORTED = "MODEL_NOT_SUPPORTED"
    GATEWAY_ERROR = "GATEWAY_ERROR"


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    status_code: Optional[int] = None
    attempts: Optional[int] = None
    details: Dict[str, Any] = {}


class GatewayError(Exception):
    """Base exception for chat-completion gateway failures.

    Used directly for transport failures, unexpected HTTP statuses and
    exhausted retries.
    """

    kind = ErrorKind.GATEWAY_ERROR

    def __init__(self,
                 message: str = "Gateway error",
                 status_code: Optional[int] = None,
                 api_response: Any = None,
                 attempts: Optional[int] = None,
                 retryable: bool = True,
                 details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.status_code = status_code
        self.api_response = api_response
        self.attempts = attempts
        self.retryable = retryable
        self.details = details or {}
        self.request_id: Optional[str] = None
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.kind.value

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        details = dict(self.details)
        if self.api_response is not None:
            details.setdefault("api_response", self.api_response)

        return ErrorResponse(
            request_id=self.request_id,
            code=self.code,
            message=self.message,
            status_code=self.status_code,
            attempts=self.attempts,
            details=details
        )

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r}, "
            f"status_code={self.status_code!r}, attempts={self.attempts!r})"
        )


class ValidationError(GatewayError):
    """Bad input, bad schema, empty content or missing API key."""

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(self,
                 message: str = "Validation failed",
                 details: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None,
                 api_response: Any = None):
        super().__init__(message, status_code=status_code, api_response=api_response,
                         retryable=False, details=details)


class RateLimitError(GatewayError):
    """Local bucket exhaustion or a provider 429."""

    kind = ErrorKind.RATE_LIMIT_ERROR

    def __init__(self,
                 message: str = "Rate limit exceeded",
                 retry_after: Optional[float] = None,
                 status_code: Optional[int] = 429,
                 api_response: Any = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=status_code, api_response=api_response,
                         retryable=True, details=details)
        self.retry_after = retry_after

    def to_response(self) -> ErrorResponse:
        response = super().to_response()
        if self.retry_after is not None:
            response.details["retry_after"] = self.retry_after
        return response


class ModelNotSupportedError(GatewayError):
    """Provider rejected the model (400 model-related or 404)."""

    kind = ErrorKind.MODEL_NOT_SUPPORTED

    def __init__(self,
                 message: str,
                 model: str,
                 status_code: Optional[int] = 400,
                 api_response: Any = None):
        super().__init__(message, status_code=status_code, api_response=api_response,
                         retryable=False, details={"model": model})
        self.model = model


class AuthenticationError(GatewayError):
    """Provider rejected the API key."""

    def __init__(self, message: str = "Invalid API key", api_response: Any = None):
        super().__init__(message, status_code=401, api_response=api_response, retryable=False)


class StructuredOutputError(GatewayError):
    """Completion content could not be parsed as the requested JSON."""

    def __init__(self, message: str, content: str, schema: Any):
        super().__init__(
            message,
            status_code=500,
            api_response={"content": content, "schema": schema},
            retryable=False
        )
        self.content = content
        self.schema = schema


def is_retryable(error: BaseException) -> bool:
    """Return True when the retry loop may attempt the call again."""
    if isinstance(error, GatewayError):
        return error.retryable
    return False
