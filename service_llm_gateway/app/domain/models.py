"""
Request and configuration types for the chat-completion gateway.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Literal, Mapping, Optional, Sequence, Union

from shared.errors import ValidationError


Role = Literal["system", "user", "assistant"]
VALID_ROLES = ("system", "user", "assistant")

# A JSON Schema descriptor: {"type": ..., "properties"?: ..., "required"?: ..., "items"?: ...}
JSONSchema = Mapping[str, Any]


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str

    def to_payload(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


MessageLike = Union[ChatMessage, Mapping[str, Any]]


@dataclass(frozen=True)
class ModelParams:
    """Sampling parameters passed through verbatim when set."""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    seed: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass
class ChatCompletionRequest:
    messages: Sequence[MessageLike]
    model: Optional[str] = None
    model_params: Optional[Union[ModelParams, Mapping[str, Any]]] = None
    response_schema: Optional[JSONSchema] = None
    user_id: Optional[str] = None
    request_id: Optional[str] = None


@dataclass
class RateLimiterConfig:
    """Token bucket settings.

    ``refill_rate`` tokens are added every ``refill_interval_ms`` up to
    ``capacity``; ``acquire`` gives up once it would wait longer than
    ``max_wait_time_ms``.
    """
    capacity: int
    refill_rate: float
    refill_interval_ms: int
    max_wait_time_ms: int = 30000

    def validate(self) -> None:
        if not isinstance(self.capacity, int) or isinstance(self.capacity, bool) or self.capacity <= 0:
            raise ValidationError("capacity must be a positive integer")
        if not isinstance(self.refill_rate, (int, float)) or self.refill_rate <= 0:
            raise ValidationError("refill_rate must be a positive number")
        if not isinstance(self.refill_interval_ms, int) or self.refill_interval_ms <= 0:
            raise ValidationError("refill_interval_ms must be a positive integer")
        if not isinstance(self.max_wait_time_ms, int) or self.max_wait_time_ms <= 0:
            raise ValidationError("max_wait_time_ms must be a positive integer")


@dataclass
class RateLimitStatus:
    available_tokens: int
    time_until_next_token_ms: int
    can_make_request: bool


@dataclass
class CompletionUsage:
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["CompletionUsage"]:
        if not isinstance(payload, Mapping):
            return None
        return cls(
            prompt_tokens=payload.get("prompt_tokens"),
            completion_tokens=payload.get("completion_tokens"),
            total_tokens=payload.get("total_tokens"),
        )


@dataclass
class ChatCompletionResponse:
    """Raw provider response kept for logging and diagnostics."""
    payload: Dict[str, Any]
    status_code: int
    usage: Optional[CompletionUsage] = None
