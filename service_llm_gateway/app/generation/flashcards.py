"""
Flashcard generation on top of the chat-completion gateway.

Turns a block of source text into validated flashcard proposals using a
structured-output request. A mock mode splits the text locally so the flow
can run without provider credentials.
"""

import asyncio
import hashlib
import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional

import pydantic
from pydantic import BaseModel, Field

from shared.errors import GatewayError, ValidationError
from shared.logging import get_logger
from service_llm_gateway.app.adapters.openrouter_client import OpenRouterClient
from service_llm_gateway.app.domain.models import ChatCompletionRequest, ModelParams


MIN_SOURCE_TEXT_LENGTH = 1000
MAX_SOURCE_TEXT_LENGTH = 10000
MAX_PROPOSALS = 50

MOCK_CHUNK_SIZE = 300
MOCK_MIN_CHUNK_SIZE = 100

SYSTEM_PROMPT = (
    "You are an expert at writing educational flashcards. "
    "Generate high-quality flashcards from the provided text. "
    "Rules: "
    "- Questions must be specific and precise "
    "- Answers must be concise but complete "
    "- Avoid duplicating information "
    "- Focus on the key concepts "
    "- Generate roughly 5-15 flashcards depending on the length of the text"
)

FLASHCARD_GENERATION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "flashcards": {
            "type": "array",
            "description": "Array of generated flashcards with front and back content",
            "items": {
                "type": "object",
                "properties": {
                    "front": {
                        "type": "string",
                        "description": "The question or prompt side of the flashcard",
                    },
                    "back": {
                        "type": "string",
                        "description": "The answer or explanation side of the flashcard",
                    },
                },
                "required": ["front", "back"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["flashcards"],
    "additionalProperties": False,
}

logger = get_logger("llm_gateway.generation")


class FlashcardProposal(BaseModel):
    """A flashcard suggested by the model, pending user review."""

    front: str = Field(min_length=1, max_length=200)
    back: str = Field(min_length=1, max_length=500)
    source: Literal["ai"] = "ai"


@dataclass
class GenerationResult:
    proposals: List[FlashcardProposal]
    generation_duration_ms: int
    raw_model_response: Any
    source_text_hash: str
    model: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def hash_source_text(source_text: str) -> str:
    """SHA-256 hex digest of the source text."""
    return hashlib.sha256(source_text.encode("utf-8")).hexdigest()


def validate_source_text(source_text: Any) -> str:
    if not isinstance(source_text, str):
        raise ValidationError("source_text must be a string")
    if len(source_text) < MIN_SOURCE_TEXT_LENGTH:
        raise ValidationError(f"source_text must be at least {MIN_SOURCE_TEXT_LENGTH} characters")
    if len(source_text) > MAX_SOURCE_TEXT_LENGTH:
        raise ValidationError(f"source_text must be at most {MAX_SOURCE_TEXT_LENGTH} characters")
    return source_text


def _validate_proposals(proposals: List[Dict[str, str]]) -> List[FlashcardProposal]:
    if not proposals:
        raise ValidationError("Model returned no usable flashcards")
    if len(proposals) > MAX_PROPOSALS:
        raise ValidationError(f"Model returned more than {MAX_PROPOSALS} flashcards")
    try:
        return [FlashcardProposal(**proposal) for proposal in proposals]
    except pydantic.ValidationError as e:
        raise ValidationError(
            "Flashcard proposal failed validation",
            details={"errors": e.errors(include_url=False)}
        ) from e


def normalize_proposals(response: Any) -> List[FlashcardProposal]:
    """Trim model output and drop cards with an empty side."""
    if not isinstance(response, Mapping) or not isinstance(response.get("flashcards"), list):
        raise ValidationError("Structured response is missing the flashcards array")

    cleaned: List[Dict[str, str]] = []
    for card in response["flashcards"]:
        if not isinstance(card, Mapping):
            continue
        front = card.get("front")
        back = card.get("back")
        front = front.strip() if isinstance(front, str) else ""
        back = back.strip() if isinstance(back, str) else ""
        if not front or not back:
            continue
        cleaned.append({"front": front, "back": back, "source": "ai"})

    return _validate_proposals(cleaned)


def _split_into_chunks(source_text: str) -> List[str]:
    chunks: List[str] = []
    index = 0
    length = len(source_text)

    while index < length:
        remaining = length - index
        if remaining <= MOCK_MIN_CHUNK_SIZE:
            chunks.append(source_text[index:].strip())
            break

        chunk_end = min(index + MOCK_CHUNK_SIZE, length)
        chunk = source_text[index:chunk_end]

        if chunk_end < length:
            last_break = max(chunk.rfind("."), chunk.rfind("!"), chunk.rfind("?"))
            if last_break > MOCK_MIN_CHUNK_SIZE:
                chunk = source_text[index:index + last_break + 1]
                index += last_break + 1
            else:
                last_space = chunk.rfind(" ")
                if last_space > MOCK_MIN_CHUNK_SIZE:
                    chunk = source_text[index:index + last_space]
                    index += last_space + 1
                else:
                    index = chunk_end
        else:
            index = chunk_end

        if len(chunk.strip()) >= MOCK_MIN_CHUNK_SIZE:
            chunks.append(chunk.strip())

    return [chunk for chunk in chunks if chunk]


def generate_mock_flashcards(source_text: str) -> List[FlashcardProposal]:
    """Build placeholder flashcards by chunking the text locally."""
    proposals: List[Dict[str, str]] = []
    for position, chunk in enumerate(_split_into_chunks(source_text)):
        front_length = min(100, int(len(chunk) * 0.3))
        front = chunk[:front_length].strip()
        back = chunk[front_length:].strip()
        proposals.append({
            "front": front or f"Fragment {position + 1}",
            "back": (back or chunk)[:500],
            "source": "ai",
        })

    if not proposals:
        proposals.append({
            "front": "Source text",
            "back": source_text[:500].strip() or "(empty)",
            "source": "ai",
        })

    return _validate_proposals(proposals[:MAX_PROPOSALS])


def build_generation_request(client: OpenRouterClient,
                             source_text: str,
                             model: str,
                             user_id: Optional[str] = None,
                             request_id: Optional[str] = None) -> ChatCompletionRequest:
    return ChatCompletionRequest(
        messages=[
            client.create_system_message(SYSTEM_PROMPT),
            client.create_user_message(f"Generate flashcards from the following text:\n\n{source_text}"),
        ],
        model=model,
        model_params=ModelParams(temperature=0.2, max_tokens=2000),
        response_schema=FLASHCARD_GENERATION_SCHEMA,
        user_id=user_id,
        request_id=request_id,
    )


def _merge_duration(error: GatewayError, duration_ms: int) -> None:
    if isinstance(error.api_response, Mapping):
        error.api_response = {**error.api_response, "generation_duration_ms": duration_ms}
    elif error.api_response is None:
        error.api_response = {"generation_duration_ms": duration_ms}
    else:
        error.details["generation_duration_ms"] = duration_ms


async def generate_flashcards_from_text(client: Optional[OpenRouterClient],
                                        source_text: str,
                                        model: Optional[str] = None,
                                        user_id: Optional[str] = None,
                                        request_id: Optional[str] = None,
                                        mock: bool = False) -> GenerationResult:
    """Generate flashcard proposals for ``source_text``.

    Gateway errors propagate with ``generation_duration_ms`` attached;
    validation errors propagate untouched and anything else is wrapped in a
    502 ``GatewayError``.
    """
    validate_source_text(source_text)
    source_hash = hash_source_text(source_text)

    if mock:
        started = time.monotonic()
        await asyncio.sleep(0.1 + random.random() * 0.2)
        proposals = generate_mock_flashcards(source_text)
        duration_ms = max(0, int((time.monotonic() - started) * 1000))
        model_name = model or "mock"
        return GenerationResult(
            proposals=proposals,
            generation_duration_ms=duration_ms,
            raw_model_response={"mock": True, "model": model_name, "chunk_count": len(proposals)},
            source_text_hash=source_hash,
            model=model_name,
        )

    if client is None:
        raise ValidationError("A gateway client is required unless mock generation is enabled")

    model_name = model or client.default_model
    request = build_generation_request(client, source_text, model_name, user_id, request_id)
    started = time.monotonic()

    try:
        result = await client.chat_completion(request)
        proposals = normalize_proposals(result)
    except ValidationError:
        raise
    except GatewayError as e:
        _merge_duration(e, max(0, int((time.monotonic() - started) * 1000)))
        raise
    except Exception as e:
        duration_ms = max(0, int((time.monotonic() - started) * 1000))
        logger.error("Flashcard generation failed", error=str(e), model=model_name)
        raise GatewayError(
            str(e) or "Unknown error",
            status_code=502,
            api_response={"generation_duration_ms": duration_ms},
            retryable=False
        ) from e

    duration_ms = max(0, int((time.monotonic() - started) * 1000))
    logger.info(
        "Flashcards generated",
        model=model_name,
        proposal_count=len(proposals),
        generation_duration_ms=duration_ms,
        source_text_hash=source_hash
    )

    return GenerationResult(
        proposals=proposals,
        generation_duration_ms=duration_ms,
        raw_model_response=result,
        source_text_hash=source_hash,
        model=model_name,
    )
