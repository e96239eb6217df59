"""
Unit tests for flashcard generation.
"""

import hashlib
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from shared.errors import GatewayError, RateLimitError, ValidationError
from service_llm_gateway.app.adapters.openrouter_client import OpenRouterClient
from service_llm_gateway.app.generation.flashcards import (
    FLASHCARD_GENERATION_SCHEMA,
    MAX_PROPOSALS,
    FlashcardProposal,
    generate_flashcards_from_text,
    generate_mock_flashcards,
    hash_source_text,
    normalize_proposals,
    validate_source_text,
)


SOURCE_TEXT = (
    "Photosynthesis is the process by which green plants convert light energy into chemical energy. "
    "It takes place mainly in the chloroplasts of leaf cells. Chlorophyll absorbs light most strongly "
    "in the blue and red parts of the spectrum. The light-dependent reactions split water and release "
    "oxygen as a by-product. The Calvin cycle then fixes carbon dioxide into sugars using ATP and NADPH. "
) * 4


def flashcard_response(cards):
    content = json.dumps({"flashcards": cards})
    return httpx.Response(200, json={
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"total_tokens": 100},
    })


def make_client(handler):
    return OpenRouterClient(
        api_key="sk-test",
        transport=httpx.MockTransport(handler),
        sleep=AsyncMock(),
        max_retries=1
    )


class TestSourceText:
    """Test cases for source text handling."""

    def test_length_bounds(self):
        """Test source text must be between 1000 and 10000 characters."""
        assert validate_source_text("a" * 1000) == "a" * 1000
        assert validate_source_text("a" * 10000) == "a" * 10000

        with pytest.raises(ValidationError):
            validate_source_text("a" * 999)
        with pytest.raises(ValidationError):
            validate_source_text("a" * 10001)
        with pytest.raises(ValidationError):
            validate_source_text(None)

    def test_hash(self):
        """Test the source text hash is a sha256 hex digest."""
        assert hash_source_text("abc") == hashlib.sha256(b"abc").hexdigest()
        assert len(hash_source_text(SOURCE_TEXT)) == 64


class TestNormalizeProposals:
    """Test cases for cleaning model output."""

    def test_trims_and_drops_empty_cards(self):
        """Test whitespace is stripped and incomplete cards are dropped."""
        proposals = normalize_proposals({"flashcards": [
            {"front": "  What is ATP? ", "back": " An energy carrier.  "},
            {"front": "   ", "back": "orphan"},
            {"front": "No back"},
            "not a card",
        ]})

        assert proposals == [FlashcardProposal(front="What is ATP?", back="An energy carrier.")]
        assert proposals[0].source == "ai"

    def test_missing_array(self):
        """Test responses without a flashcards array are rejected."""
        with pytest.raises(ValidationError):
            normalize_proposals({"cards": []})
        with pytest.raises(ValidationError):
            normalize_proposals("plain text")

    def test_no_usable_cards(self):
        """Test an empty result is rejected."""
        with pytest.raises(ValidationError):
            normalize_proposals({"flashcards": [{"front": "", "back": ""}]})

    def test_too_many_cards(self):
        """Test more than the allowed number of proposals is rejected."""
        cards = [{"front": f"Q{i}", "back": f"A{i}"} for i in range(MAX_PROPOSALS + 1)]

        with pytest.raises(ValidationError):
            normalize_proposals({"flashcards": cards})

    def test_field_length_limits(self):
        """Test overlong sides fail validation."""
        with pytest.raises(ValidationError) as exc_info:
            normalize_proposals({"flashcards": [{"front": "x" * 201, "back": "ok"}]})

        assert exc_info.value.details["errors"]


class TestMockGeneration:
    """Test cases for offline generation."""

    def test_mock_flashcards_within_limits(self):
        """Test mock proposals respect the proposal constraints."""
        proposals = generate_mock_flashcards(SOURCE_TEXT)

        assert 1 <= len(proposals) <= MAX_PROPOSALS
        for proposal in proposals:
            assert 1 <= len(proposal.front) <= 200
            assert 1 <= len(proposal.back) <= 500
            assert proposal.source == "ai"

    @pytest.mark.asyncio
    async def test_mock_mode_needs_no_client(self):
        """Test mock mode runs without a gateway client."""
        with patch("service_llm_gateway.app.generation.flashcards.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await generate_flashcards_from_text(None, SOURCE_TEXT, mock=True)

        sleep.assert_awaited_once()
        assert result.model == "mock"
        assert result.raw_model_response["mock"] is True
        assert result.source_text_hash == hash_source_text(SOURCE_TEXT)
        assert result.proposals

    @pytest.mark.asyncio
    async def test_client_required_without_mock(self):
        """Test a client is required for real generation."""
        with pytest.raises(ValidationError):
            await generate_flashcards_from_text(None, SOURCE_TEXT)


class TestGatewayGeneration:
    """Test cases for generation through the gateway client."""

    @pytest.mark.asyncio
    async def test_generates_proposals(self):
        """Test a structured response becomes validated proposals."""
        sent = []

        def handler(request):
            sent.append(json.loads(request.content))
            return flashcard_response([
                {"front": "Where does photosynthesis happen?", "back": "In the chloroplasts."},
                {"front": "What does the Calvin cycle fix?", "back": "Carbon dioxide."},
            ])

        client = make_client(handler)
        result = await generate_flashcards_from_text(client, SOURCE_TEXT, user_id="user-42")

        assert [proposal.front for proposal in result.proposals] == [
            "Where does photosynthesis happen?",
            "What does the Calvin cycle fix?",
        ]
        assert result.model == "gpt-3.5-turbo"
        assert result.raw_model_response["flashcards"][1]["back"] == "Carbon dioxide."
        assert result.generation_duration_ms >= 0

        body = sent[0]
        assert body["temperature"] == 0.2
        assert body["max_tokens"] == 2000
        assert body["response_format"]["json_schema"]["schema"] == FLASHCARD_GENERATION_SCHEMA
        assert body["messages"][0]["role"] == "system"
        assert SOURCE_TEXT.strip() in body["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_gateway_error_carries_duration(self):
        """Test gateway failures propagate with the generation duration attached."""
        client = make_client(lambda request: httpx.Response(429, json={"error": {"message": "slow"}}))

        with pytest.raises(RateLimitError) as exc_info:
            await generate_flashcards_from_text(client, SOURCE_TEXT, model="openai/gpt-4o-mini")

        assert "generation_duration_ms" in exc_info.value.api_response

    @pytest.mark.asyncio
    async def test_invalid_model_output(self):
        """Test unusable model output is a validation error."""
        client = make_client(lambda request: flashcard_response([]))

        with pytest.raises(ValidationError):
            await generate_flashcards_from_text(client, SOURCE_TEXT)

    @pytest.mark.asyncio
    async def test_unexpected_error_wrapped(self):
        """Test unexpected failures become a 502 gateway error."""
        client = make_client(lambda request: flashcard_response([]))
        client.chat_completion = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(GatewayError) as exc_info:
            await generate_flashcards_from_text(client, SOURCE_TEXT)

        assert exc_info.value.status_code == 502
        assert exc_info.value.message == "boom"
        assert "generation_duration_ms" in exc_info.value.api_response
