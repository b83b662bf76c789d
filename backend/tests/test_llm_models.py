"""
Unit tests for LLM response parsing, prompt building and the provider factory.
"""

import pytest

from ideascan.core.exceptions import PermanentProviderError, TransientProviderError
from ideascan.core.llm.anthropic_provider import AnthropicHaikuProvider, ClaudeSonnetProvider
from ideascan.core.llm.base import classify_http_status, parse_json_response
from ideascan.core.llm.factory import LLMProviderFactory
from ideascan.core.llm.openai_provider import OpenAIGPT4MiniProvider
from ideascan.core.models.llm_models import (
    ClassificationRequest,
    ClassificationResponse,
    ExtractionResponse,
    IdeaPayload,
    ReplyExcerpt,
)


class TestParseJsonResponse:
    """Test parse_json_response()."""

    def test_plain_object(self):
        assert parse_json_response('{"verdict": "keep"}') == {"verdict": "keep"}

    def test_fenced(self):
        assert parse_json_response('```json\n[{"a": 1}]\n```') == [{"a": 1}]

    def test_prose_around_object(self):
        """Test the outermost object is sliced out of surrounding prose."""
        text = 'Here is my answer: {"verdict": "skip", "confidence": 0.7} Hope that helps.'
        assert parse_json_response(text) == {"verdict": "skip", "confidence": 0.7}

    def test_control_characters_stripped(self):
        assert parse_json_response('noise {"reasoning": "line\x01 break"}') == {"reasoning": "line break"}

    @pytest.mark.parametrize("text", ["", None, "keep", "{not json}"])
    def test_unparseable(self, text):
        assert parse_json_response(text) is None


class TestHttpStatusTaxonomy:
    """Test classify_http_status()."""

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 529])
    def test_transient(self, status):
        error = classify_http_status("anthropic-haiku", status, "busy")
        assert isinstance(error, TransientProviderError)
        assert error.status_code == status

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_permanent(self, status):
        assert isinstance(classify_http_status("anthropic-haiku", status, "no"), PermanentProviderError)


class TestModels:
    """Test request and response models."""

    def test_classification_response_defaults(self):
        """Test missing fields fall back to a zero-confidence skip."""
        response = ClassificationResponse.from_payload({"confidence": "not a number"})
        assert response.verdict == "skip"
        assert response.confidence == 0.0
        assert response.category == "other"
        assert not response.is_keep

    def test_idea_requires_title_and_problem(self):
        assert IdeaPayload.from_payload({"idea_title": "X"}) is None
        assert IdeaPayload.from_payload("X") is None
        idea = IdeaPayload.from_payload({"idea_title": " X ", "problem_statement": "Y"})
        assert idea.idea_title == "X"
        assert idea.branding_suggestions == {"name_ideas": [], "positioning": "", "tagline": ""}

    def test_single_idea_object(self):
        """Test a bare idea object is treated as a one-element list."""
        response = ExtractionResponse.from_payload({"idea_title": "X", "problem_statement": "Y"})
        assert len(response.ideas) == 1
        assert response.has_ideas

    def test_network_failure(self):
        response = ExtractionResponse.network_failure("reset")
        assert response.network_error
        assert response.error == "reset"
        assert not response.has_ideas

    def test_prompt_includes_post_and_replies(self):
        request = ClassificationRequest(
            topic="SaaS",
            title="Need a scheduling tool",
            replies=[ReplyExcerpt(author="bob", body="Same problem here", upvotes=4)],
        )
        prompt = request.prompt()
        assert "Need a scheduling tool" in prompt
        assert "[4 upvotes] bob: Same problem here" in prompt
        assert "(No body text - link post)" in prompt


class TestProviderFactory:
    """Test LLMProviderFactory."""

    @pytest.mark.asyncio
    async def test_default_classification_providers(self):
        """Test the configured slot order is primary then secondary."""
        providers = LLMProviderFactory().classification_providers()
        try:
            assert [type(p) for p in providers] == [AnthropicHaikuProvider, OpenAIGPT4MiniProvider]
        finally:
            for provider in providers:
                await provider.aclose()

    @pytest.mark.asyncio
    async def test_at_most_two_providers(self):
        names = ["claude-sonnet", "anthropic-haiku", "openai-gpt4-mini"]
        providers = LLMProviderFactory().classification_providers(names)
        try:
            assert [p.name for p in providers] == ["claude-sonnet", "anthropic-haiku"]
        finally:
            for provider in providers:
                await provider.aclose()

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown LLM provider 'gpt-9'"):
            LLMProviderFactory().create("gpt-9")

    def test_no_providers_configured(self):
        with pytest.raises(ValueError):
            LLMProviderFactory().classification_providers([])

    @pytest.mark.asyncio
    async def test_extraction_provider(self):
        provider = LLMProviderFactory().extraction_provider()
        try:
            assert isinstance(provider, ClaudeSonnetProvider)
        finally:
            await provider.aclose()

    def test_extraction_provider_must_support_extraction(self):
        with pytest.raises(ValueError, match="does not support extraction"):
            LLMProviderFactory().extraction_provider("openai-gpt4-mini")
