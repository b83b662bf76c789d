# backend/ideascan/core/llm/anthropic_provider.py
"""
Anthropic Messages API providers over httpx.

AnthropicHaikuProvider classifies; ClaudeSonnetProvider extracts ideas
(and can also classify). Connection-level failures during extraction are
returned as a network-error response instead of raised so the retry
policy can recognize them by value.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ...config import settings
from ..exceptions import PermanentProviderError, TransientProviderError
from ..models.llm_models import (
    ClassificationRequest,
    ClassificationResponse,
    ExtractionRequest,
    ExtractionResponse,
    ProviderName,
)
from .base import (
    CLASSIFICATION_SYSTEM_PROMPT,
    EXTRACTION_SYSTEM_PROMPT,
    LLMProvider,
    classify_http_status,
    parse_json_response,
)

logger = logging.getLogger("ideascan.llm.anthropic")

REFUSAL_MARKERS = ("refusal", "content_filter", "safety")


class AnthropicProvider(LLMProvider):
    """Shared Messages API plumbing for Anthropic models."""

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        api_version: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.3,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(model, api_key if api_key is not None else settings.anthropic_api_key)
        self.base_url = base_url or settings.anthropic_base_url
        self.api_version = api_version or settings.anthropic_api_version
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.llm_request_timeout, connect=settings.llm_connect_timeout)
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "content-type": "application/json",
        }

    async def _post(self, system: str, prompt: str, max_tokens: int, temperature: float) -> Dict[str, Any]:
        payload = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": system,
            "messages": [{"role": "user", "content": [{"type": "text", "text": prompt}]}],
        }
        try:
            response = await self._client.post(self.base_url, json=payload, headers=self._headers())
        except (httpx.TimeoutException, httpx.TransportError) as e:
            logger.error(f"{self.name} connection error: {e}")
            raise TransientProviderError(f"Failed to connect to Anthropic API: {e}", self.name) from e

        if response.status_code >= 400:
            try:
                message = response.json().get("error", {}).get("message") or response.text
            except ValueError:
                message = response.text
            logger.error(f"{self.name} API error: status={response.status_code} error={message[:200]}")
            raise classify_http_status(self.name, response.status_code, message)

        try:
            data = response.json()
        except ValueError as e:
            raise PermanentProviderError("Anthropic API returned invalid JSON response", self.name) from e
        if not isinstance(data, dict):
            raise PermanentProviderError("Anthropic API returned invalid JSON response", self.name)
        return data

    @staticmethod
    def _content_text(data: Dict[str, Any]) -> str:
        content = data.get("content")
        if isinstance(content, str):
            return content.strip()
        if not isinstance(content, list):
            return ""
        texts = [
            block["text"] for block in content
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        ]
        return "\n".join(texts).strip()

    @staticmethod
    def _refusal_reason(data: Dict[str, Any]) -> Optional[str]:
        content = data.get("content")
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "refusal":
                    text = block.get("text") or block.get("refusal")
                    return text.strip() if isinstance(text, str) and text.strip() else "Content was refused by the API"
        stop_reason = data.get("stop_reason")
        if isinstance(stop_reason, str) and any(m in stop_reason.lower() for m in REFUSAL_MARKERS):
            return "Content was filtered/refused by the API"
        return None

    async def classify(self, request: ClassificationRequest) -> ClassificationResponse:
        data = await self._post(CLASSIFICATION_SYSTEM_PROMPT, request.prompt(), self.max_tokens, self.temperature)
        text = self._content_text(data)

        if not text:
            refusal = self._refusal_reason(data)
            if refusal is not None:
                logger.warning(f"{self.name} refused classification for item {request.item_id}")
                return ClassificationResponse.from_payload(
                    {"verdict": "skip", "confidence": 0.0, "category": "refusal", "reasoning": refusal}, raw=data
                )
            raise TransientProviderError("Anthropic API returned empty content", self.name)

        parsed = parse_json_response(text)
        if not isinstance(parsed, dict) or not parsed:
            logger.warning(f"Failed to parse {self.name} JSON response (length={len(text)})")
            raise PermanentProviderError("Failed to parse Anthropic API response", self.name)
        return ClassificationResponse.from_payload(parsed, raw=data)

    async def extract(self, request: ExtractionRequest) -> ExtractionResponse:
        raise PermanentProviderError(f"{self.name} does not support extraction", self.name)

    async def aclose(self) -> None:
        await self._client.aclose()


class AnthropicHaikuProvider(AnthropicProvider):
    name = ProviderName.ANTHROPIC_HAIKU.value

    def __init__(self, model: Optional[str] = None, **kwargs):
        kwargs.setdefault("max_tokens", settings.classification_max_tokens)
        kwargs.setdefault("temperature", settings.classification_temperature)
        super().__init__(model or settings.anthropic_haiku_model, **kwargs)


class ClaudeSonnetProvider(AnthropicProvider):
    name = ProviderName.CLAUDE_SONNET.value

    def __init__(self, model: Optional[str] = None, **kwargs):
        kwargs.setdefault("max_tokens", settings.extraction_max_tokens)
        kwargs.setdefault("temperature", settings.extraction_temperature)
        super().__init__(model or settings.claude_sonnet_model, **kwargs)

    @property
    def supports_extraction(self) -> bool:
        return True

    async def extract(self, request: ExtractionRequest) -> ExtractionResponse:
        try:
            data = await self._post(EXTRACTION_SYSTEM_PROMPT, request.prompt(), self.max_tokens, self.temperature)
        except TransientProviderError as e:
            if e.status_code is None:
                return ExtractionResponse.network_failure(str(e))
            raise

        text = self._content_text(data)
        if not text:
            if self._refusal_reason(data) is not None:
                return ExtractionResponse(raw=data)
            raise TransientProviderError("Anthropic API returned empty content", self.name)

        parsed = parse_json_response(text)
        if parsed is None:
            logger.warning(f"Failed to parse {self.name} extraction response (length={len(text)})")
            raise PermanentProviderError("Failed to parse Anthropic extraction response", self.name)
        return ExtractionResponse.from_payload(parsed, raw=data)
