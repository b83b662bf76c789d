# backend/ideascan/core/llm/openai_provider.py
"""
OpenAI chat-completions classification provider.

Uses the openai SDK over an httpx.AsyncClient. SDK-level retries are
disabled; RetryPolicy owns retrying so backoff is uniform across
providers.
"""

import logging
from typing import Any, Dict, Optional

import httpx
import openai
from openai import AsyncOpenAI

from ...config import settings
from ..exceptions import PermanentProviderError, TransientProviderError
from ..models.llm_models import (
    ClassificationRequest,
    ClassificationResponse,
    ExtractionRequest,
    ExtractionResponse,
    ProviderName,
)
from .base import CLASSIFICATION_SYSTEM_PROMPT, LLMProvider, classify_http_status, parse_json_response

logger = logging.getLogger("ideascan.llm.openai")


class OpenAIGPT4MiniProvider(LLMProvider):
    name = ProviderName.OPENAI_GPT4_MINI.value

    def __init__(
        self,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        super().__init__(model or settings.openai_model, api_key if api_key is not None else settings.openai_api_key)
        self.max_tokens = max_tokens or settings.classification_max_tokens
        self.temperature = temperature if temperature is not None else settings.classification_temperature

        if client is None:
            http_client = httpx.AsyncClient(
                verify=settings.openai_verify_ssl,
                timeout=httpx.Timeout(settings.llm_request_timeout, connect=settings.llm_connect_timeout),
            )
            client = AsyncOpenAI(
                api_key=self.api_key or "missing",
                base_url=base_url or settings.openai_base_url,
                http_client=http_client,
                max_retries=0,
            )
        self._client = client

    async def classify(self, request: ClassificationRequest) -> ClassificationResponse:
        try:
            completion = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": CLASSIFICATION_SYSTEM_PROMPT},
                    {"role": "user", "content": request.prompt()},
                ],
            )
        except openai.APIConnectionError as e:
            logger.error(f"{self.name} connection error: {e}")
            raise TransientProviderError(f"Failed to connect to OpenAI API: {e}", self.name) from e
        except openai.APIStatusError as e:
            logger.error(f"{self.name} API error: status={e.status_code} error={e.message}")
            raise classify_http_status(self.name, e.status_code, e.message) from e

        raw: Dict[str, Any] = completion.model_dump() if hasattr(completion, "model_dump") else {}
        if not completion.choices:
            raise PermanentProviderError("OpenAI API returned no choices", self.name)

        choice = completion.choices[0]
        message = choice.message
        refusal = getattr(message, "refusal", None)
        if choice.finish_reason == "content_filter" or refusal:
            logger.warning(f"{self.name} filtered classification for item {request.item_id}")
            return ClassificationResponse.from_payload(
                {
                    "verdict": "skip",
                    "confidence": 0.0,
                    "category": "refusal",
                    "reasoning": refusal or "Content was filtered by the API",
                },
                raw=raw,
            )

        text = (message.content or "").strip()
        if not text:
            raise TransientProviderError("OpenAI API returned empty content", self.name)

        parsed = parse_json_response(text)
        if not isinstance(parsed, dict) or not parsed:
            logger.warning(f"Failed to parse {self.name} JSON response (length={len(text)})")
            raise PermanentProviderError("Failed to parse OpenAI API response", self.name)
        return ClassificationResponse.from_payload(parsed, raw=raw)

    async def extract(self, request: ExtractionRequest) -> ExtractionResponse:
        raise PermanentProviderError(f"{self.name} does not support extraction", self.name)

    async def aclose(self) -> None:
        await self._client.close()
