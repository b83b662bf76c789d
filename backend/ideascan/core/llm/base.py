# backend/ideascan/core/llm/base.py
"""
Provider interface shared by all language-model clients.

The consensus engine and the chunk workers depend only on LLMProvider;
concrete providers are chosen by name through the factory.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Optional

from ..exceptions import PermanentProviderError, TransientProviderError
from ..models.llm_models import (
    ClassificationRequest,
    ClassificationResponse,
    ExtractionRequest,
    ExtractionResponse,
)

logger = logging.getLogger("ideascan.llm")

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")

CLASSIFICATION_SYSTEM_PROMPT = (
    "You are a classification assistant. Analyze forum posts and classify them as potential "
    "SaaS idea sources. Respond only in valid JSON format."
)
EXTRACTION_SYSTEM_PROMPT = (
    "You are a SaaS opportunity analyst. Extract viable business ideas from forum discussions. "
    "Respond only with valid JSON."
)


def parse_json_response(text: str) -> Optional[Any]:
    """
    Parse JSON from model output text.

    Strips a markdown code fence if present, then falls back to the
    outermost {...} or [...] slice with control characters removed.
    Returns None if nothing parses.
    """
    text = (text or "").strip()
    match = _FENCE_RE.search(text)
    if match:
        text = match.group(1)

    try:
        return json.loads(text)
    except ValueError:
        pass

    for open_char, close_char in (("{", "}"), ("[", "]")):
        start, end = text.find(open_char), text.rfind(close_char)
        if start != -1 and end > start:
            candidate = _CONTROL_CHARS_RE.sub("", text[start:end + 1])
            try:
                return json.loads(candidate)
            except ValueError:
                continue
    return None


def classify_http_status(provider: str, status: int, message: str) -> Exception:
    """Map an HTTP error status to the transient/permanent taxonomy."""
    if status >= 500 or status in (408, 429):
        return TransientProviderError(f"API returned status {status}: {message}", provider, status)
    return PermanentProviderError(f"API returned status {status}: {message}", provider, status)


class LLMProvider(ABC):
    """
    Language-model provider interface.

    Attributes:
        name: provider identifier (a ProviderName value)
        model: concrete model identifier sent to the API
    """

    name: str = ""

    def __init__(self, model: str, api_key: Optional[str] = None):
        self.model = model
        self.api_key = api_key or ""
        if not self.api_key:
            logger.warning(f"LLM provider {self.name} has no API key configured")

    @abstractmethod
    async def classify(self, request: ClassificationRequest) -> ClassificationResponse:
        """
        Classify one item.

        Raises:
            TransientProviderError: retryable failure
            PermanentProviderError: non-retryable failure
        """

    @abstractmethod
    async def extract(self, request: ExtractionRequest) -> ExtractionResponse:
        """
        Extract ideas from one item.

        Connection failures are returned as ExtractionResponse.network_failure()
        rather than raised.
        """

    @property
    def supports_classification(self) -> bool:
        return True

    @property
    def supports_extraction(self) -> bool:
        return False

    async def aclose(self) -> None:
        """Release HTTP resources. Override where a client is held."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(name={self.name}, model={self.model})>"
