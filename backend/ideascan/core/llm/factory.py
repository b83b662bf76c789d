# backend/ideascan/core/llm/factory.py
"""
Provider factory: maps configured provider names to implementations.

Providers hold an HTTP client bound to the running event loop, so each
task run creates its own instances and closes them when done.

Usage:
    from ideascan.core.llm.factory import llm_provider_factory

    providers = llm_provider_factory.classification_providers()
    extractor = llm_provider_factory.extraction_provider()
"""

import logging
from typing import Callable, Dict, List, Optional, Sequence

from ...config import settings
from ..models.llm_models import ProviderName
from .anthropic_provider import AnthropicHaikuProvider, ClaudeSonnetProvider
from .base import LLMProvider
from .openai_provider import OpenAIGPT4MiniProvider

logger = logging.getLogger("ideascan.llm.factory")

PROVIDER_CLASSES: Dict[ProviderName, Callable[[], LLMProvider]] = {
    ProviderName.ANTHROPIC_HAIKU: AnthropicHaikuProvider,
    ProviderName.CLAUDE_SONNET: ClaudeSonnetProvider,
    ProviderName.OPENAI_GPT4_MINI: OpenAIGPT4MiniProvider,
}


class LLMProviderFactory:
    def create(self, name: str) -> LLMProvider:
        """
        Instantiate a provider by configured name.

        Raises:
            ValueError: unknown provider name
        """
        try:
            provider_name = ProviderName(name)
        except ValueError:
            valid = ", ".join(p.value for p in ProviderName)
            raise ValueError(f"Unknown LLM provider '{name}' (valid: {valid})") from None
        return PROVIDER_CLASSES[provider_name]()

    def classification_providers(self, names: Optional[Sequence[str]] = None) -> List[LLMProvider]:
        """Providers in slot order (primary first). At most two are used."""
        names = list(names if names is not None else settings.classification_providers)
        if not names:
            raise ValueError("At least one classification provider must be configured")
        if len(names) > 2:
            logger.warning(f"Only the first two classification providers are used: {names[:2]}")
        return [self.create(name) for name in names[:2]]

    def extraction_provider(self, name: Optional[str] = None) -> LLMProvider:
        provider = self.create(name or settings.extraction_provider)
        if not provider.supports_extraction:
            raise ValueError(f"Provider '{provider.name}' does not support extraction")
        return provider


# Global singleton instance
llm_provider_factory = LLMProviderFactory()
