"""
LLM Provider Factory
"""
import logging
from typing import Dict, Optional, Type

from smartcomm.core.config import ConfigManager
from smartcomm.domain.interfaces.llm_provider import LLMProvider
from smartcomm.infrastructure.llm.groq import GroqLLMProvider

logger = logging.getLogger(__name__)


class LLMFactory:
    """Factory for creating LLM provider instances"""

    _providers: Dict[str, Type[LLMProvider]] = {}

    @classmethod
    def create(cls, provider_name: str) -> LLMProvider:
        """Create LLM provider instance"""
        if provider_name not in cls._providers:
            available = ", ".join(cls._providers.keys()) if cls._providers else "None"
            raise ValueError(f"Unknown LLM provider: {provider_name}. Available: {available}")

        provider_class = cls._providers[provider_name]
        return provider_class()

    @classmethod
    def register(cls, name: str, provider_class: Type[LLMProvider]) -> None:
        """Register a provider"""
        cls._providers[name] = provider_class

    @classmethod
    def list_providers(cls) -> list[str]:
        """List available providers"""
        return list(cls._providers.keys())


LLMFactory.register("groq", GroqLLMProvider)


async def create_llm_provider(
    provider_name: Optional[str] = None,
    config: Optional[ConfigManager] = None,
) -> Optional[LLMProvider]:
    """
    Create and initialize the configured LLM provider.

    Returns None when the provider has no credentials; the engine then
    runs on rules alone and the fallback tier stays silent.
    """
    config = config or ConfigManager()
    name = provider_name or config.get("providers.llm.active", "groq")
    provider_config = config.get(f"providers.llm.{name}", {}) or {}

    provider = LLMFactory.create(name)
    try:
        await provider.initialize(provider_config)
    except ValueError as e:
        logger.warning(f"LLM provider '{name}' not configured, fallback evaluation disabled: {e}")
        return None

    logger.info(f"LLM provider initialized: {provider!r}")
    return provider
