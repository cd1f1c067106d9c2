"""
LLM Provider Package
"""
from smartcomm.infrastructure.llm.factory import LLMFactory, create_llm_provider
from smartcomm.infrastructure.llm.groq import GroqLLMProvider

__all__ = ["LLMFactory", "GroqLLMProvider", "create_llm_provider"]
