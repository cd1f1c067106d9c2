"""
Groq LLM Provider Implementation
Used by the fallback evaluator to judge customers no rule covers.

Decisions need consistent, short JSON answers, so the defaults are a
low temperature and a small token budget.
"""
import os
from typing import AsyncIterator, List, Optional

from groq import AsyncGroq

from smartcomm.domain.interfaces.llm_provider import LLMProvider
from smartcomm.domain.models.conversation import Message


class GroqLLMProvider(LLMProvider):
    """
    Groq LLM provider

    Models:
    - llama-3.3-70b-versatile: default, follows JSON instructions reliably
    - llama-3.1-8b-instant: cheaper, usable for high-volume sweeps
    """

    def __init__(self):
        self._client: Optional[AsyncGroq] = None
        self._config: dict = {}
        self._model: str = "llama-3.3-70b-versatile"
        self._temperature: float = 0.2
        self._max_tokens: int = 300

    async def initialize(self, config: dict) -> None:
        """Initialize Groq client with configuration"""
        self._config = config
        api_key = config.get("api_key") or os.getenv("GROQ_API_KEY")

        if not api_key:
            raise ValueError("Groq API key not found in config or environment")

        self._client = AsyncGroq(api_key=api_key)

        self._model = config.get("model") or self._model
        self._temperature = config.get("temperature", self._temperature)
        self._max_tokens = config.get("max_tokens", self._max_tokens)

    async def stream_chat(
        self,
        messages: List[Message],
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> AsyncIterator[str]:
        """
        Stream chat completion tokens from Groq

        Args:
            messages: Conversation history
            system_prompt: System instructions
            temperature: Randomness (0.0-2.0)
            max_tokens: Maximum response length
            **kwargs: Additional parameters (model, top_p, seed)

        Yields:
            str: Token/chunk of response
        """
        if not self._client:
            raise RuntimeError("Groq client not initialized. Call initialize() first.")

        temperature = temperature if temperature is not None else self._temperature
        max_tokens = max_tokens if max_tokens is not None else self._max_tokens

        if not 0.0 <= temperature <= 2.0:
            raise ValueError(f"Temperature must be between 0.0 and 2.0, got {temperature}")

        groq_messages = []
        if system_prompt:
            groq_messages.append({"role": "system", "content": system_prompt})
        for msg in messages:
            groq_messages.append({"role": msg.role.value, "content": msg.content})

        try:
            stream = await self._client.chat.completions.create(
                model=kwargs.get("model", self._model),
                messages=groq_messages,
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
                top_p=kwargs.get("top_p", 1.0),
                seed=kwargs.get("seed", None)
            )

            async for chunk in stream:
                if chunk.choices:
                    delta = chunk.choices[0].delta
                    if delta.content:
                        yield delta.content

        except Exception as e:
            raise RuntimeError(f"Groq LLM streaming failed: {str(e)}")

    async def cleanup(self) -> None:
        """Release resources"""
        self._client = None

    @property
    def name(self) -> str:
        return "groq"

    @property
    def supports_streaming(self) -> bool:
        return True

    def __repr__(self) -> str:
        return f"GroqLLMProvider(model={self._model}, temp={self._temperature})"
