"""LLM access for the label classifier.

Supports:
- OpenAI (GPT-4o, GPT-4o-mini, etc.)
- Google Gemini
- Anthropic Claude
- Local/Offline providers (Ollama, LM Studio, etc.)

Uses LiteLLM for a unified interface across providers.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from litellm import acompletion

logger = logging.getLogger(__name__)


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    GOOGLE = "google"  # Gemini
    ANTHROPIC = "anthropic"  # Claude
    OLLAMA = "ollama"
    OPENAI_COMPATIBLE = "openai_compatible"  # LM Studio, vLLM, etc.


@dataclass
class LLMConfig:
    """Configuration for a single LLM endpoint."""
    provider: LLMProvider
    model: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 300
    extra_params: Dict[str, Any] = field(default_factory=dict)

    def get_litellm_model(self) -> str:
        """Get the model string in LiteLLM format.

        LiteLLM uses prefixes for different providers:
        - OpenAI: model_name (no prefix)
        - Gemini: gemini/model_name
        - Claude: anthropic/model_name
        - Ollama: ollama/model_name
        """
        prefixes = {
            LLMProvider.GOOGLE: "gemini/",
            LLMProvider.ANTHROPIC: "anthropic/",
            LLMProvider.OLLAMA: "ollama/",
            LLMProvider.OPENAI_COMPATIBLE: "openai/",
        }
        prefix = prefixes.get(self.provider)
        if prefix and not self.model.startswith(prefix):
            return f"{prefix}{self.model}"
        return self.model

    def get_request_params(self) -> Dict[str, Any]:
        """Credentials and endpoint parameters for LiteLLM."""
        params: Dict[str, Any] = {}
        if self.api_key:
            params["api_key"] = self.api_key
        if self.base_url:
            params["base_url"] = self.base_url
        return params


class LLMClient:
    """Unified LLM client using LiteLLM for multi-provider support."""

    def __init__(self, config: LLMConfig):
        self.config = config
        self._model = config.get_litellm_model()

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> str:
        """Generate a completion.

        Args:
            messages: List of message dicts with 'role' and 'content'
            temperature: Override default temperature
            max_tokens: Override default max tokens
            **kwargs: Additional parameters passed to LiteLLM

        Returns:
            Generated text content
        """
        params = {
            "model": self._model,
            "messages": messages,
            "temperature": temperature if temperature is not None else self.config.temperature,
            "max_tokens": max_tokens or self.config.max_tokens,
            **self.config.get_request_params(),
            **self.config.extra_params,
            **kwargs
        }

        try:
            response = await acompletion(**params)
            return response.choices[0].message.content or ""
        except Exception as e:
            logger.error(f"LLM completion failed for {self._model}: {e}")
            raise

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        """Run one system + user prompt pair and return the raw text."""
        return await self.complete([
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ])


def create_llm_client(settings) -> LLMClient:
    """Build the classifier client from BackendSettings."""
    try:
        provider = LLMProvider(settings.llm_provider.lower())
    except ValueError:
        logger.warning(f"Unknown LLM provider '{settings.llm_provider}', using openai")
        provider = LLMProvider.OPENAI

    return LLMClient(LLMConfig(
        provider=provider,
        model=settings.llm_model,
        api_key=settings.llm_api_key or None,
        base_url=settings.llm_base_url or None,
        temperature=settings.classifier_temperature,
    ))
