from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cuoti_book.config import Settings


class ProviderError(Exception):
    """An LLM call failed in a way retrying will not fix."""


class TransientProviderError(ProviderError):
    """Timeout, rate limit, connection drop or upstream 5xx; safe to retry."""

    def __init__(self, message: str, rate_limited: bool = False):
        super().__init__(message)
        self.rate_limited = rate_limited


class LLMProvider(ABC):
    @abstractmethod
    async def generate(
        self, prompt: str, temperature: float = 0.1, image: bytes | None = None
    ) -> str:
        """Return the model's text reply; *image* is raw JPEG bytes for OCR."""
        ...

    @abstractmethod
    def name(self) -> str:
        ...


DEFAULT_MODELS = {
    "gemini": "gemini-2.0-flash",
    "deepseek": "deepseek-chat",
    "qwen": "qwen-plus",
    "openai": "gpt-4o-mini",
    "anthropic": "claude-sonnet-4-20250514",
    "ollama": "qwen3:8b",
}

OPENAI_COMPATIBLE_URLS = {
    "deepseek": "https://api.deepseek.com/v1",
    "qwen": "https://dashscope.aliyuncs.com/compatible-mode/v1",
    "openai": None,
}


def build_llm(settings: Settings) -> LLMProvider:
    provider = settings.llm_provider
    if provider not in DEFAULT_MODELS:
        raise ValueError(f"Unknown LLM provider: {provider}")
    model = settings.llm_model or DEFAULT_MODELS[provider]
    timeout = settings.analysis_timeout_seconds
    if provider == "gemini":
        from cuoti_book.providers.llm_gemini import GeminiProvider
        return GeminiProvider(api_key=settings.api_key(provider), model=model, timeout=timeout)
    if provider in OPENAI_COMPATIBLE_URLS:
        from cuoti_book.providers.llm_openai import OpenAIProvider
        return OpenAIProvider(
            api_key=settings.api_key(provider),
            model=model,
            base_url=OPENAI_COMPATIBLE_URLS[provider],
            timeout=timeout,
            label=provider,
        )
    if provider == "anthropic":
        from cuoti_book.providers.llm_anthropic import AnthropicProvider
        return AnthropicProvider(api_key=settings.api_key(provider), model=model, timeout=timeout)
    from cuoti_book.providers.llm_ollama import OllamaProvider
    return OllamaProvider(base_url=settings.ollama_url, model=model, timeout=timeout)
