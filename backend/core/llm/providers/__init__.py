"""LLM provider implementations."""

from .base import GenerateOptions, LLMProvider, LLMResponse
from .anthropic_provider import AnthropicProvider
from .openai_provider import OpenAIProvider

__all__ = ["GenerateOptions", "LLMProvider", "LLMResponse", "AnthropicProvider", "OpenAIProvider", "build_provider"]


def build_provider(settings) -> LLMProvider:
    """Provider selected by DEFAULT_LLM_PROVIDER."""
    if settings.DEFAULT_LLM_PROVIDER == "openai":
        return OpenAIProvider(settings.OPENAI_API_KEY)
    return AnthropicProvider(settings.ANTHROPIC_API_KEY)
