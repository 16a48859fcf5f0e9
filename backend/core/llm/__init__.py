"""VulnWatch inference layer.

Usage:
    from backend.core.llm import build_provider, GenerateOptions

    provider = build_provider(settings)
    response = await provider.generate(messages, system, GenerateOptions(model=...))
"""

from .json_output import extract_json_object
from .providers import (
    AnthropicProvider,
    GenerateOptions,
    LLMProvider,
    LLMResponse,
    OpenAIProvider,
    build_provider,
)

__all__ = [
    "AnthropicProvider",
    "GenerateOptions",
    "LLMProvider",
    "LLMResponse",
    "OpenAIProvider",
    "build_provider",
    "extract_json_object",
]
