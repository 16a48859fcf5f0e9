"""Base provider interface and shared data structures for the inference backend."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List


@dataclass
class LLMResponse:
    """Standardized response from any LLM provider."""
    text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    provider: str = ""
    stop_reason: str = ""
    raw: Any = None  # Provider-specific raw response for debugging

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class GenerateOptions:
    """Options passed to provider generate methods."""
    model: str = ""
    temperature: float = 0.0
    max_tokens: int = 4096
    json_mode: bool = False  # Request structured JSON output


class LLMProvider(ABC):
    """Abstract base for all LLM providers.

    Providers translate SDK failures into the gateway's error classes
    (RateLimited / UpstreamError) so breaker accounting stays uniform.
    """

    service_key = "inference"

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., 'anthropic', 'openai')."""
        ...

    @abstractmethod
    async def generate(
        self,
        messages: List[Dict[str, Any]],
        system: str,
        options: GenerateOptions,
    ) -> LLMResponse:
        """Generate a response from the LLM.

        Args:
            messages: [{"role": "user"|"assistant", "content": str}]
            system: System prompt text.
            options: Generation parameters (model, temperature, etc.).
        """
        ...

    @abstractmethod
    async def is_available(self) -> bool:
        """Check if this provider is configured."""
        ...
