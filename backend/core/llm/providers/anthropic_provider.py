"""Anthropic Claude provider."""

import asyncio
from typing import Any, Dict, List, Optional

import anthropic

from backend.core.errors import RateLimited, UpstreamError
from .base import GenerateOptions, LLMProvider, LLMResponse


class AnthropicProvider(LLMProvider):
    """Claude via the Anthropic Messages API."""

    def __init__(self, api_key: Optional[str] = None):
        self._client = None
        if api_key and api_key not in ("", "your-anthropic-api-key"):
            self._client = anthropic.Anthropic(api_key=api_key)

    @property
    def name(self) -> str:
        return "anthropic"

    async def is_available(self) -> bool:
        return self._client is not None

    async def generate(
        self,
        messages: List[Dict[str, Any]],
        system: str,
        options: GenerateOptions,
    ) -> LLMResponse:
        if not self._client:
            raise UpstreamError(self.service_key, "Anthropic client not initialized")

        def _call():
            params: Dict[str, Any] = {
                "model": options.model,
                "max_tokens": options.max_tokens,
                "temperature": options.temperature,
                "messages": messages,
            }
            if system:
                params["system"] = system
            return self._client.messages.create(**params)

        try:
            raw = await asyncio.to_thread(_call)
        except anthropic.RateLimitError as e:
            raise RateLimited(self.service_key, message=f"anthropic: {e}") from e
        except anthropic.APIStatusError as e:
            raise UpstreamError(self.service_key, f"anthropic: {e}", status=e.status_code) from e
        except anthropic.APIError as e:
            raise UpstreamError(self.service_key, f"anthropic: {e}") from e
        return self._parse_response(raw)

    def _parse_response(self, raw: Any) -> LLMResponse:
        text_parts = [block.text for block in raw.content if block.type == "text"]
        return LLMResponse(
            text="\n".join(text_parts),
            input_tokens=raw.usage.input_tokens,
            output_tokens=raw.usage.output_tokens,
            model=raw.model,
            provider=self.name,
            stop_reason=raw.stop_reason or "",
            raw=raw,
        )
