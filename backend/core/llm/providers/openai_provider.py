"""OpenAI provider with JSON mode."""

import asyncio
from typing import Any, Dict, List, Optional

import openai

from backend.core.errors import RateLimited, UpstreamError
from .base import GenerateOptions, LLMProvider, LLMResponse


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions API."""

    def __init__(self, api_key: Optional[str] = None):
        self._client = None
        if api_key and api_key not in ("", "your-openai-api-key"):
            self._client = openai.OpenAI(api_key=api_key)

    @property
    def name(self) -> str:
        return "openai"

    async def is_available(self) -> bool:
        return self._client is not None

    async def generate(
        self,
        messages: List[Dict[str, Any]],
        system: str,
        options: GenerateOptions,
    ) -> LLMResponse:
        if not self._client:
            raise UpstreamError(self.service_key, "OpenAI client not initialized")

        def _call():
            api_messages = []
            if system:
                api_messages.append({"role": "system", "content": system})
            for msg in messages:
                api_messages.append({"role": msg["role"], "content": msg["content"]})

            params: Dict[str, Any] = {
                "model": options.model,
                "max_tokens": options.max_tokens,
                "temperature": options.temperature,
                "messages": api_messages,
            }
            if options.json_mode:
                params["response_format"] = {"type": "json_object"}
            return self._client.chat.completions.create(**params)

        try:
            raw = await asyncio.to_thread(_call)
        except openai.RateLimitError as e:
            raise RateLimited(self.service_key, message=f"openai: {e}") from e
        except openai.APIStatusError as e:
            raise UpstreamError(self.service_key, f"openai: {e}", status=e.status_code) from e
        except openai.APIError as e:
            raise UpstreamError(self.service_key, f"openai: {e}") from e
        return self._parse_response(raw)

    def _parse_response(self, raw: Any) -> LLMResponse:
        choice = raw.choices[0]
        return LLMResponse(
            text=choice.message.content or "",
            input_tokens=raw.usage.prompt_tokens if raw.usage else 0,
            output_tokens=raw.usage.completion_tokens if raw.usage else 0,
            model=raw.model,
            provider=self.name,
            stop_reason=choice.finish_reason or "",
            raw=raw,
        )
