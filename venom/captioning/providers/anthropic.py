"""Anthropic Messages API provider."""
from __future__ import annotations

from typing import List

import httpx
import structlog

from venom.captioning.provider import CaptionInput, VlmProvider, VlmResponse
from venom.errors import CaptioningError

LOGGER = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
API_VERSION = "2023-06-01"


class AnthropicProvider(VlmProvider):
    name = "anthropic"

    def validate(self) -> List[str]:
        errors: List[str] = []
        if not self.settings.api_key:
            errors.append("Anthropic API key is required")
        if not self.settings.model:
            errors.append("Model is required")
        return errors

    async def caption(self, payload: CaptionInput, prompt: str) -> VlmResponse:
        LOGGER.debug("anthropic_caption", target=payload.url)
        body = {
            "model": self.settings.model,
            "max_tokens": self.settings.max_tokens,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": payload.media_type,
                                "data": payload.screenshot_base64,
                            },
                        },
                        {"type": "text", "text": payload.context_text(prompt)},
                    ],
                }
            ],
        }
        headers = {
            "x-api-key": self.settings.api_key,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }
        base_url = (self.settings.base_url or DEFAULT_BASE_URL).rstrip("/")
        async with httpx.AsyncClient(timeout=self.settings.timeout, transport=self.settings.transport) as client:
            response = await client.post(f"{base_url}/v1/messages", json=body, headers=headers)
            response.raise_for_status()
        data = response.json()
        text = next((block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"), None)
        if text is None:
            raise CaptioningError("No text response from Anthropic")
        usage = data.get("usage", {})
        return VlmResponse(
            text=text,
            tokens_used=int(usage.get("input_tokens", 0)) + int(usage.get("output_tokens", 0)),
            model=self.settings.model,
        )
