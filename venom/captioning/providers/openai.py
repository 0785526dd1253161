"""OpenAI chat completions provider."""
from __future__ import annotations

from typing import List

import httpx
import structlog

from venom.captioning.provider import CaptionInput, VlmProvider, VlmResponse
from venom.errors import CaptioningError

LOGGER = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class OpenAIProvider(VlmProvider):
    name = "openai"

    def validate(self) -> List[str]:
        errors: List[str] = []
        if not self.settings.api_key:
            errors.append("OpenAI API key is required")
        if not self.settings.model:
            errors.append("Model is required")
        return errors

    async def caption(self, payload: CaptionInput, prompt: str) -> VlmResponse:
        LOGGER.debug("openai_caption", target=payload.url)
        image_url = f"data:{payload.media_type};base64,{payload.screenshot_base64}"
        body = {
            "model": self.settings.model,
            "max_tokens": self.settings.max_tokens,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
                        {"type": "text", "text": payload.context_text(prompt)},
                    ],
                }
            ],
        }
        base_url = (self.settings.base_url or DEFAULT_BASE_URL).rstrip("/")
        async with httpx.AsyncClient(timeout=self.settings.timeout, transport=self.settings.transport) as client:
            response = await client.post(
                f"{base_url}/chat/completions",
                json=body,
                headers={"Authorization": f"Bearer {self.settings.api_key}"},
            )
            response.raise_for_status()
        data = response.json()
        choices = data.get("choices") or []
        text = choices[0].get("message", {}).get("content") if choices else None
        if not text:
            raise CaptioningError("No text response from OpenAI")
        return VlmResponse(
            text=text,
            tokens_used=int(data.get("usage", {}).get("total_tokens", 0)),
            model=data.get("model") or self.settings.model,
        )
