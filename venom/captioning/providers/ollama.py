"""Ollama provider for local vision models such as LLaVA."""
from __future__ import annotations

from typing import List

import httpx
import structlog

from venom.captioning.provider import CaptionInput, VlmProvider, VlmResponse
from venom.errors import CaptioningError

LOGGER = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"


class OllamaProvider(VlmProvider):
    name = "ollama"

    def validate(self) -> List[str]:
        if not self.settings.model:
            return ["Model is required (e.g., llava, bakllava)"]
        return []

    async def caption(self, payload: CaptionInput, prompt: str) -> VlmResponse:
        LOGGER.debug("ollama_caption", target=payload.url)
        body = {
            "model": self.settings.model,
            "prompt": payload.context_text(prompt),
            "images": [payload.screenshot_base64],
            "stream": False,
            "options": {"num_predict": self.settings.max_tokens},
        }
        base_url = (self.settings.base_url or DEFAULT_BASE_URL).rstrip("/")
        async with httpx.AsyncClient(timeout=self.settings.timeout, transport=self.settings.transport) as client:
            response = await client.post(f"{base_url}/api/generate", json=body)
            response.raise_for_status()
        data = response.json()
        text = data.get("response")
        if not text:
            raise CaptioningError("No response from Ollama")
        # counts are missing on some builds; fall back to a rough estimate
        tokens = int(data.get("prompt_eval_count") or 0) + int(data.get("eval_count") or 0)
        return VlmResponse(
            text=text,
            tokens_used=tokens or -(-len(text) // 4),
            model=data.get("model") or self.settings.model,
        )
