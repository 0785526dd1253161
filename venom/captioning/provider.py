"""Captioning provider interface and the name-to-constructor registry."""
from __future__ import annotations

import abc
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import httpx
import orjson
import structlog

from venom.errors import UnknownProviderError
from venom.fetch.snapshot import CaptionResult

LOGGER = structlog.get_logger(__name__)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(slots=True)
class CaptionInput:
    """Everything a provider may send alongside the screenshot."""

    screenshot_base64: str
    url: str
    title: str
    status_code: int
    load_time_ms: int
    media_type: str = "image/png"
    description: Optional[str] = None
    html_context: Optional[str] = None
    css_context: Optional[str] = None

    def context_text(self, prompt: str) -> str:
        """Prompt followed by the optional HTML/CSS context and page facts."""
        text = prompt
        if self.html_context:
            text += f"\n\n## HTML Context\n{self.html_context}"
        if self.css_context:
            text += f"\n\n## CSS Context\n{self.css_context}"
        text += (
            "\n\n## Page Information"
            f"\n- URL: {self.url}"
            f"\n- Title: {self.title}"
            f"\n- Description: {self.description or 'N/A'}"
            f"\n- Load Time: {self.load_time_ms}ms"
            f"\n- HTTP Status: {self.status_code}"
        )
        return text


@dataclass(slots=True)
class VlmResponse:
    text: str
    tokens_used: int
    model: str


@dataclass(slots=True)
class ProviderSettings:
    api_key: str
    model: str
    max_tokens: int
    base_url: Optional[str] = None
    timeout: float = 120.0
    transport: Optional[httpx.AsyncBaseTransport] = None


class VlmProvider(abc.ABC):
    """A vision-language backend able to describe a page screenshot."""

    name: str = ""

    def __init__(self, settings: ProviderSettings) -> None:
        self.settings = settings

    @abc.abstractmethod
    async def caption(self, payload: CaptionInput, prompt: str) -> VlmResponse:
        """Send one captioning request."""

    @abc.abstractmethod
    def validate(self) -> List[str]:
        """Return configuration problems; empty when usable."""

    def parse_response(self, response: VlmResponse) -> CaptionResult:
        """Read the first JSON object in the reply, falling back to the raw text."""
        match = _JSON_OBJECT.search(response.text)
        if match:
            try:
                parsed = orjson.loads(match.group(0))
            except orjson.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                elements = parsed.get("visualElements", parsed.get("visual_elements"))
                confidence = parsed.get("confidence")
                return CaptionResult(
                    caption=str(parsed.get("caption") or response.text),
                    visual_elements=[str(item) for item in elements] if isinstance(elements, list) else [],
                    page_type=str(parsed.get("pageType") or parsed.get("page_type") or "unknown"),
                    confidence=float(confidence) if isinstance(confidence, (int, float)) else 0.8,
                    model=response.model,
                    tokens_used=response.tokens_used,
                )
        return CaptionResult(
            caption=response.text[:1000],
            visual_elements=[],
            page_type="unknown",
            confidence=0.5,
            model=response.model,
            tokens_used=response.tokens_used,
        )


ProviderFactory = Callable[[ProviderSettings], VlmProvider]


class ProviderRegistry:
    """Explicit map from provider name (and aliases) to constructor."""

    def __init__(self) -> None:
        self._factories: Dict[str, ProviderFactory] = {}
        self._canonical: Dict[str, str] = {}

    def register(self, name: str, factory: ProviderFactory, *, aliases: tuple[str, ...] = ()) -> None:
        key = name.lower()
        self._factories[key] = factory
        self._canonical[key] = key
        for alias in aliases:
            self._factories[alias.lower()] = factory
            self._canonical[alias.lower()] = key

    def names(self) -> List[str]:
        """All registered names including aliases."""
        return sorted(self._factories)

    def aliases(self) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for alias, canonical in sorted(self._canonical.items()):
            grouped.setdefault(canonical, [])
            if alias != canonical:
                grouped[canonical].append(alias)
        return grouped

    def create(self, name: str, settings: ProviderSettings) -> VlmProvider:
        factory = self._factories.get(name.lower())
        if factory is None:
            raise UnknownProviderError(f"Unknown VLM provider: {name}. Available: {', '.join(self.names())}")
        return factory(settings)
