"""Captioning service turning page captures into descriptions."""
from __future__ import annotations

import asyncio
import re
from typing import Dict, List, Optional, Sequence

import structlog

from venom.captioning.provider import CaptionInput, ProviderRegistry, ProviderSettings, VlmProvider
from venom.config import CaptioningSettings
from venom.errors import ConfigError
from venom.fetch.snapshot import CaptionResult, PageCapture
from venom.storage.layout import DataLayout

LOGGER = structlog.get_logger(__name__)

DEFAULT_PROMPT = """You are analyzing a screenshot of a web page along with its HTML structure and CSS styling.

Please provide a detailed caption that describes:

1. **Page Type**: What type of page is this? (e.g., homepage, article, product page, login form, dashboard, etc.)

2. **Visual Layout**: Describe the overall visual structure and layout of the page. What are the main sections?

3. **Key Visual Elements**: List the most important visual elements you can identify (headers, navigation, images, buttons, forms, etc.)

4. **Content Summary**: Briefly summarize what content or information is being presented.

5. **Design Style**: Describe the visual design style (modern, minimalist, corporate, playful, etc.) and any notable design patterns.

6. **Color Scheme**: Note the primary colors used in the design.

Respond in JSON format with the following structure:
{
  "caption": "A comprehensive 2-3 sentence description of the page",
  "pageType": "The type of page",
  "visualElements": ["element1", "element2", ...],
  "confidence": 0.0-1.0
}"""

_STRUCTURAL_TAGS = ("header", "nav", "main", "article", "section", "form", "button", "img")
_COLOR = re.compile(r"#[0-9a-fA-F]{3,6}\b|rgba?\([^)]+\)")
_FONT = re.compile(r"font-family:\s*([^;}]+)", re.IGNORECASE)
_TAILWIND = re.compile(r"\.(p|m)[xytblr]?-\d")


def _unique(values: Sequence[str], limit: int) -> List[str]:
    return list(dict.fromkeys(value.strip() for value in values))[:limit]


def summarize_html(capture: PageCapture) -> str:
    html = capture.html
    counts = {tag: len(re.findall(rf"<{tag}\b", html.html, re.IGNORECASE)) for tag in _STRUCTURAL_TAGS}
    lines = [f"Title: {html.title}"]
    if html.description:
        lines.append(f"Meta Description: {html.description}")
    lines.extend(
        [
            "\nStructural Elements:",
            f"- Headers: {counts['header']}, Navs: {counts['nav']}, Main: {counts['main']}",
            f"- Articles: {counts['article']}, Sections: {counts['section']}",
            f"- Forms: {counts['form']}, Buttons: {counts['button']}",
            f"- Images: {counts['img']}, Links: {len(html.links)}",
            f"\nContent Excerpt:\n{html.text_content[:500]}...",
        ]
    )
    return "\n".join(lines)


def summarize_css(capture: PageCapture) -> str:
    css = capture.css.css
    lines = [
        f"Stylesheets processed: {capture.css.stylesheet_count}",
        f"Original CSS size: {capture.css.original_size} bytes",
    ]
    colors = _unique(_COLOR.findall(css), 10)
    if colors:
        lines.append(f"\nKey Colors: {', '.join(colors)}")
    fonts = _unique(_FONT.findall(css), 5)
    if fonts:
        lines.append(f"\nFonts: {', '.join(fonts)}")
    if "bootstrap" in css or "btn-" in css:
        lines.append("\nFramework detected: Bootstrap-like")
    if "tailwind" in css or _TAILWIND.search(css):
        lines.append("\nFramework detected: Tailwind-like")
    return "\n".join(lines)


class Captioner:
    """Builds caption requests from captures and sends them to one provider."""

    def __init__(
        self,
        settings: CaptioningSettings,
        registry: ProviderRegistry,
        layout: DataLayout,
        *,
        provider: Optional[VlmProvider] = None,
    ) -> None:
        self._settings = settings
        self._layout = layout
        self._provider = provider or registry.create(
            settings.provider,
            ProviderSettings(
                api_key=settings.api_key,
                model=settings.model,
                max_tokens=settings.max_tokens,
                base_url=settings.base_url,
            ),
        )
        errors = self._provider.validate()
        if errors:
            raise ConfigError(errors)
        LOGGER.info("captioner_ready", provider=self._provider.name, model=settings.model)

    @property
    def provider_name(self) -> str:
        return self._provider.name

    def build_input(self, capture: PageCapture) -> CaptionInput:
        return CaptionInput(
            screenshot_base64=self._layout.read_screenshot_base64(capture.screenshot_path),
            url=capture.url,
            title=capture.html.title,
            description=capture.html.description,
            status_code=capture.status_code,
            load_time_ms=capture.load_time_ms,
            html_context=summarize_html(capture) if self._settings.include_html else None,
            css_context=summarize_css(capture) if self._settings.include_css else None,
        )

    async def caption(self, capture: PageCapture) -> CaptionResult:
        LOGGER.info("caption_requested", target=capture.url)
        payload = await asyncio.to_thread(self.build_input, capture)
        prompt = self._settings.prompt_template or DEFAULT_PROMPT
        try:
            response = await self._provider.caption(payload, prompt)
        except Exception as exc:
            LOGGER.error("caption_failed", target=capture.url, provider=self._provider.name, error=str(exc))
            raise
        result = self._provider.parse_response(response)
        LOGGER.info(
            "caption_generated",
            target=capture.url,
            tokens_used=result.tokens_used,
            page_type=result.page_type,
            provider=self._provider.name,
        )
        return result

    async def caption_batch(
        self,
        captures: Sequence[PageCapture],
        *,
        concurrency: int = 2,
        delay_seconds: float = 1.0,
    ) -> Dict[str, CaptionResult]:
        """Caption captures in groups of ``concurrency``; failures are logged and skipped."""
        results: Dict[str, CaptionResult] = {}
        for start in range(0, len(captures), concurrency):
            batch = captures[start : start + concurrency]
            outcomes = await asyncio.gather(*(self.caption(capture) for capture in batch), return_exceptions=True)
            for capture, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    LOGGER.error("caption_batch_item_failed", target=capture.url, error=str(outcome))
                    continue
                results[capture.capture_id] = outcome
            if start + concurrency < len(captures):
                await asyncio.sleep(delay_seconds)
        return results
