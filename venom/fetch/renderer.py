"""crawl4ai-backed renderer producing page captures."""
from __future__ import annotations

import base64
import time
from typing import Optional

import structlog
from crawl4ai import AsyncWebCrawler, BrowserConfig, CacheMode, CrawlerRunConfig

from venom.config import CrawlerSettings
from venom.errors import RenderError
from venom.fetch.robots import RobotsGate
from venom.fetch.snapshot import PageCapture
from venom.fetch.urls import domain_of, normalize_url
from venom.observability.tracing import span
from venom.parse.html import extract_css, extract_html
from venom.storage.layout import DataLayout

LOGGER = structlog.get_logger(__name__)


class PageRenderer:
    """Renders a URL in a headless browser, screenshots it and extracts its content.

    ``capture`` returns ``None`` when robots.txt forbids the URL and raises
    ``RenderError`` for failures worth retrying.
    """

    def __init__(
        self,
        settings: CrawlerSettings,
        layout: DataLayout,
        *,
        robots: Optional[RobotsGate] = None,
        max_screenshot_size: Optional[int] = None,
    ) -> None:
        self._settings = settings
        self._layout = layout
        self._robots = robots if settings.respect_robots_txt else None
        self._max_screenshot_size = max_screenshot_size
        self._crawler: Optional[AsyncWebCrawler] = None

    async def start(self) -> None:
        if self._crawler is not None:
            return
        LOGGER.info("browser_starting")
        browser_config = BrowserConfig(
            headless=True,
            user_agent=self._settings.user_agent,
            viewport_width=self._settings.viewport_width,
            viewport_height=self._settings.viewport_height,
            ignore_https_errors=True,
        )
        self._crawler = AsyncWebCrawler(config=browser_config)
        await self._crawler.start()

    async def close(self) -> None:
        if self._crawler is None:
            return
        await self._crawler.close()
        self._crawler = None
        LOGGER.info("browser_closed")

    async def capture(self, url: str, depth: int, *, robots_checked: bool = False) -> Optional[PageCapture]:
        """Render ``url``; ``robots_checked`` skips the gate for callers that already asked it."""
        if self._crawler is None:
            raise RuntimeError("Renderer not started; call start() first")
        if not robots_checked and self._robots is not None and not await self._robots.allowed(url):
            LOGGER.info("robots_disallow", target=url)
            return None

        run_config = CrawlerRunConfig(
            screenshot=True,
            page_timeout=self._settings.timeout,
            wait_until="networkidle",
            cache_mode=CacheMode.BYPASS,
        )
        started = time.perf_counter()
        with span(name="render", url=url):
            result = await self._crawler.arun(url=url, config=run_config)
        load_time_ms = int((time.perf_counter() - started) * 1000)
        if not result.success:
            raise RenderError(f"Failed to render {url}: {result.error_message}")
        if not result.screenshot:
            raise RenderError(f"No screenshot produced for {url}")

        image = base64.b64decode(result.screenshot)
        if self._max_screenshot_size and len(image) > self._max_screenshot_size:
            raise RenderError(f"Screenshot for {url} is {len(image)} bytes, above the configured limit")
        screenshot_path = self._layout.save_screenshot(image)

        raw_html = result.html or ""
        final_url = result.redirected_url or result.url or url
        html = extract_html(raw_html, final_url)
        capture = PageCapture(
            url=url,
            normalized_url=normalize_url(url),
            domain=domain_of(url),
            depth=depth,
            screenshot_path=str(screenshot_path),
            html=html,
            css=extract_css(raw_html),
            status_code=result.status_code or 0,
            final_url=final_url,
            load_time_ms=load_time_ms,
            bytes_downloaded=len(raw_html.encode("utf-8")),
        )
        LOGGER.info(
            "page_captured",
            target=url,
            status=capture.status_code,
            load_time_ms=load_time_ms,
            links_found=len(html.links),
        )
        return capture
