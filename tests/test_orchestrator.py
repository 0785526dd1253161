import asyncio
import time
from collections import Counter
from typing import Dict, List, Optional

import httpx

from venom.config import CrawlerSettings, StorageSettings, VenomSettings
from venom.errors import CaptioningError, RenderError
from venom.fetch.robots import RobotsGate
from venom.fetch.snapshot import CaptionResult, ExtractedCss, ExtractedHtml, ExtractedLink, PageCapture
from venom.fetch.urls import domain_of, normalize_url
from venom.orchestrator.engine import CrawlOrchestrator
from venom.orchestrator.jobs import COMPLETED, FAILED, PENDING
from venom.storage.database import CaptureStore
from venom.storage.layout import DataLayout

SITE = {
    "https://site.test/": ["https://site.test/a", "https://site.test/b", "https://external.test/x"],
    "https://site.test/a": ["https://site.test/c", "https://site.test/"],
    "https://site.test/b": ["https://site.test/a?utm_source=feed"],
    "https://site.test/c": [],
}


class FakeRenderer:
    def __init__(self, pages: Dict[str, List[str]], *, blocked=(), broken=()):
        self.pages = pages
        self.blocked = set(blocked)
        self.broken = set(broken)
        self.calls: List[str] = []
        self.closed = False

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        self.closed = True

    async def capture(self, url: str, depth: int, *, robots_checked: bool = False) -> Optional[PageCapture]:
        self.calls.append(url)
        if url in self.blocked:
            return None
        if url in self.broken:
            raise RenderError(f"timeout rendering {url}")
        links = [
            ExtractedLink(href=href, text="", is_internal=domain_of(href) == domain_of(url))
            for href in self.pages.get(url, [])
        ]
        return PageCapture(
            url=url,
            normalized_url=normalize_url(url),
            domain=domain_of(url),
            depth=depth,
            screenshot_path="shot.png",
            html=ExtractedHtml(html="<html></html>", title=url, text_content="", links=links),
            css=ExtractedCss(),
            status_code=200,
            final_url=url,
            load_time_ms=3,
            bytes_downloaded=100,
        )


class FakeCaptioner:
    def __init__(self, fail: bool = False):
        self.fail = fail

    async def caption(self, capture: PageCapture) -> CaptionResult:
        if self.fail:
            raise CaptioningError("provider unavailable")
        return CaptionResult(
            caption=f"Page at {capture.url}",
            visual_elements=["header"],
            page_type="article",
            confidence=0.9,
            model="fake",
            tokens_used=10,
        )

    async def caption_batch(self, captures, *, concurrency=2, delay_seconds=1.0):
        return {capture.capture_id: await self.caption(capture) for capture in captures}


def _orchestrator(
    tmp_path, renderer, *, max_depth=2, captioner=None, max_retries=3, concurrency=2, robots=None, rate_limit=0
):
    settings = VenomSettings(
        crawler=CrawlerSettings(
            max_depth=max_depth,
            rate_limit=rate_limit,
            concurrency=concurrency,
            max_retries=max_retries,
            respect_robots_txt=robots is not None,
        ),
        storage=StorageSettings(data_dir=tmp_path / "data"),
    )
    store = CaptureStore(settings.storage.db_path)
    layout = DataLayout(settings.storage.data_dir)
    orchestrator = CrawlOrchestrator(
        settings,
        store=store,
        layout=layout,
        renderer=renderer,
        captioner=captioner,
        robots=robots,
        idle_wait=0.05,
    )
    return orchestrator, store, layout


def test_crawl_expands_internal_links_breadth_first(tmp_path):
    async def _run():
        renderer = FakeRenderer(SITE)
        orchestrator, store, layout = _orchestrator(tmp_path, renderer, captioner=FakeCaptioner())
        await orchestrator.add_seeds(["https://site.test/"])
        stats = await orchestrator.crawl()
        queue = await orchestrator.queue_stats()
        assert sorted(renderer.calls) == sorted(SITE)
        assert stats.get("urls_crawled") == 4
        assert stats.get("urls_discovered") == 4
        assert stats.get("captions_generated") == 4
        assert stats.get("bytes_downloaded") == 400
        assert stats.end_time is not None
        assert queue[COMPLETED] == 4
        assert store.caption_count() == 4
        assert list(layout.metadata.glob("crawl-*.json"))
        await orchestrator.close()
        assert renderer.closed

    asyncio.run(_run())


def test_max_depth_zero_crawls_only_the_seed(tmp_path):
    async def _run():
        renderer = FakeRenderer(SITE)
        orchestrator, store, _ = _orchestrator(tmp_path, renderer, max_depth=0)
        await orchestrator.add_seeds(["https://site.test/"])
        stats = await orchestrator.crawl(caption_on_crawl=False)
        queue = await orchestrator.queue_stats()
        assert renderer.calls == ["https://site.test/"]
        assert stats.get("urls_discovered") == 1
        assert queue[COMPLETED] == 1
        assert sum(queue.values()) == 1
        await orchestrator.close()

    asyncio.run(_run())


def test_depth_limit_stops_expansion(tmp_path):
    async def _run():
        renderer = FakeRenderer(SITE)
        orchestrator, store, _ = _orchestrator(tmp_path, renderer, max_depth=1)
        await orchestrator.add_seeds(["https://site.test/"])
        await orchestrator.crawl()
        assert "https://site.test/c" not in renderer.calls
        assert store.get_capture_by_url("https://site.test/a").depth == 1
        await orchestrator.close()

    asyncio.run(_run())


def test_blocked_capture_is_skipped_not_retried(tmp_path):
    async def _run():
        renderer = FakeRenderer(SITE, blocked={"https://site.test/"})
        orchestrator, store, _ = _orchestrator(tmp_path, renderer)
        await orchestrator.add_seeds(["https://site.test/"])
        stats = await orchestrator.crawl()
        queue = await orchestrator.queue_stats()
        assert renderer.calls == ["https://site.test/"]
        assert stats.get("urls_skipped") == 1
        assert stats.get("urls_crawled") == 0
        assert queue[COMPLETED] == 1
        assert store.capture_count() == 0
        await orchestrator.close()

    asyncio.run(_run())


def test_render_failures_are_retried_then_failed(tmp_path):
    async def _run():
        renderer = FakeRenderer(SITE, broken={"https://site.test/"})
        orchestrator, store, _ = _orchestrator(tmp_path, renderer, max_retries=2)
        await orchestrator.add_seeds(["https://site.test/"])
        stats = await orchestrator.crawl()
        queue = await orchestrator.queue_stats()
        assert renderer.calls.count("https://site.test/") == 3
        assert stats.get("urls_failed") == 3
        assert queue[FAILED] == 1
        await orchestrator.close()

    asyncio.run(_run())


def test_caption_failure_does_not_fail_the_job(tmp_path):
    async def _run():
        renderer = FakeRenderer(SITE)
        orchestrator, store, _ = _orchestrator(tmp_path, renderer, max_depth=0, captioner=FakeCaptioner(fail=True))
        await orchestrator.add_seeds(["https://site.test/"])
        stats = await orchestrator.crawl()
        queue = await orchestrator.queue_stats()
        assert queue[COMPLETED] == 1
        assert stats.get("captions_generated") == 0
        assert store.capture_count() == 1
        await orchestrator.close()

    asyncio.run(_run())


def test_max_urls_stops_crawl_and_leaves_rest_pending(tmp_path):
    async def _run():
        pages = {"https://site.test/": [f"https://site.test/p{index}" for index in range(6)]}
        renderer = FakeRenderer(pages)
        orchestrator, store, _ = _orchestrator(tmp_path, renderer, concurrency=1)
        await orchestrator.add_seeds(["https://site.test/"])
        stats = await orchestrator.crawl(max_urls=3, caption_on_crawl=False)
        queue = await orchestrator.queue_stats()
        assert stats.get("urls_crawled") == 3
        assert queue[COMPLETED] == 3
        assert queue[PENDING] == 4
        await orchestrator.close()

    asyncio.run(_run())


def test_duplicate_seeds_are_queued_once(tmp_path):
    async def _run():
        orchestrator, store, _ = _orchestrator(tmp_path, FakeRenderer(SITE))
        jobs = await orchestrator.add_seeds(["https://site.test/a", "https://site.test/a/#x"])
        assert len(jobs) == 1
        assert orchestrator.stats()["urls_discovered"] == 1
        assert orchestrator.admission.has_visited("https://site.test/a")
        await orchestrator.close()

    asyncio.run(_run())


def test_generate_captions_fills_backlog(tmp_path):
    async def _run():
        renderer = FakeRenderer(SITE)
        orchestrator, store, _ = _orchestrator(tmp_path, renderer, max_depth=1, captioner=FakeCaptioner())
        await orchestrator.add_seeds(["https://site.test/"])
        await orchestrator.crawl(caption_on_crawl=False)
        assert store.caption_count() == 0
        assert await orchestrator.generate_captions(limit=10) == 3
        assert store.caption_count() == 3
        assert store.captures_without_captions() == []
        await orchestrator.close()

    asyncio.run(_run())


def test_crawl_single_persists_capture(tmp_path):
    async def _run():
        renderer = FakeRenderer(SITE)
        orchestrator, store, _ = _orchestrator(tmp_path, renderer, captioner=FakeCaptioner())
        capture = await orchestrator.crawl_single("https://site.test/c")
        assert capture.caption is not None
        stored = store.get_capture(capture.capture_id)
        assert stored.caption.page_type == "article"
        assert orchestrator.stats()["urls_crawled"] == 1
        await orchestrator.close()

    asyncio.run(_run())


def test_max_urls_counts_pages_crawled_in_this_run(tmp_path):
    async def _run():
        renderer = FakeRenderer(SITE)
        orchestrator, store, _ = _orchestrator(tmp_path, renderer, concurrency=1)
        await orchestrator.crawl_single("https://site.test/c", generate_caption=False)
        await orchestrator.add_seeds(["https://site.test/"])
        stats = await orchestrator.crawl(max_urls=2, caption_on_crawl=False)
        queue = await orchestrator.queue_stats()
        assert renderer.calls[:2] == ["https://site.test/c", "https://site.test/"]
        assert len(renderer.calls) == 3
        assert stats.get("urls_crawled") == 3
        assert queue[COMPLETED] == 2
        await orchestrator.close()

    asyncio.run(_run())


def test_failed_insert_leaves_links_admissible_for_the_retry(tmp_path):
    async def _run():
        renderer = FakeRenderer(SITE)
        orchestrator, store, _ = _orchestrator(tmp_path, renderer, max_depth=1)
        frontier = orchestrator.frontier
        add_job = frontier.add_job
        failures = []

        async def flaky_add_job(url, **kwargs):
            if url == "https://site.test/a" and not failures:
                failures.append(url)
                raise OSError("database is locked")
            return await add_job(url, **kwargs)

        frontier.add_job = flaky_add_job
        await orchestrator.add_seeds(["https://site.test/"])
        stats = await orchestrator.crawl(caption_on_crawl=False)
        queue = await orchestrator.queue_stats()
        assert failures == ["https://site.test/a"]
        assert renderer.calls.count("https://site.test/") == 2
        assert "https://site.test/a" in renderer.calls
        assert "https://site.test/b" in renderer.calls
        assert queue[COMPLETED] == 3
        assert stats.get("urls_discovered") == 3
        assert orchestrator.admission.domain_count("site.test") == 3
        await orchestrator.close()

    asyncio.run(_run())


def _robots_gate(calls: Counter, robots_txt=None) -> RobotsGate:
    def handler(request: httpx.Request) -> httpx.Response:
        calls[request.url.host] += 1
        if robots_txt is None:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, text=robots_txt)

    return RobotsGate(user_agent="venom-test", transport=httpx.MockTransport(handler))


def test_robots_disallowed_job_is_skipped_before_rendering(tmp_path):
    async def _run():
        calls = Counter()
        robots = _robots_gate(calls, "User-agent: *\nDisallow: /b\n")
        renderer = FakeRenderer(SITE)
        orchestrator, store, _ = _orchestrator(tmp_path, renderer, robots=robots)
        await orchestrator.add_seeds(["https://site.test/"])
        stats = await orchestrator.crawl(caption_on_crawl=False)
        queue = await orchestrator.queue_stats()
        assert "https://site.test/b" not in renderer.calls
        assert stats.get("urls_skipped") == 1
        assert store.get_capture_by_url("https://site.test/b") is None
        assert queue[COMPLETED] == 4
        assert calls["site.test"] == 1
        await orchestrator.close()

    asyncio.run(_run())


def test_robots_is_consulted_once_per_job(tmp_path):
    async def _run():
        calls = Counter()
        robots = _robots_gate(calls)
        renderer = FakeRenderer(SITE)
        orchestrator, _, _ = _orchestrator(tmp_path, renderer, robots=robots)
        await orchestrator.add_seeds(["https://site.test/"])
        await orchestrator.crawl(caption_on_crawl=False)
        assert sorted(renderer.calls) == sorted(SITE)
        # a missing robots.txt is not cached, so every check refetches it
        assert calls["site.test"] == len(SITE)
        await orchestrator.close()

    asyncio.run(_run())


def test_robots_crawl_delay_overrides_smaller_rate_limit(tmp_path):
    async def _run():
        calls = Counter()
        robots = _robots_gate(calls, "User-agent: *\nCrawl-delay: 1\n")
        renderer = FakeRenderer(SITE)
        orchestrator, _, _ = _orchestrator(tmp_path, renderer, max_depth=0, robots=robots, rate_limit=100)
        await orchestrator.add_seeds(["https://site.test/"])
        started = time.perf_counter()
        await orchestrator.crawl(caption_on_crawl=False)
        elapsed = time.perf_counter() - started
        assert renderer.calls == ["https://site.test/"]
        assert elapsed >= 1.0
        await orchestrator.close()

    asyncio.run(_run())
