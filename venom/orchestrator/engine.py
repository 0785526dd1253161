"""Crawl orchestration: seeds, the job handler, link expansion and statistics."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Union

import structlog

from venom.captioning.captioner import Captioner
from venom.config import VenomSettings
from venom.errors import JobDeferred
from venom.fetch.renderer import PageRenderer
from venom.fetch.robots import RobotsGate
from venom.fetch.snapshot import PageCapture
from venom.fetch.urls import domain_of
from venom.observability.metrics import CrawlStats
from venom.orchestrator.admission import AdmissionFilter
from venom.orchestrator.frontier import Frontier
from venom.orchestrator.jobs import HIGH, Job
from venom.orchestrator.scheduler import CrawlScheduler
from venom.storage.database import CaptureStore
from venom.storage.layout import DataLayout

LOGGER = structlog.get_logger(__name__)


class CrawlOrchestrator:
    """Wires the frontier, scheduler, renderer and captioner into one crawl.

    The handler renders a job, persists the capture, optionally captions it
    and pushes admitted internal links back into the frontier one level
    deeper. Statistics are owned here; callers receive copies.
    """

    def __init__(
        self,
        settings: VenomSettings,
        *,
        store: CaptureStore,
        layout: DataLayout,
        renderer: PageRenderer,
        captioner: Optional[Captioner] = None,
        robots: Optional[RobotsGate] = None,
        admission: Optional[AdmissionFilter] = None,
        batch_size: int = 10,
        idle_wait: float = 1.0,
    ) -> None:
        crawler = settings.crawler
        self._settings = settings
        self._store = store
        self._layout = layout
        self._renderer = renderer
        self._captioner = captioner
        self._robots = robots if crawler.respect_robots_txt else None
        self._admission = admission or AdmissionFilter(
            allowed_domains=crawler.allowed_domains,
            blocked_domains=crawler.blocked_domains,
            max_urls_per_domain=crawler.max_urls_per_domain,
        )
        self._frontier = Frontier(store)
        self._scheduler = CrawlScheduler(
            self._frontier,
            concurrency=crawler.concurrency,
            max_retries=crawler.max_retries,
            batch_size=batch_size,
            idle_wait=idle_wait,
        )
        self._stats = CrawlStats()

    @property
    def frontier(self) -> Frontier:
        return self._frontier

    @property
    def admission(self) -> AdmissionFilter:
        return self._admission

    async def add_seeds(self, urls: Iterable[str]) -> List[Job]:
        """Queue seed URLs at depth 0 with high priority."""
        jobs: List[Job] = []
        for url in urls:
            self._admission.mark_visited(url)
            job = await self._frontier.add_job(url, depth=0, priority=HIGH)
            if job is None:
                continue
            self._stats.incr("urls_discovered")
            jobs.append(job)
        LOGGER.info("seeds_added", count=len(jobs))
        return jobs

    async def crawl(self, max_urls: Optional[int] = None, caption_on_crawl: bool = True) -> CrawlStats:
        """Drain the frontier and return a copy of the run statistics."""
        self._stats.start()
        await self._frontier.recover_interrupted()
        LOGGER.info(
            "crawl_started",
            max_depth=self._settings.crawler.max_depth,
            concurrency=self._settings.crawler.concurrency,
            max_urls=max_urls,
            captioning=caption_on_crawl and self._captioner is not None,
        )

        crawled = 0

        async def handler(job: Job) -> None:
            nonlocal crawled
            if max_urls is not None and crawled >= max_urls:
                LOGGER.info("max_urls_reached", max_urls=max_urls)
                self._scheduler.stop()
                raise JobDeferred(job.url)
            if await self._process(job, caption=caption_on_crawl):
                crawled += 1

        try:
            await self._scheduler.run(handler)
        finally:
            self._stats.finish()
            self._export_stats()
        LOGGER.info("crawl_finished", **self._stats.snapshot())
        return self._copy_stats()

    async def crawl_single(self, url: str, generate_caption: bool = True) -> Optional[PageCapture]:
        """Render one URL outside the frontier, persist and optionally caption it."""
        capture = await self._renderer.capture(url, 0)
        if capture is None:
            self._stats.incr("urls_skipped")
            return None
        await asyncio.to_thread(self._store.save_capture, capture)
        self._record_capture(capture)
        if generate_caption and self._captioner is not None:
            await self._caption(capture)
        return capture

    async def generate_captions(self, limit: int = 100, concurrency: int = 2) -> int:
        """Caption stored captures that have none yet; returns how many succeeded."""
        if self._captioner is None:
            LOGGER.warning("captioner_missing")
            return 0
        captures = await asyncio.to_thread(self._store.captures_without_captions, limit)
        if not captures:
            LOGGER.info("nothing_to_caption")
            return 0
        LOGGER.info("captioning_backlog", count=len(captures))
        results = await self._captioner.caption_batch(captures, concurrency=concurrency)
        for capture_id, result in results.items():
            await asyncio.to_thread(self._store.update_caption, capture_id, result)
            self._stats.incr("captions_generated")
        return len(results)

    def stats(self) -> Dict[str, Union[int, str, None]]:
        return self._stats.snapshot()

    async def queue_stats(self) -> Dict[str, int]:
        return await self._frontier.stats()

    async def start(self) -> None:
        await self._renderer.start()

    def stop(self) -> None:
        self._scheduler.stop()

    async def close(self) -> None:
        """Wait for in-flight work, then release the browser and the store."""
        self._scheduler.stop()
        await self._scheduler.on_idle()
        await self._renderer.close()
        self._store.close()
        LOGGER.info("orchestrator_closed")

    async def _process(self, job: Job, *, caption: bool) -> bool:
        """Handle one job; True when a capture was stored."""
        delay = self._settings.crawler.rate_limit / 1000
        if self._robots is not None:
            result = await self._robots.check(job.url)
            if not result.is_allowed:
                LOGGER.info("robots_disallow", target=job.url)
                self._stats.incr("urls_skipped")
                return False
            if result.crawl_delay and result.crawl_delay > delay:
                LOGGER.debug("robots_crawl_delay", domain=domain_of(job.url), delay=result.crawl_delay)
                delay = result.crawl_delay
        await asyncio.sleep(delay)
        try:
            capture = await self._renderer.capture(job.url, job.depth, robots_checked=self._robots is not None)
        except Exception as exc:
            self._stats.incr("urls_failed")
            LOGGER.warning("render_failed", target=job.url, error=str(exc))
            raise
        if capture is None:
            self._stats.incr("urls_skipped")
            return False

        await asyncio.to_thread(self._store.save_capture, capture)
        self._record_capture(capture)

        if caption and self._captioner is not None:
            await self._caption(capture)

        max_depth = self._settings.crawler.max_depth
        if job.depth < max_depth:
            await self._enqueue_links(job, capture, max_depth)
        return True

    async def _enqueue_links(self, job: Job, capture: PageCapture, max_depth: int) -> None:
        for link in self._admission.links_to_follow(capture, max_depth):
            if not self._admission.admit(link):
                continue
            try:
                child = await self._frontier.add_job(link, depth=job.depth + 1, parent_url=job.url)
            except Exception:
                self._admission.forget(link)
                raise
            if child is not None:
                self._stats.incr("urls_discovered")

    async def _caption(self, capture: PageCapture) -> None:
        assert self._captioner is not None
        try:
            result = await self._captioner.caption(capture)
        except Exception as exc:
            LOGGER.warning("caption_skipped", target=capture.url, error=str(exc))
            return
        capture.caption = result
        await asyncio.to_thread(self._store.update_caption, capture.capture_id, result)
        self._stats.incr("captions_generated")

    def _record_capture(self, capture: PageCapture) -> None:
        self._stats.incr("urls_crawled")
        self._stats.incr("screenshots_taken")
        self._stats.incr("bytes_downloaded", capture.bytes_downloaded)

    def _export_stats(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        self._stats.export(path=self._layout.metadata / f"crawl-{stamp}.json")

    def _copy_stats(self) -> CrawlStats:
        copy = CrawlStats()
        for key, value in self._stats.snapshot().items():
            if isinstance(value, int):
                copy.incr(key, value)
        copy.start_time = self._stats.start_time
        copy.end_time = self._stats.end_time
        return copy
