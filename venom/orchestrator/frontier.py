"""Durable, priority-ordered crawl frontier."""
from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional

import structlog

from venom.fetch.urls import normalize_url
from venom.orchestrator.jobs import NORMAL, PENDING, Job
from venom.storage.database import CaptureStore

LOGGER = structlog.get_logger(__name__)


class Frontier:
    """Job set with dedup-on-insert and retry bookkeeping.

    Persistence is delegated to the store; store calls run on a worker
    thread so they never block the event loop. Every insert or requeue
    sets an event the scheduler can wait on instead of polling.
    """

    def __init__(self, store: CaptureStore) -> None:
        self._store = store
        self._insert_lock = asyncio.Lock()
        self._work_available = asyncio.Event()

    async def add_job(
        self,
        url: str,
        depth: int = 0,
        parent_url: Optional[str] = None,
        priority: str = NORMAL,
    ) -> Optional[Job]:
        """Create a pending job, or return None when the canonical URL is already known."""
        canonical = normalize_url(url)
        job = Job(url=url, depth=depth, parent_url=parent_url, priority=priority)
        async with self._insert_lock:
            created = await asyncio.to_thread(self._store.add_job_if_absent, job, canonical)
        if not created:
            LOGGER.debug("job_exists", target=url)
            return None
        LOGGER.info("job_added", target=url, depth=depth, priority=priority)
        self._work_available.set()
        return job

    async def add_jobs(
        self,
        urls: Iterable[str],
        depth: int = 0,
        parent_url: Optional[str] = None,
        priority: str = NORMAL,
    ) -> List[Job]:
        jobs: List[Job] = []
        for url in urls:
            job = await self.add_job(url, depth, parent_url, priority)
            if job is not None:
                jobs.append(job)
        return jobs

    async def next_batch(self, limit: int) -> List[Job]:
        """Pending jobs, high priority first then oldest first."""
        self._work_available.clear()
        return await asyncio.to_thread(self._store.pending_jobs, limit)

    async def mark_status(self, job_id: str, status: str, error_message: Optional[str] = None) -> None:
        await asyncio.to_thread(self._store.update_job_status, job_id, status, error_message)
        if status == PENDING:
            self._work_available.set()

    async def increment_retry(self, job_id: str) -> int:
        return await asyncio.to_thread(self._store.increment_job_retry, job_id)

    async def has_pending(self) -> bool:
        return bool(await asyncio.to_thread(self._store.pending_jobs, 1))

    async def stats(self) -> Dict[str, int]:
        return await asyncio.to_thread(self._store.job_stats)

    async def recover_interrupted(self) -> int:
        """Requeue jobs a previous process left mid-flight."""
        count = await asyncio.to_thread(self._store.requeue_interrupted)
        if count:
            LOGGER.warning("jobs_requeued_after_interrupt", count=count)
            self._work_available.set()
        return count

    async def wait_for_work(self, timeout: float) -> bool:
        """Wait until a job is added or requeued; False when ``timeout`` elapses first."""
        try:
            await asyncio.wait_for(self._work_available.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def notify(self) -> None:
        self._work_available.set()
