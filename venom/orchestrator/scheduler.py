"""Concurrency-bounded worker pool draining the frontier."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Set

import structlog

from venom.errors import JobDeferred
from venom.observability.tracing import job_context, log_retry
from venom.orchestrator.frontier import Frontier
from venom.orchestrator.jobs import COMPLETED, CRAWLING, FAILED, PENDING, Job

LOGGER = structlog.get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[None]]
CompletionCallback = Callable[[Job], None]


class CrawlScheduler:
    """Drives jobs from the frontier through a handler under a fixed worker budget.

    Per job: ``pending -> crawling -> completed | pending | failed``. A
    failing job goes back to pending while its retry count is below
    ``max_retries`` and fails for good on the next failure after that. A
    handler raising ``JobDeferred`` hands its job back to pending untouched.
    Handler exceptions never escape the pool; store errors stop the run and
    are re-raised from ``run()`` once in-flight work has finished.
    """

    def __init__(
        self,
        frontier: Frontier,
        *,
        concurrency: int = 3,
        max_retries: int = 3,
        batch_size: int = 10,
        idle_wait: float = 1.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._frontier = frontier
        self._concurrency = concurrency
        self._max_retries = max_retries
        self._batch_size = batch_size
        self._idle_wait = idle_wait
        self._tasks: Set[asyncio.Task] = set()
        self._slots: Optional[asyncio.Semaphore] = None
        self._running = False
        self._fatal: Optional[BaseException] = None

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Stop dispatching; in-flight handlers are left to finish."""
        if self._running:
            LOGGER.info("scheduler_stopping", in_flight=self.in_flight)
        self._running = False
        self._frontier.notify()

    async def run(self, handler: JobHandler, on_complete: Optional[CompletionCallback] = None) -> None:
        """Process jobs until the frontier is drained or ``stop()`` is called."""
        self._running = True
        self._fatal = None
        self._slots = asyncio.Semaphore(self._concurrency)
        LOGGER.info("scheduler_started", concurrency=self._concurrency, max_retries=self._max_retries)
        try:
            while self._running:
                jobs = await self._frontier.next_batch(self._batch_size)
                if jobs:
                    await self._dispatch(jobs, handler, on_complete)
                    continue
                if self._tasks:
                    await self._wait_for_progress()
                    continue
                if await self._frontier.wait_for_work(self._idle_wait):
                    continue
                # second look after the idle wait before concluding there is no work left
                if not self._tasks and not await self._frontier.has_pending():
                    LOGGER.info("frontier_drained")
                    break
        finally:
            self._running = False
            await self.on_idle()
        if self._fatal is not None:
            raise self._fatal

    async def on_idle(self) -> None:
        """Wait until every dispatched handler has finished."""
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    async def _dispatch(self, jobs: List[Job], handler: JobHandler, on_complete: Optional[CompletionCallback]) -> None:
        assert self._slots is not None
        for job in jobs:
            await self._slots.acquire()
            if not self._running:
                self._slots.release()
                return
            await self._frontier.mark_status(job.job_id, CRAWLING)
            job.status = CRAWLING
            task = asyncio.create_task(self._execute(job, handler, on_complete), name=f"job-{job.job_id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _wait_for_progress(self) -> None:
        waiter = asyncio.create_task(self._frontier.wait_for_work(self._idle_wait))
        try:
            await asyncio.wait({waiter, *self._tasks}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

    async def _execute(self, job: Job, handler: JobHandler, on_complete: Optional[CompletionCallback]) -> None:
        assert self._slots is not None
        try:
            with job_context(job_id=job.job_id, url=job.url, depth=job.depth):
                try:
                    await handler(job)
                except asyncio.CancelledError:
                    raise
                except JobDeferred:
                    await self._frontier.mark_status(job.job_id, PENDING)
                    job.status = PENDING
                    LOGGER.info("job_deferred", target=job.url)
                    return
                except Exception as exc:
                    await self._record_failure(job, exc)
                    return
                await self._frontier.mark_status(job.job_id, COMPLETED)
                job.status = COMPLETED
                LOGGER.info("job_completed", target=job.url)
                if on_complete is not None:
                    on_complete(job)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("job_bookkeeping_failed", target=job.url)
            if self._fatal is None:
                self._fatal = exc
            self.stop()
        finally:
            self._slots.release()

    async def _record_failure(self, job: Job, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        if job.retry_count < self._max_retries:
            job.retry_count = await self._frontier.increment_retry(job.job_id)
            await self._frontier.mark_status(job.job_id, PENDING, message)
            job.status = PENDING
            log_retry(attempt=job.retry_count, url=job.url, reason=message)
            return
        await self._frontier.mark_status(job.job_id, FAILED, message)
        job.status = FAILED
        LOGGER.error("job_failed", target=job.url, error=message, retry_count=job.retry_count)
