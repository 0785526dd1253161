import asyncio
from collections import Counter

import pytest

from venom.errors import RenderError
from venom.orchestrator.frontier import Frontier
from venom.orchestrator.jobs import COMPLETED, FAILED, HIGH, LOW, NORMAL, PENDING
from venom.orchestrator.scheduler import CrawlScheduler
from venom.storage.database import CaptureStore


def _setup(tmp_path, **kwargs):
    store = CaptureStore(tmp_path / "venom.db")
    frontier = Frontier(store)
    scheduler = CrawlScheduler(frontier, idle_wait=0.05, **kwargs)
    return store, frontier, scheduler


def test_always_failing_job_is_requeued_max_retries_times(tmp_path):
    async def _run():
        store, frontier, scheduler = _setup(tmp_path, max_retries=3)
        job = await frontier.add_job("https://site.test/broken")
        attempts = Counter()

        async def handler(current):
            attempts[current.url] += 1
            raise RenderError("render timed out")

        await scheduler.run(handler)
        stored = store.get_job(job.job_id)
        assert attempts["https://site.test/broken"] == 4
        assert stored.status == FAILED
        assert stored.retry_count == 3
        assert stored.error_message == "render timed out"
        store.close()

    asyncio.run(_run())


def test_zero_retries_fails_on_first_error(tmp_path):
    async def _run():
        store, frontier, scheduler = _setup(tmp_path, max_retries=0)
        job = await frontier.add_job("https://site.test/broken")
        calls = []

        async def handler(current):
            calls.append(current.url)
            raise RuntimeError("boom")

        await scheduler.run(handler)
        stored = store.get_job(job.job_id)
        assert calls == ["https://site.test/broken"]
        assert stored.status == FAILED
        assert stored.retry_count == 0
        store.close()

    asyncio.run(_run())


def test_transient_failure_then_success(tmp_path):
    async def _run():
        store, frontier, scheduler = _setup(tmp_path, max_retries=3)
        job = await frontier.add_job("https://site.test/flaky")
        completed = []
        attempts = Counter()

        async def handler(current):
            attempts[current.url] += 1
            if attempts[current.url] == 1:
                raise RenderError("first try fails")

        await scheduler.run(handler, on_complete=lambda done: completed.append(done.url))
        stored = store.get_job(job.job_id)
        assert stored.status == COMPLETED
        assert stored.retry_count == 1
        assert completed == ["https://site.test/flaky"]
        store.close()

    asyncio.run(_run())


def test_dispatch_follows_priority_with_single_worker(tmp_path):
    async def _run():
        store, frontier, scheduler = _setup(tmp_path, concurrency=1)
        await frontier.add_job("https://site.test/low", priority=LOW)
        await frontier.add_job("https://site.test/normal", priority=NORMAL)
        await frontier.add_job("https://site.test/high", priority=HIGH)
        order = []

        async def handler(current):
            order.append(current.url.rsplit("/", 1)[1])

        await scheduler.run(handler)
        assert order == ["high", "normal", "low"]
        store.close()

    asyncio.run(_run())


def test_concurrency_is_bounded(tmp_path):
    async def _run():
        store, frontier, scheduler = _setup(tmp_path, concurrency=2)
        await frontier.add_jobs([f"https://site.test/{index}" for index in range(6)])
        active = 0
        peak = 0

        async def handler(current):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1

        await scheduler.run(handler)
        assert peak == 2
        assert (await frontier.stats())[COMPLETED] == 6
        assert scheduler.in_flight == 0
        store.close()

    asyncio.run(_run())


def test_children_discovered_in_flight_are_drained(tmp_path):
    async def _run():
        store, frontier, scheduler = _setup(tmp_path, concurrency=2)
        await frontier.add_job("https://site.test/", priority=HIGH)
        handled = []

        async def handler(current):
            handled.append(current.url)
            if current.depth == 0:
                await asyncio.sleep(0.1)
                for index in range(3):
                    await frontier.add_job(f"https://site.test/child-{index}", depth=1, parent_url=current.url)

        await scheduler.run(handler)
        assert len(handled) == 4
        stats = await frontier.stats()
        assert stats[COMPLETED] == 4
        assert stats[PENDING] == 0
        store.close()

    asyncio.run(_run())


def test_stop_lets_in_flight_handlers_finish(tmp_path):
    async def _run():
        store, frontier, scheduler = _setup(tmp_path, concurrency=1)
        await frontier.add_jobs([f"https://site.test/{index}" for index in range(5)])
        handled = []

        async def handler(current):
            handled.append(current.url)
            scheduler.stop()
            await asyncio.sleep(0.01)

        await scheduler.run(handler)
        stats = await frontier.stats()
        assert len(handled) == 1
        assert stats[COMPLETED] == 1
        assert stats[PENDING] == 4
        assert not scheduler.is_running
        store.close()

    asyncio.run(_run())


def test_store_errors_stop_the_run_and_propagate(tmp_path):
    async def _run():
        store, frontier, scheduler = _setup(tmp_path)
        await frontier.add_job("https://site.test/")

        async def handler(current):
            return None

        def on_complete(job):
            raise OSError("disk full")

        with pytest.raises(OSError):
            await scheduler.run(handler, on_complete=on_complete)
        store.close()

    asyncio.run(_run())


def test_concurrency_must_be_positive(tmp_path):
    store = CaptureStore(tmp_path / "venom.db")
    with pytest.raises(ValueError):
        CrawlScheduler(Frontier(store), concurrency=0)
    store.close()
