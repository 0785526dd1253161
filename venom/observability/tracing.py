"""Tracing helpers binding job context to log lines."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

_CONTEXT_KEYS = ("job_id", "url", "depth")


def _logger():
    return structlog.get_logger("venom.trace")


def set_context(*, job_id: str, url: str, depth: int) -> None:
    bind_contextvars(job_id=job_id, url=url, depth=depth)


def clear_context() -> None:
    unbind_contextvars(*_CONTEXT_KEYS)


@contextlib.contextmanager
def job_context(*, job_id: str, url: str, depth: int) -> Iterator[None]:
    """Bind the job identity for every log line emitted inside the block."""
    set_context(job_id=job_id, url=url, depth=depth)
    try:
        yield
    finally:
        clear_context()


@contextlib.contextmanager
def span(*, name: str, url: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().debug("trace_span", span=name, target=url, elapsed_ms=elapsed_ms)


def log_retry(*, attempt: int, url: str, reason: str) -> None:
    _logger().warning("job_retry", attempt=attempt, target=url, reason=reason)
