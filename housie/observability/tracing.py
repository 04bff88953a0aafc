"""Per-job logging context bound through structlog contextvars."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator

import structlog
from structlog.contextvars import bound_contextvars

from housie.orchestrator.jobs import Job

LOGGER = structlog.get_logger("housie.trace")


@contextlib.contextmanager
def job_context(job: Job) -> Iterator[None]:
    """Bind job identifiers to every log line emitted inside the block.

    Each delivery runs on its own asyncio task, so the bound values never
    leak between concurrently processed jobs.
    """
    with bound_contextvars(job_id=job.id, url=job.url, attempt=job.attempt):
        yield


@contextlib.contextmanager
def span(*, name: str) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        LOGGER.info("trace_span", span=name, elapsed_ms=elapsed_ms)
