"""Worker consume loop: dequeue, scrape, persist, retry or fail each job.

Each delivery follows::

    RECEIVED -> PARSE -> POISON                        (nack, never requeued)
                      -> PROCESSING -> SUCCESS         (persisted, ack)
                                    -> PERSISTENCE_FAILED (status error, ack)
                                    -> REQUEUED        (republished, ack)
                                    -> EXHAUSTED       (status error, ack)
                      -> UNSUPPORTED                   (status error, ack)

Retries republish the job with ``retryCount + 1`` instead of relying on broker
redelivery, so the attempt budget survives worker restarts.

A ``ServiceConnectionError`` while settling a message, or the broker reporting
a lost connection, resolves ``failure`` with the error. The message stays
unacknowledged and the process is expected to exit.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog

from housie.observability.metrics import MetricsRegistry
from housie.observability.tracing import job_context, span
from housie.orchestrator.broker import Broker
from housie.orchestrator.errors import (
    DuplicateError,
    HousieError,
    PersistenceError,
    ScrapeError,
    ServiceConnectionError,
    StatusStoreError,
)
from housie.orchestrator.jobs import Job, JobStatus, JobStatusType, JobType, decode_job, encode_job
from housie.orchestrator.status import StatusStore
from housie.scrape.delegate import ScrapeDelegate
from housie.scrape.prompts import PromptProvider
from housie.storage.repository import ListingRepository

LOGGER = structlog.get_logger(__name__)


class Outcome(str, Enum):
    POISON = "poison"
    SUCCESS = "success"
    PERSISTENCE_FAILED = "persistence_failed"
    REQUEUED = "requeued"
    EXHAUSTED = "exhausted"
    UNSUPPORTED = "unsupported"


class ScrapeWorker:
    """Consumes scraping jobs with at most ``concurrency`` in flight."""

    def __init__(
        self,
        *,
        broker: Broker,
        status_store: StatusStore,
        repository: ListingRepository,
        delegate: ScrapeDelegate,
        prompts: PromptProvider,
        queue: str,
        concurrency: int = 3,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._broker = broker
        self._status_store = status_store
        self._repository = repository
        self._delegate = delegate
        self._prompts = prompts
        self._queue = queue
        self.concurrency = concurrency
        self.metrics = metrics or MetricsRegistry()
        self._slots = asyncio.Semaphore(concurrency)
        self._inflight: Set["asyncio.Task[Any]"] = set()
        self._processing = 0
        self._consumer_tag: Optional[str] = None
        self._failure: Optional["asyncio.Future[ServiceConnectionError]"] = None
        self._scrapers: Dict[JobType, Callable[[Job, Any], Awaitable[Outcome]]] = {
            JobType.HOUSE_SCRAPING: self._scrape_house,
        }

    @property
    def processing(self) -> int:
        """Number of jobs currently between PROCESSING and settlement."""
        return self._processing

    @property
    def failure(self) -> "asyncio.Future[ServiceConnectionError]":
        """Resolves with the first fatal broker error seen by this worker."""
        if self._failure is None:
            self._failure = asyncio.get_running_loop().create_future()
        return self._failure

    async def start(self) -> None:
        """Connect, declare the queue and begin consuming."""
        self._broker.on_connection_lost(self._fail)
        await self._broker.connect()
        await self._broker.declare_queue(self._queue)
        self._consumer_tag = await self._broker.consume(self._queue, self._on_delivery, self.concurrency)
        LOGGER.info("worker_started", queue=self._queue, concurrency=self.concurrency)

    async def stop(self) -> None:
        """Stop consuming, wait for in-flight jobs, then close the broker."""
        if self._consumer_tag is not None:
            consumer_tag, self._consumer_tag = self._consumer_tag, None
            await self._broker.cancel(consumer_tag)
        if self._inflight:
            LOGGER.info("worker_draining", inflight=len(self._inflight))
            await asyncio.gather(*self._inflight, return_exceptions=True)
        await self._broker.close()
        LOGGER.info("worker_stopped", metrics=self.metrics.snapshot())

    def _fail(self, exc: ServiceConnectionError) -> None:
        LOGGER.error("worker_fatal_error", error=exc.detailed())
        if not self.failure.done():
            self.failure.set_result(exc)

    async def _on_delivery(self, delivery: Any) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
        try:
            async with self._slots:
                await self.handle(delivery)
        except ServiceConnectionError as exc:
            self._fail(exc)
        finally:
            if task is not None:
                self._inflight.discard(task)

    async def handle(self, delivery: Any) -> Outcome:
        """Run one delivery through the state machine and settle it."""
        parsed = decode_job(delivery.body)
        job = parsed.job
        if job is None:
            self.metrics.incr("poison_messages")
            LOGGER.error("poison_message", delivery_tag=delivery.delivery_tag, error=parsed.error)
            await self._broker.nack(delivery, requeue=False)
            return Outcome.POISON

        with job_context(job):
            self._processing += 1
            self.metrics.observe_max("inflight_peak", self._processing)
            try:
                return await self._process(job, delivery)
            finally:
                self._processing -= 1

    async def _process(self, job: Job, delivery: Any) -> Outcome:
        scrape = self._scrapers.get(job.type)
        if scrape is None:
            return await self._unsupported(job, delivery)
        self.metrics.incr("jobs_started")
        LOGGER.info("job_processing", job_type=job.type.value, max_retries=job.max_retries)
        await self._record(JobStatus.for_job(job, JobStatusType.PROCESSING))
        return await scrape(job, delivery)

    async def _scrape_house(self, job: Job, delivery: Any) -> Outcome:
        try:
            prompt = await self._prompts.active_prompt()
            with span(name="scrape"):
                listing = await self._delegate.scrape(job.url, prompt)
        except ScrapeError as exc:
            return await self._retry_or_fail(job, delivery, exc)

        try:
            stored = await self._repository.create(listing)
        except DuplicateError as exc:
            return await self._persistence_failed(job, delivery, exc, duplicate=True)
        except PersistenceError as exc:
            return await self._persistence_failed(job, delivery, exc, duplicate=False)

        await self._record(JobStatus.for_job(job, JobStatusType.SUCCESS))
        await self._broker.ack(delivery)
        self.metrics.incr("jobs_succeeded")
        LOGGER.info("job_succeeded", listing_id=stored.id, retry_count=job.retry_count)
        return Outcome.SUCCESS

    async def _unsupported(self, job: Job, delivery: Any) -> Outcome:
        detail = f"Unknown job type {job.type.value}"
        await self._record(JobStatus.for_job(job, JobStatusType.ERROR, error=detail))
        await self._broker.ack(delivery)
        self.metrics.incr("jobs_unsupported")
        LOGGER.error("job_type_unsupported", job_type=job.type.value)
        return Outcome.UNSUPPORTED

    async def _persistence_failed(self, job: Job, delivery: Any, exc: HousieError, *, duplicate: bool) -> Outcome:
        detail = exc.detailed()
        await self._record(JobStatus.for_job(job, JobStatusType.ERROR, error=detail))
        await self._broker.ack(delivery)
        self.metrics.incr("persistence_failures")
        LOGGER.error("job_persistence_failed", duplicate=duplicate, error=detail)
        return Outcome.PERSISTENCE_FAILED

    async def _retry_or_fail(self, job: Job, delivery: Any, exc: ScrapeError) -> Outcome:
        detail = exc.detailed()
        if job.can_retry():
            retry = job.next_attempt()
            # Status first so it cannot overwrite the retry's own PROCESSING
            # write; publish before ack so a crash redelivers the original.
            await self._record(JobStatus.for_job(retry, JobStatusType.QUEUED, error=detail))
            await self._broker.publish(self._queue, encode_job(retry))
            await self._broker.ack(delivery)
            self.metrics.incr("jobs_retried")
            LOGGER.warning("job_requeued", retry_count=retry.retry_count, error=detail)
            return Outcome.REQUEUED

        await self._record(JobStatus.for_job(job, JobStatusType.ERROR, error=detail))
        await self._broker.ack(delivery)
        self.metrics.incr("jobs_exhausted")
        LOGGER.error("job_failed", retry_count=job.retry_count, error=detail)
        return Outcome.EXHAUSTED

    async def _record(self, status: JobStatus) -> None:
        """Best-effort status write; failures are logged and counted."""
        try:
            await self._status_store.set(status)
        except StatusStoreError as exc:
            self.metrics.incr("status_write_failures")
            LOGGER.warning("status_write_failed", status=status.status.value, error=exc.detailed())
