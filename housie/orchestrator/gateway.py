"""Job submission: validate, deduplicate, publish and seed the job status."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog
from pydantic import AnyHttpUrl, TypeAdapter
from pydantic import ValidationError as SchemaValidationError

from housie.observability.metrics import MetricsRegistry
from housie.orchestrator.broker import Broker
from housie.orchestrator.errors import DuplicateError, StatusStoreError, ValidationError
from housie.orchestrator.jobs import Job, JobStatus, JobStatusType, JobType, encode_job
from housie.orchestrator.status import StatusStore
from housie.storage.repository import ListingRepository

LOGGER = structlog.get_logger(__name__)

_URL_ADAPTER = TypeAdapter(AnyHttpUrl)


@dataclass(frozen=True)
class SubmissionReceipt:
    """Synchronous answer to a submission: the job id and its first status."""

    job: Job
    status: JobStatusType = JobStatusType.QUEUED

    @property
    def job_id(self) -> str:
        return self.job.id

    def as_response(self) -> dict:
        return {"jobId": self.job_id, "status": self.status.value}


def validate_url(url: str) -> str:
    """Return ``url`` stripped, raising ``ValidationError`` unless http(s)."""
    candidate = (url or "").strip()
    try:
        _URL_ADAPTER.validate_python(candidate)
    except SchemaValidationError as exc:
        raise ValidationError(f"Invalid URL: {url!r}", cause=exc) from exc
    return candidate


class SubmissionGateway:
    """Creates scraping jobs for new URLs.

    The repository lookup only avoids obvious duplicate work; two concurrent
    submissions of the same new URL can both pass it, and the repository's
    uniqueness check on ``create`` decides which result is kept.
    """

    def __init__(
        self,
        *,
        broker: Broker,
        status_store: StatusStore,
        repository: ListingRepository,
        queue: str,
        max_retries: int,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._broker = broker
        self._status_store = status_store
        self._repository = repository
        self._queue = queue
        self._max_retries = max_retries
        self._metrics = metrics or MetricsRegistry()

    async def start(self) -> None:
        await self._broker.connect()
        await self._broker.declare_queue(self._queue)

    async def close(self) -> None:
        await self._broker.close()

    async def submit(self, url: str, *, job_type: JobType = JobType.HOUSE_SCRAPING) -> SubmissionReceipt:
        """Queue a scraping job for ``url``.

        Raises ``ValidationError`` for a malformed URL, ``DuplicateError`` when
        the listing is already stored and ``ServiceConnectionError`` when the
        broker cannot take the job. Nothing is enqueued in the first two cases.
        """
        url = validate_url(url)
        existing = await self._repository.find_by_url(url)
        if existing is not None:
            self._metrics.incr("jobs_duplicate")
            LOGGER.warning("listing_already_exists", url=url, listing_id=existing.id)
            raise DuplicateError(url)

        job = Job.create(url, max_retries=self._max_retries, job_type=job_type)
        await self._broker.publish(self._queue, encode_job(job))
        self._metrics.incr("jobs_submitted")
        LOGGER.info("job_submitted", job_id=job.id, url=url, queue=self._queue)

        try:
            await self._status_store.set(JobStatus.for_job(job, JobStatusType.QUEUED))
        except StatusStoreError as exc:
            self._metrics.incr("status_write_failures")
            LOGGER.warning("status_write_failed", job_id=job.id, status="queued", error=exc.detailed())
        return SubmissionReceipt(job=job)

    async def status(self, job_id: str) -> Optional[JobStatus]:
        """Return the last known status of ``job_id``, or None if unknown."""
        return await self._status_store.get(job_id)
