"""Definitions for scraping jobs, their status records and the queue codec."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import orjson
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr
from pydantic import ValidationError as SchemaValidationError
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobType(str, Enum):
    HOUSE_SCRAPING = "house-scraping"
    SEARCH_SCRAPING = "search-scraping"


class JobStatusType(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (JobStatusType.SUCCESS, JobStatusType.ERROR)


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )

    def to_json(self) -> bytes:
        """Serialise with the camelCase wire names."""
        return orjson.dumps(self.model_dump(mode="json", by_alias=True, exclude_none=True))


class Job(_WireModel):
    """A unit of scraping work carried inside a queue message.

    The retry counter travels with the message so a redelivered or republished
    job keeps its attempt history across worker restarts.
    """

    id: StrictStr = Field(min_length=1)
    type: JobType = JobType.HOUSE_SCRAPING
    url: StrictStr = Field(min_length=1)
    created_at: datetime = Field(default_factory=utcnow)
    retry_count: StrictInt = Field(default=0, ge=0)
    max_retries: StrictInt = Field(default=3, ge=0)

    @classmethod
    def create(cls, url: str, *, max_retries: int, job_type: JobType = JobType.HOUSE_SCRAPING) -> "Job":
        """Build a fresh job with a new unique id."""
        return cls(id=new_job_id(), type=job_type, url=url, max_retries=max_retries)

    @property
    def attempt(self) -> int:
        """One-based number of the attempt this message represents."""
        return self.retry_count + 1

    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def next_attempt(self) -> "Job":
        """Return an otherwise identical job with the retry counter bumped."""
        return self.model_copy(update={"retry_count": self.retry_count + 1})


class JobStatus(_WireModel):
    """Last known state of a job as mirrored in the status store."""

    id: StrictStr = Field(min_length=1)
    status: JobStatusType
    updated_at: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None
    retry_count: Optional[int] = None

    @classmethod
    def for_job(cls, job: Job, status: JobStatusType, *, error: Optional[str] = None) -> "JobStatus":
        return cls(id=job.id, status=status, error=error, retry_count=job.retry_count)

    @classmethod
    def from_json(cls, data: str | bytes) -> "JobStatus":
        return cls.model_validate(orjson.loads(data))


def new_job_id() -> str:
    return f"scrape-{uuid.uuid4()}"


@dataclass(frozen=True)
class ParseResult:
    """Outcome of decoding a queue payload: either a job or an error."""

    job: Optional[Job] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.job is not None


def encode_job(job: Job) -> bytes:
    return job.to_json()


def decode_job(body: bytes) -> ParseResult:
    """Decode a queue payload against the strict job schema."""
    try:
        payload = orjson.loads(body)
    except orjson.JSONDecodeError as exc:
        return ParseResult(error=f"invalid JSON: {exc}")
    if not isinstance(payload, dict):
        return ParseResult(error=f"expected a JSON object, got {type(payload).__name__}")
    try:
        job = Job.model_validate(payload)
    except SchemaValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        return ParseResult(error=errors)
    return ParseResult(job=job)
