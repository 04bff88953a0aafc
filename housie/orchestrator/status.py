"""Key-value stores mirroring the last known status of each job.

Writes never move a job out of a terminal state: ``set`` returns ``False`` and
leaves the stored record untouched when the current status is ``success`` or
``error``.
"""
from __future__ import annotations

import asyncio
from typing import Dict, Optional, Protocol

import orjson
import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError as SchemaValidationError
from redis.exceptions import RedisError

from housie.orchestrator.errors import StatusStoreError
from housie.orchestrator.jobs import JobStatus, JobStatusType

LOGGER = structlog.get_logger(__name__)

# KEYS[1] status key, ARGV[1] encoded JobStatus. Returns 1 when written.
_SET_UNLESS_TERMINAL = """
local current = redis.call('GET', KEYS[1])
if current then
  local ok, decoded = pcall(cjson.decode, current)
  if ok and (decoded['status'] == 'success' or decoded['status'] == 'error') then
    return 0
  end
end
redis.call('SET', KEYS[1], ARGV[1])
return 1
"""


class StatusStore(Protocol):
    async def get(self, job_id: str) -> Optional[JobStatus]: ...

    async def set(self, status: JobStatus) -> bool: ...

    async def close(self) -> None: ...


class RedisStatusStore:
    """Status store backed by Redis string keys holding JSON records."""

    def __init__(self, client: aioredis.Redis, *, key_prefix: str = "") -> None:
        self._client = client
        self._key_prefix = key_prefix
        self._set_script = client.register_script(_SET_UNLESS_TERMINAL)

    @classmethod
    def from_url(cls, url: str, *, key_prefix: str = "") -> "RedisStatusStore":
        client: aioredis.Redis = aioredis.from_url(url, decode_responses=True)
        return cls(client, key_prefix=key_prefix)

    def _key(self, job_id: str) -> str:
        return f"{self._key_prefix}{job_id}"

    async def get(self, job_id: str) -> Optional[JobStatus]:
        try:
            raw = await self._client.get(self._key(job_id))
        except RedisError as exc:
            raise StatusStoreError(f"Could not read status for {job_id}", cause=exc) from exc
        if raw is None:
            return None
        try:
            return JobStatus.from_json(raw)
        except (orjson.JSONDecodeError, SchemaValidationError) as exc:
            raise StatusStoreError(f"Stored status for {job_id} is malformed", cause=exc) from exc

    async def set(self, status: JobStatus) -> bool:
        try:
            written = await self._set_script(keys=[self._key(status.id)], args=[status.to_json().decode()])
        except RedisError as exc:
            raise StatusStoreError(f"Could not write status for {status.id}", cause=exc) from exc
        if not written:
            LOGGER.info("status_transition_refused", job_id=status.id, status=status.status.value)
        return bool(written)

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryStatusStore:
    """Dictionary-backed status store for local runs and tests."""

    def __init__(self) -> None:
        self._records: Dict[str, JobStatus] = {}
        self._lock = asyncio.Lock()
        self.history: Dict[str, list[JobStatusType]] = {}

    async def get(self, job_id: str) -> Optional[JobStatus]:
        return self._records.get(job_id)

    async def set(self, status: JobStatus) -> bool:
        async with self._lock:
            current = self._records.get(status.id)
            if current is not None and current.status.terminal:
                LOGGER.info("status_transition_refused", job_id=status.id, status=status.status.value)
                return False
            self._records[status.id] = status
            self.history.setdefault(status.id, []).append(status.status)
            return True

    async def close(self) -> None:
        return None
