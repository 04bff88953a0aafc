import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from housie.orchestrator.errors import StatusStoreError
from housie.orchestrator.jobs import JobStatus, JobStatusType
from housie.orchestrator.status import InMemoryStatusStore, RedisStatusStore


def test_status_store_get_and_set():
    async def _run():
        store = InMemoryStatusStore()
        assert await store.get("missing") is None
        assert await store.set(JobStatus(id="job-1", status=JobStatusType.QUEUED))
        assert await store.set(JobStatus(id="job-1", status=JobStatusType.PROCESSING))
        record = await store.get("job-1")
        assert record.status is JobStatusType.PROCESSING

    asyncio.run(_run())


def test_terminal_status_is_never_overwritten():
    async def _run():
        store = InMemoryStatusStore()
        await store.set(JobStatus(id="job-1", status=JobStatusType.SUCCESS))
        for status in (JobStatusType.QUEUED, JobStatusType.PROCESSING, JobStatusType.ERROR):
            assert not await store.set(JobStatus(id="job-1", status=status, error="late"))
        record = await store.get("job-1")
        assert record.status is JobStatusType.SUCCESS
        assert record.error is None
        assert store.history["job-1"] == [JobStatusType.SUCCESS]

    asyncio.run(_run())


def _redis_store(written=1):
    client = MagicMock()
    script = AsyncMock(return_value=written)
    client.register_script.return_value = script
    client.get = AsyncMock(return_value=None)
    client.aclose = AsyncMock()
    return RedisStatusStore(client, key_prefix="housie:"), client, script


def test_redis_store_writes_through_terminal_guard_script():
    async def _run():
        store, client, script = _redis_store(written=1)
        assert await store.set(JobStatus(id="job-1", status=JobStatusType.PROCESSING, retry_count=1))

        lua = client.register_script.call_args.args[0]
        assert "'success'" in lua and "'error'" in lua
        assert script.await_args.kwargs["keys"] == ["housie:job-1"]
        record = json.loads(script.await_args.kwargs["args"][0])
        assert record["status"] == "processing"
        assert record["retryCount"] == 1

    asyncio.run(_run())


def test_redis_store_reports_refused_transition():
    async def _run():
        store, _, _ = _redis_store(written=0)
        assert await store.set(JobStatus(id="job-1", status=JobStatusType.QUEUED)) is False

    asyncio.run(_run())


def test_redis_store_reads_records():
    async def _run():
        store, client, _ = _redis_store()
        client.get.return_value = JobStatus(id="job-1", status=JobStatusType.ERROR, error="boom").to_json().decode()
        record = await store.get("job-1")
        client.get.assert_awaited_once_with("housie:job-1")
        assert record.status is JobStatusType.ERROR
        assert record.error == "boom"

        await store.close()
        client.aclose.assert_awaited_once()

    asyncio.run(_run())


@pytest.mark.parametrize("raw", ["not json", '{"id": "job-1"}'])
def test_redis_store_rejects_malformed_records(raw):
    async def _run():
        store, client, _ = _redis_store()
        client.get.return_value = raw
        with pytest.raises(StatusStoreError):
            await store.get("job-1")

    asyncio.run(_run())


def test_redis_errors_become_status_store_errors():
    async def _run():
        store, client, script = _redis_store()
        client.get.side_effect = RedisConnectionError("connection refused")
        script.side_effect = RedisConnectionError("connection refused")
        with pytest.raises(StatusStoreError, match="Could not read"):
            await store.get("job-1")
        with pytest.raises(StatusStoreError, match="Could not write"):
            await store.set(JobStatus(id="job-1", status=JobStatusType.QUEUED))

    asyncio.run(_run())
