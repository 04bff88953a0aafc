import asyncio

import orjson
import pytest

from housie.observability.metrics import MetricsRegistry
from housie.orchestrator.broker import InMemoryBroker
from housie.orchestrator.errors import DuplicateError, ServiceConnectionError, StatusStoreError, ValidationError
from housie.orchestrator.gateway import SubmissionGateway
from housie.orchestrator.jobs import JobStatusType, decode_job
from housie.orchestrator.status import InMemoryStatusStore
from housie.storage.models import ScrapedListing
from housie.storage.repository import JsonlListingRepository

QUEUE = "scraping_queue"


class UnavailableStatusStore(InMemoryStatusStore):
    async def set(self, status):
        raise StatusStoreError("redis down")


def _listing(url):
    return ScrapedListing(
        url=url, name="Maison", price=250000, size=90, city="Lyon", post_code="69003", rooms=4, dpe="C"
    )


def _gateway(tmp_path, **overrides):
    options = {
        "broker": InMemoryBroker(),
        "status_store": InMemoryStatusStore(),
        "repository": JsonlListingRepository(path=tmp_path / "listings.jsonl"),
        "queue": QUEUE,
        "max_retries": 3,
        "metrics": MetricsRegistry(),
    }
    options.update(overrides)
    return SubmissionGateway(**options), options


def test_submit_new_url_publishes_and_seeds_status(tmp_path):
    async def _run():
        gateway, deps = _gateway(tmp_path)
        await gateway.start()
        receipt = await gateway.submit("https://example.com/house/1")

        assert receipt.as_response() == {"jobId": receipt.job_id, "status": "queued"}
        assert deps["broker"].published and len(deps["broker"].published) == 1
        queue, body = deps["broker"].published[0]
        assert queue == QUEUE
        job = decode_job(body).job
        assert job.id == receipt.job_id
        assert job.retry_count == 0
        assert job.max_retries == 3

        status = await gateway.status(receipt.job_id)
        assert status.status is JobStatusType.QUEUED
        assert deps["metrics"].get("jobs_submitted") == 1

    asyncio.run(_run())


def test_submissions_get_unique_ids(tmp_path):
    async def _run():
        gateway, _ = _gateway(tmp_path)
        await gateway.start()
        receipts = [await gateway.submit(f"https://example.com/house/{i}") for i in range(5)]
        assert len({receipt.job_id for receipt in receipts}) == 5

    asyncio.run(_run())


def test_submit_stored_url_is_duplicate(tmp_path):
    async def _run():
        gateway, deps = _gateway(tmp_path)
        await gateway.start()
        await deps["repository"].create(_listing("https://example.com/house/1"))

        with pytest.raises(DuplicateError):
            await gateway.submit("https://example.com/house/1")
        assert deps["broker"].published == []
        assert deps["metrics"].get("jobs_duplicate") == 1

    asyncio.run(_run())


def test_submit_rejects_invalid_urls(tmp_path):
    async def _run():
        gateway, deps = _gateway(tmp_path)
        await gateway.start()
        for url in ("", "not a url", "ftp://example.com/house"):
            with pytest.raises(ValidationError):
                await gateway.submit(url)
        assert deps["broker"].published == []

    asyncio.run(_run())


def test_status_store_failure_does_not_block_submission(tmp_path):
    async def _run():
        gateway, deps = _gateway(tmp_path, status_store=UnavailableStatusStore())
        await gateway.start()
        receipt = await gateway.submit("https://example.com/house/1")
        assert receipt.status is JobStatusType.QUEUED
        assert len(deps["broker"].published) == 1
        assert deps["metrics"].get("status_write_failures") == 1

    asyncio.run(_run())


def test_broker_unavailable_is_surfaced(tmp_path):
    async def _run():
        gateway, deps = _gateway(tmp_path)
        with pytest.raises(ServiceConnectionError):
            await gateway.submit("https://example.com/house/1")
        assert deps["status_store"].history == {}

    asyncio.run(_run())


def test_published_payload_matches_wire_format(tmp_path):
    async def _run():
        gateway, deps = _gateway(tmp_path)
        await gateway.start()
        await gateway.submit("https://example.com/house/9")
        payload = orjson.loads(deps["broker"].published[0][1])
        assert payload["type"] == "house-scraping"
        assert payload["url"] == "https://example.com/house/9"
        assert payload["retryCount"] == 0

    asyncio.run(_run())
