from datetime import datetime, timezone

import orjson

from housie.orchestrator.jobs import Job, JobStatus, JobStatusType, JobType, decode_job, encode_job


def _payload(**overrides):
    payload = {
        "id": "scrape-1",
        "type": "house-scraping",
        "url": "https://example.com/house/1",
        "createdAt": "2024-05-01T10:00:00+00:00",
        "retryCount": 0,
        "maxRetries": 3,
    }
    payload.update(overrides)
    return orjson.dumps(payload)


def test_decode_job_accepts_wire_format():
    result = decode_job(_payload(retryCount=1))
    assert result.ok
    assert result.job.id == "scrape-1"
    assert result.job.type is JobType.HOUSE_SCRAPING
    assert result.job.retry_count == 1
    assert result.job.created_at == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)


def test_encode_job_uses_camel_case_names():
    job = Job.create("https://example.com/house/2", max_retries=2)
    data = orjson.loads(encode_job(job))
    assert set(data) == {"id", "type", "url", "createdAt", "retryCount", "maxRetries"}
    assert data["type"] == "house-scraping"
    assert data["id"].startswith("scrape-")
    assert decode_job(encode_job(job)).job == job


def test_decode_job_rejects_malformed_payloads():
    bad_bodies = [
        b"not json",
        b"[1, 2, 3]",
        _payload(retryCount="1"),
        _payload(retryCount=-1),
        _payload(type="unknown"),
        _payload(extra="field"),
        orjson.dumps({"id": "scrape-1", "url": "https://example.com"}).replace(b"url", b"link"),
    ]
    for body in bad_bodies:
        result = decode_job(body)
        assert not result.ok, body
        assert result.error


def test_next_attempt_keeps_identity_and_bumps_counter():
    job = Job.create("https://example.com/house/3", max_retries=2)
    retry = job.next_attempt()
    assert retry.id == job.id
    assert retry.url == job.url
    assert retry.created_at == job.created_at
    assert retry.retry_count == job.retry_count + 1
    assert job.retry_count == 0
    assert retry.can_retry()
    assert not retry.next_attempt().can_retry()


def test_job_status_serialisation_omits_missing_error():
    status = JobStatus(id="scrape-1", status=JobStatusType.QUEUED)
    data = orjson.loads(status.to_json())
    assert data["status"] == "queued"
    assert "error" not in data
    assert "updatedAt" in data
    assert JobStatus.from_json(status.to_json()) == status


def test_terminal_statuses():
    assert JobStatusType.SUCCESS.terminal
    assert JobStatusType.ERROR.terminal
    assert not JobStatusType.QUEUED.terminal
    assert not JobStatusType.PROCESSING.terminal
