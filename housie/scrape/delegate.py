"""Scrape delegates: visit a listing page and return a structured record.

The extraction itself runs in a separate service (a browser driven by an LLM);
this module only adapts its HTTP interface to the worker's contract of
``scrape(url, prompt) -> ScrapedListing`` raising ``ScrapeError``.
"""
from __future__ import annotations

import contextlib
import time
from typing import AsyncIterator, Optional, Protocol

import httpx
import structlog
from pydantic import ValidationError as SchemaValidationError

from housie.orchestrator.errors import ScrapeError
from housie.storage.models import ScrapedListing

LOGGER = structlog.get_logger(__name__)


class ScrapeDelegate(Protocol):
    async def scrape(self, url: str, prompt: str) -> ScrapedListing: ...


class HttpScrapeDelegate:
    """Calls an extraction service over HTTP.

    The service receives ``{"url": ..., "prompt": ...}`` and answers with the
    extracted listing fields. Timeouts, transport errors, non-2xx responses
    and payloads that fail the listing schema all raise ``ScrapeError``.
    """

    def __init__(self, client: httpx.AsyncClient, *, endpoint: str, timeout: float = 120.0) -> None:
        self._client = client
        self._endpoint = endpoint
        self._timeout = timeout

    async def scrape(self, url: str, prompt: str) -> ScrapedListing:
        start = time.perf_counter()
        try:
            response = await self._client.post(
                self._endpoint,
                json={"url": url, "prompt": prompt},
                timeout=self._timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ScrapeError(f"Scraping {url} timed out", cause=exc) from exc
        except httpx.HTTPError as exc:
            raise ScrapeError(f"Scraping {url} failed", cause=exc) from exc
        elapsed_ms = int((time.perf_counter() - start) * 1000)

        try:
            payload = response.json()
            payload["url"] = url
            listing = ScrapedListing.model_validate(payload)
        except (ValueError, TypeError, SchemaValidationError) as exc:
            raise ScrapeError(f"Extraction service returned an invalid listing for {url}", cause=exc) from exc
        LOGGER.info("scrape_result", url=url, status=response.status_code, elapsed_ms=elapsed_ms)
        return listing


@contextlib.asynccontextmanager
async def create_scrape_delegate(
    *,
    endpoint: str,
    timeout: float,
    max_connections: int,
    user_agent: Optional[str] = None,
) -> AsyncIterator[HttpScrapeDelegate]:
    """Yield an ``HttpScrapeDelegate`` sharing one pooled client."""
    headers = {"User-Agent": user_agent} if user_agent else {}
    limits = httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections)
    async with httpx.AsyncClient(headers=headers, limits=limits, timeout=timeout) as client:
        yield HttpScrapeDelegate(client, endpoint=endpoint, timeout=timeout)
