"""Listing repository: durable storage of scrape results, unique by URL."""
from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import Dict, Optional, Protocol

import orjson
import structlog
from pydantic import ValidationError as SchemaValidationError

from housie.orchestrator.errors import DuplicateError, PersistenceError
from housie.storage.models import ScrapedListing, StoredListing

LOGGER = structlog.get_logger(__name__)


class ListingRepository(Protocol):
    async def find_by_url(self, url: str) -> Optional[StoredListing]: ...

    async def create(self, listing: ScrapedListing) -> StoredListing: ...


class JsonlListingRepository:
    """Append-only JSONL store with an in-memory URL index.

    ``create`` checks the index and appends under one lock, so within a
    process it behaves as an atomic create-or-conflict.
    """

    def __init__(self, *, path: Path) -> None:
        self._path = path
        self._by_url: Dict[str, StoredListing] = {}
        self._lock = asyncio.Lock()
        self._load_from_disk()

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        for lineno, line in enumerate(self._path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                listing = StoredListing.model_validate(orjson.loads(line))
            except (orjson.JSONDecodeError, SchemaValidationError) as exc:
                raise PersistenceError(f"Corrupt listing at {self._path}:{lineno}", cause=exc) from exc
            self._by_url[listing.url] = listing

    async def find_by_url(self, url: str) -> Optional[StoredListing]:
        return self._by_url.get(url)

    async def create(self, listing: ScrapedListing) -> StoredListing:
        async with self._lock:
            if listing.url in self._by_url:
                raise DuplicateError(listing.url)
            stored = StoredListing(id=str(uuid.uuid4()), **listing.model_dump(include=set(ScrapedListing.model_fields)))
            try:
                with self._path.open("a", encoding="utf-8") as handle:
                    handle.write(orjson.dumps(stored.model_dump(mode="json", by_alias=True)).decode())
                    handle.write("\n")
            except OSError as exc:
                raise PersistenceError(f"Could not write listing {listing.url}", cause=exc) from exc
            self._by_url[stored.url] = stored
        LOGGER.info("listing_stored", listing_id=stored.id, url=stored.url)
        return stored

    def __len__(self) -> int:
        return len(self._by_url)
