"""Error taxonomy for the scraping job pipeline.

Every failure the pipeline branches on is one of these classes, so the worker
can decide between retry, terminal failure and process-fatal errors without a
catch-all handler.
"""
from __future__ import annotations

from typing import Optional


class HousieError(Exception):
    """Base class carrying a readable message and the original cause."""

    default_message = "An unknown error occurred."

    def __init__(self, message: Optional[str] = None, *, cause: Optional[BaseException] = None) -> None:
        self.message = message or self.default_message
        self.cause = cause
        self.details = str(cause) if cause is not None else ""
        super().__init__(self.message)

    def detailed(self) -> str:
        """Return the message with the cause details appended when known."""
        if self.details:
            return f"{self.message}. Details: {self.details}"
        return self.message


class ConfigError(HousieError):
    default_message = "The application configuration is invalid."


class ValidationError(HousieError):
    """A submission was malformed and was never enqueued."""

    default_message = "The submitted URL is not valid."


class DuplicateError(HousieError):
    """A listing with the same URL is already stored."""

    default_message = "A listing with this URL already exists."

    def __init__(self, url: str, message: Optional[str] = None, *, cause: Optional[BaseException] = None) -> None:
        self.url = url
        super().__init__(message or f"A listing with URL {url} already exists", cause=cause)


class ServiceConnectionError(HousieError):
    """The broker or a backing store is unreachable; fatal to the process."""

    default_message = "Could not reach a backing service."


class ScrapeError(HousieError):
    """The scrape delegate failed; retryable up to the job budget."""

    default_message = "Scraping failed."


class PromptError(ScrapeError):
    default_message = "Could not read the active prompt."


class PersistenceError(HousieError):
    """The repository could not store a scraped record; never retried."""

    default_message = "Could not store the scraped listing."


class PoisonMessageError(HousieError):
    """A queue payload could not be decoded into a job."""

    default_message = "Malformed job payload."


class StatusStoreError(HousieError):
    """A status store read or write failed."""

    default_message = "The job status store is unavailable."
