"""Command-line entrypoints for the housie scraping job pipeline."""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import socket
import sys
from pathlib import Path
from typing import Any, Coroutine, List, Optional

import structlog
from dotenv import load_dotenv

from housie.observability.log import configure_logging
from housie.observability.metrics import MetricsRegistry
from housie.orchestrator.broker import AmqpBroker
from housie.orchestrator.errors import DuplicateError, ServiceConnectionError, ValidationError
from housie.orchestrator.gateway import SubmissionGateway
from housie.orchestrator.status import RedisStatusStore
from housie.orchestrator.worker import ScrapeWorker
from housie.scrape.delegate import create_scrape_delegate
from housie.scrape.prompts import FilePromptProvider
from housie.settings import DEFAULT_SETTINGS_PATH, Settings, load_settings
from housie.storage.repository import JsonlListingRepository

LOGGER = structlog.get_logger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="housie", description="Listing scrape job pipeline")
    parser.add_argument("--settings", default=str(DEFAULT_SETTINGS_PATH), help="Path to settings.toml")
    parser.add_argument("--logging", default="config/logging.yaml", help="Path to logging.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    submit = sub.add_parser("submit", help="Queue a scraping job for a listing URL")
    submit.add_argument("--url", required=True, help="Listing URL to scrape")

    status = sub.add_parser("status", help="Show the last known status of a job")
    status.add_argument("--job-id", required=True)

    worker = sub.add_parser("worker", help="Consume and process scraping jobs")
    worker.add_argument("--concurrency", type=int, help="Maximum concurrent jobs (defaults to broker.prefetch)")

    return parser


def _gateway(settings: Settings, status_store: RedisStatusStore) -> SubmissionGateway:
    return SubmissionGateway(
        broker=AmqpBroker(settings.broker.url),
        status_store=status_store,
        repository=JsonlListingRepository(path=settings.storage.listings_path),
        queue=settings.broker.queue,
        max_retries=settings.jobs.max_retries,
    )


async def run_submit(url: str, settings: Settings) -> int:
    status_store = RedisStatusStore.from_url(settings.status_store.url, key_prefix=settings.status_store.key_prefix)
    gateway = _gateway(settings, status_store)
    try:
        await gateway.start()
        receipt = await gateway.submit(url)
    except (DuplicateError, ValidationError) as exc:
        print(json.dumps({"error": type(exc).__name__, "message": exc.message}))
        return 1
    finally:
        await gateway.close()
        await status_store.close()
    print(json.dumps(receipt.as_response()))
    return 0


async def run_status(job_id: str, settings: Settings) -> int:
    status_store = RedisStatusStore.from_url(settings.status_store.url, key_prefix=settings.status_store.key_prefix)
    try:
        record = await status_store.get(job_id)
    finally:
        await status_store.close()
    if record is None:
        print(json.dumps({"error": "NotFound", "message": f"No result found for job ID {job_id}"}))
        return 1
    print(record.to_json().decode())
    return 0


async def run_worker(settings: Settings, *, concurrency: Optional[int] = None) -> int:
    """Run the consume loop until SIGINT or SIGTERM, then drain and exit.

    Returns 1 when the broker connection fails so a supervisor restarts the
    process; unacknowledged messages are redelivered to the next worker.
    """
    concurrency = concurrency or settings.broker.prefetch
    metrics = MetricsRegistry()
    exit_code = 0
    status_store = RedisStatusStore.from_url(settings.status_store.url, key_prefix=settings.status_store.key_prefix)
    try:
        async with create_scrape_delegate(
            endpoint=settings.scrape.endpoint,
            timeout=settings.scrape.timeout_seconds,
            max_connections=concurrency,
            user_agent=settings.scrape.user_agent,
        ) as delegate:
            worker = ScrapeWorker(
                broker=AmqpBroker(settings.broker.url),
                status_store=status_store,
                repository=JsonlListingRepository(path=settings.storage.listings_path),
                delegate=delegate,
                prompts=FilePromptProvider(settings.scrape.prompts_path),
                queue=settings.broker.queue,
                concurrency=concurrency,
                metrics=metrics,
            )
            await worker.start()

            shutdown = asyncio.Event()
            loop = asyncio.get_running_loop()
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(signum, shutdown.set)
            shutdown_requested = asyncio.create_task(shutdown.wait())
            try:
                await asyncio.wait({shutdown_requested, worker.failure}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                shutdown_requested.cancel()
                for signum in (signal.SIGINT, signal.SIGTERM):
                    loop.remove_signal_handler(signum)

            if worker.failure.done():
                error = worker.failure.result()
                LOGGER.error("worker_exiting", reason="broker_failure", error=error.detailed())
                exit_code = 1
                try:
                    await worker.stop()
                except ServiceConnectionError as exc:
                    LOGGER.warning("worker_stop_failed", error=exc.detailed())
            else:
                LOGGER.info("shutdown_requested")
                await worker.stop()
    finally:
        await status_store.close()
    metrics.export(path=settings.storage.metrics_dir / "worker.json", worker_id=_worker_id())
    return exit_code


def _worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _run(coro: Coroutine[Any, Any, int]) -> int:
    if sys.platform != "win32":
        import uvloop

        return uvloop.run(coro)
    return asyncio.run(coro)


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(Path(args.logging))
    settings = load_settings(Path(args.settings))

    if args.command == "submit":
        raise SystemExit(_run(run_submit(args.url, settings)))

    if args.command == "status":
        raise SystemExit(_run(run_status(args.job_id, settings)))

    if args.command == "worker":
        raise SystemExit(_run(run_worker(settings, concurrency=args.concurrency)))


if __name__ == "__main__":
    main()
