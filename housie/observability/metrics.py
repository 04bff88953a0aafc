"""Lightweight in-process metrics suitable for exporting later."""
from __future__ import annotations

import json
import time
from collections import defaultdict
from pathlib import Path
from typing import Dict

import structlog

LOGGER = structlog.get_logger(__name__)


class MetricsRegistry:
    """Holds mutable counters for the current process."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        self._register_defaults()

    def _register_defaults(self) -> None:
        defaults = [
            "jobs_submitted",
            "jobs_duplicate",
            "jobs_started",
            "jobs_succeeded",
            "jobs_retried",
            "jobs_exhausted",
            "jobs_unsupported",
            "persistence_failures",
            "poison_messages",
            "status_write_failures",
            "inflight_peak",
        ]
        for key in defaults:
            self._counters[key] = 0

    def incr(self, name: str, value: int = 1) -> None:
        """Increment the named counter by the supplied value."""
        self._counters[name] += value

    def observe_max(self, name: str, value: int) -> None:
        """Keep the largest value seen for ``name``."""
        if value > self._counters[name]:
            self._counters[name] = value

    def get(self, name: str) -> int:
        """Return the current value for the counter, defaulting to zero."""
        return self._counters.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        """Return a shallow copy of all counters for reporting."""
        return dict(self._counters)

    def export(self, *, path: Path, worker_id: str) -> Path:
        """Write counters to a JSON file at ``path``."""
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "worker_id": worker_id,
            "counters": self.snapshot(),
            "generated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        LOGGER.info("metrics_exported", path=str(path))
        return path
