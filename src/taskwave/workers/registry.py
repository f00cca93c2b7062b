"""Worker registry: get the right adapter by name."""

from __future__ import annotations

from taskwave.errors import ConfigError
from taskwave.workers.base import Worker
from taskwave.workers.claude import ClaudeWorker
from taskwave.workers.opencode import OpenCodeWorker

WORKER_NAMES = ("claude", "opencode")


def get_worker(name: str, *, model: str = "") -> Worker:
    """Return a worker adapter for *name*."""
    match name:
        case "claude":
            return ClaudeWorker(model=model)
        case "opencode":
            return OpenCodeWorker(model=model)
        case _:
            raise ConfigError.invalid("worker", f"unknown worker {name!r}")
