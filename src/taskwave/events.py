"""Progress events published by executors and the scheduler.

Listeners subscribe to an ``EventChannel`` and receive every event on the
thread that emitted it.  A failing listener is logged and skipped.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, Union

from taskwave import log as _log


@dataclass(frozen=True)
class PhaseEvent:
    task: str
    phase: str
    iteration: int
    max_iterations: int
    files_modified: int = 0


@dataclass(frozen=True)
class IterationEvent:
    task: str
    iteration: int
    outcome: str  # ok | scope_blocked | scope_rejected | validation_failed | worker_error
    files_changed: tuple[str, ...] = ()


@dataclass(frozen=True)
class TaskFinishedEvent:
    task: str
    status: str
    iterations: int
    error: str = ""


@dataclass(frozen=True)
class WaveEvent:
    wave: int
    tasks: tuple[str, ...]
    retry: bool = False


@dataclass(frozen=True)
class RunFinishedEvent:
    success: bool
    completed: int
    failed: int
    blocked: int
    skipped: int = 0
    conflicts: tuple[str, ...] = field(default=())


Event = Union[PhaseEvent, IterationEvent, TaskFinishedEvent, WaveEvent, RunFinishedEvent]
Listener = Callable[[Event], None]


class EventChannel:
    def __init__(self, logger: _log.Logger | None = None) -> None:
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self._log = logger or _log.default_logger()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as exc:
                self._log.debug(f"Event listener failed on {type(event).__name__}: {exc}")
