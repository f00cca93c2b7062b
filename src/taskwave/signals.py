"""Completion signals emitted by workers in their output text."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class SignalKind(str, Enum):
    NONE = "none"
    COMPLETE = "complete"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class CompletionSignal:
    kind: SignalKind = SignalKind.NONE
    reason: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.kind != SignalKind.NONE


NO_SIGNAL = CompletionSignal()

COMPLETE_MARKERS: tuple[str, ...] = (
    "<TASK_COMPLETE>",
    "<DONE>",
    "## Task Complete",
    "Definition of Done: All criteria met",
)

_BLOCKED_RE = re.compile(r"<BLOCKED:\s*(.*?)\s*>", re.DOTALL)


def parse_signal(text: str) -> CompletionSignal:
    """Extract the completion signal from worker output.

    A ``<BLOCKED: reason>`` marker wins over completion markers so a worker
    that says both is treated as blocked.
    """
    if not text:
        return NO_SIGNAL

    m = _BLOCKED_RE.search(text)
    if m:
        reason = m.group(1).strip() or "Worker reported it is blocked"
        return CompletionSignal(SignalKind.BLOCKED, reason)

    for marker in COMPLETE_MARKERS:
        if marker in text:
            return CompletionSignal(SignalKind.COMPLETE)

    return NO_SIGNAL


def complete_signal() -> CompletionSignal:
    return CompletionSignal(SignalKind.COMPLETE)


def blocked_signal(reason: str) -> CompletionSignal:
    return CompletionSignal(SignalKind.BLOCKED, reason)
