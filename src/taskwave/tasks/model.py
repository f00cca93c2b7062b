"""Task data models used across task loading, execution and scheduling."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from taskwave.scope import Scope


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass
class ResumeAttempt:
    resumed_at: str
    status: str = "in_progress"  # in_progress | completed | blocked_again | failed
    iterations: int = 0
    finished_at: str = ""


@dataclass
class BlockedSnapshot:
    """Everything needed to resume a blocked task where it stopped."""

    previous_iteration: int
    blocking_issue: str
    files_modified: list[str] = field(default_factory=list)
    started_at: str = ""
    blocked_at: str = ""
    attempt_history: list[ResumeAttempt] = field(default_factory=list)


@dataclass
class Task:
    path: Path
    goal: str = ""
    task_type: str = ""
    scope: Scope = field(default_factory=Scope)
    requirements: str = ""
    definition_of_done: list[str] = field(default_factory=list)
    notes: str = ""
    status: TaskStatus = TaskStatus.PENDING
    blocked: BlockedSnapshot | None = None
    raw: str = ""

    @property
    def id(self) -> str:
        return self.path.name

    @property
    def name(self) -> str:
        return self.path.stem

    @property
    def is_blocked(self) -> bool:
        return self.status == TaskStatus.BLOCKED
