"""Shared fixtures for taskwave tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use taskwave.io_utils read_text/write_text for consistent UTF-8 I/O.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import pytest

from taskwave.io_utils import write_text
from taskwave.scope import FileChange
from taskwave.signals import NO_SIGNAL, CompletionSignal, blocked_signal, complete_signal
from taskwave.workers.base import Worker, WorkerResult


def pytest_addoption(parser: pytest.Parser) -> None:
    """Register opt-in switch for expensive end-to-end tests."""
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run end-to-end tests marked with 'e2e'.",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip e2e tests unless explicitly enabled."""
    if config.getoption("--run-e2e"):
        return

    skip_e2e = pytest.mark.skip(
        reason="E2E tests are skipped by default. Use --run-e2e to include them.",
    )
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a minimal git repo for testing."""
    subprocess.run(["git", "init"], cwd=tmp_path, capture_output=True, check=True)
    subprocess.run(
        ["git", "config", "user.name", "Test"], cwd=tmp_path, capture_output=True
    )
    subprocess.run(
        ["git", "config", "user.email", "test@test"], cwd=tmp_path, capture_output=True
    )
    subprocess.run(
        ["git", "config", "commit.gpgsign", "false"], cwd=tmp_path, capture_output=True
    )
    write_text(tmp_path / "README.md", "# Test")
    subprocess.run(["git", "add", "README.md"], cwd=tmp_path, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "Initial"], cwd=tmp_path, capture_output=True
    )
    return tmp_path


def put(path: Path, text: str) -> Path:
    """Write *text* to *path*, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    write_text(path, text)
    return path


# ── Task files ───────────────────────────────────────────────────────


def task_markdown(
    goal: str = "Do the thing",
    allowed: list[str] | None = None,
    forbidden: list[str] | None = None,
    ask_before: list[str] | None = None,
    dod: list[str] | None = None,
    extra: str = "",
) -> str:
    allowed = ["src/**"] if allowed is None else allowed
    forbidden = forbidden or []
    lines = [
        f"# TASK: {goal}",
        "",
        "## Goal",
        goal,
        "",
        "## Task Type",
        "component",
        "",
        "## Scope",
        "",
        "### Allowed",
        *(f"- `{p}`" for p in allowed),
        "",
        "### Forbidden",
        *(f"- `{p}`" for p in forbidden),
    ]
    if ask_before:
        lines += ["", "### Ask Before", *(f"- `{p}`" for p in ask_before)]
    lines += [
        "",
        "## Requirements",
        "Keep it simple.",
        "",
        "## Definition of Done",
        *(f"- [ ] {d}" for d in (dod or ["It works"])),
    ]
    text = "\n".join(lines) + "\n"
    if extra:
        text += "\n" + extra.strip("\n") + "\n"
    return text


@pytest.fixture
def tasks_dir(tmp_path: Path) -> Path:
    """``.taskwave/tasks`` with the three status directories."""
    root = tmp_path / ".taskwave" / "tasks"
    for name in ("pending", "blocked", "completed"):
        (root / name).mkdir(parents=True, exist_ok=True)
    return root


@pytest.fixture
def write_task(tasks_dir: Path) -> Callable[..., Path]:
    """Factory: write a task markdown file into a status directory."""

    def _write(name: str, *, folder: str = "pending", **kwargs) -> Path:
        path = tasks_dir / folder / name
        write_text(path, task_markdown(**kwargs))
        return path

    return _write


# ── Scripted worker / workspace ──────────────────────────────────────


@dataclass
class Step:
    """One scripted worker invocation."""

    output: str = ""
    changes: list[FileChange] = field(default_factory=list)
    signal: CompletionSignal = NO_SIGNAL
    error: str = ""
    timed_out: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    effect: Callable[[Path], None] | None = None


def done(*changes: FileChange, output: str = "<TASK_COMPLETE>") -> Step:
    return Step(output=output, changes=list(changes), signal=complete_signal())


def working(*changes: FileChange, output: str = "still working") -> Step:
    return Step(output=output, changes=list(changes))


def blocked(reason: str, *changes: FileChange) -> Step:
    return Step(output=f"<BLOCKED: {reason}>", changes=list(changes), signal=blocked_signal(reason))


class FakeWorker(Worker):
    """Replays a list of :class:`Step` and records the prompts it received.

    Steps with ``effect`` touch the real filesystem and report no changes so
    the executor diffs the tree; the rest report their changes directly.
    """

    name = "fake"

    def __init__(self, steps: list[Step] | None = None, default: Step | None = None) -> None:
        self.steps = list(steps or [])
        self.default = default or working()
        self.prompts: list[str] = []

    def execute(self, prompt: str, *, cwd: Path, timeout: int | None = None) -> WorkerResult:
        self.prompts.append(prompt)
        step = self.steps.pop(0) if self.steps else self.default
        if step.effect is not None:
            step.effect(cwd)
            changes = None
        else:
            changes = list(step.changes)
        return WorkerResult(
            output=step.output,
            file_changes=changes,
            signal=step.signal,
            error=step.error,
            timed_out=step.timed_out,
            input_tokens=step.input_tokens,
            output_tokens=step.output_tokens,
        )


class FakeWorkspace:
    """In-memory stand-in for ``GitWorkspace`` that records calls."""

    def __init__(self, cwd: Path) -> None:
        self.cwd = cwd
        self.reverted: list[list[FileChange]] = []
        self.commits: list[tuple[list[str], str]] = []
        self.pushes = 0
        self.fail_commit = False

    def snapshot(self) -> dict:
        return {}

    def changes_since(self, before: dict) -> list[FileChange]:
        return []

    def revert(self, changes: list[FileChange]) -> None:
        self.reverted.append(list(changes))

    def commit(self, paths: list[str], message: str) -> bool:
        if self.fail_commit:
            from taskwave.errors import GitError

            raise GitError("commit", "index.lock exists")
        self.commits.append((list(paths), message))
        return True

    def push(self) -> None:
        self.pushes += 1


@pytest.fixture
def workspace(tmp_path: Path) -> FakeWorkspace:
    return FakeWorkspace(tmp_path)
