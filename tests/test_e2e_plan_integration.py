"""End-to-end plan execution against a real git repository (opt-in via --run-e2e)."""

from __future__ import annotations

import re
import subprocess
import threading
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from conftest import task_markdown
from taskwave.cli import main
from taskwave.io_utils import read_text, write_text
from taskwave.signals import complete_signal
from taskwave.workers.base import Worker, WorkerResult

pytestmark = pytest.mark.e2e

_GOAL_RE = re.compile(r"### Goal\s+Create (\S+)")


class FileWritingWorker(Worker):
    """Creates the file named in the task goal and reports completion."""

    name = "fake"

    def __init__(self, launches: list[str], lock: threading.Lock) -> None:
        self.launches = launches
        self.lock = lock

    def execute(self, prompt: str, *, cwd: Path, timeout: int | None = None) -> WorkerResult:
        m = _GOAL_RE.search(prompt)
        assert m is not None, prompt
        rel = m.group(1)
        with self.lock:
            self.launches.append(rel)
        target = cwd / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        write_text(target, f"# generated for {rel}\n")
        return WorkerResult(output="<TASK_COMPLETE>", signal=complete_signal())


def _git(repo: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    ).stdout


@pytest.fixture
def plan_repo(git_repo: Path, monkeypatch) -> Path:
    tasks = git_repo / ".taskwave" / "tasks"
    for name in ("pending", "blocked", "completed"):
        (tasks / name).mkdir(parents=True)
    specs = {
        "001-models.md": ("Create src/models/user.py", ["src/models/**"]),
        "002-api.md": ("Create src/api/routes.py", ["src/api/**"]),
        "003-docs.md": ("Create docs/usage.md", ["docs/**"]),
    }
    for name, (goal, allowed) in specs.items():
        write_text(tasks / "pending" / name, task_markdown(goal=goal, allowed=allowed))
    write_text(
        git_repo / "PLAN.md",
        "# PLAN: E2E\n\n"
        "- [ ] `001-models.md` — models\n"
        "- [ ] `002-api.md` — routes (depends: 001-models.md)\n"
        "- [ ] `003-docs.md` — docs\n",
    )
    _git(git_repo, "add", "-A")
    _git(git_repo, "commit", "-m", "Add plan")
    monkeypatch.chdir(git_repo)
    return git_repo


def test_plan_runs_waves_and_commits(plan_repo: Path) -> None:
    launches: list[str] = []
    lock = threading.Lock()

    with patch(
        "taskwave.workers.registry.get_worker",
        side_effect=lambda *a, **kw: FileWritingWorker(launches, lock),
    ):
        r = CliRunner().invoke(main, ["plan", "--concurrency", "1", "PLAN.md"])

    assert r.exit_code == 0, r.output
    assert launches.index("src/models/user.py") < launches.index("src/api/routes.py")
    assert launches.index("docs/usage.md") < launches.index("src/api/routes.py")

    for rel in ("src/models/user.py", "src/api/routes.py", "docs/usage.md"):
        assert (plan_repo / rel).is_file()

    completed = plan_repo / ".taskwave" / "tasks" / "completed"
    assert sorted(p.name for p in completed.glob("*.md")) == [
        "001-models.md",
        "002-api.md",
        "003-docs.md",
    ]
    assert "## Status: ✅ COMPLETED" in read_text(completed / "002-api.md")

    plan = read_text(plan_repo / "PLAN.md")
    assert plan.count("- [x]") == 3

    log = _git(plan_repo, "log", "--format=%s")
    assert "taskwave: Create src/models/user.py" in log
    assert "taskwave: Create docs/usage.md" in log
    tracked = _git(plan_repo, "ls-files")
    assert "src/api/routes.py" in tracked
    assert ".taskwave/tasks/completed/002-api.md" in tracked
    assert ".taskwave/tasks/pending/002-api.md" not in tracked
