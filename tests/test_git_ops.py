"""Tests for taskwave.git_ops (status parsing, snapshots, revert, commit)."""

from __future__ import annotations

import subprocess
from pathlib import Path

from taskwave.git_ops import (
    GitWorkspace,
    changes_between,
    commit_paths,
    current_branch,
    is_repo,
    kind_for_code,
    parse_porcelain,
    revert_paths,
    snapshot,
    status_changes,
)
from taskwave.io_utils import read_text, write_text
from taskwave.scope import ChangeKind, FileChange

from conftest import put


def _log(repo: Path) -> list[str]:
    r = subprocess.run(
        ["git", "log", "--format=%s"], cwd=repo, capture_output=True, text=True, check=True
    )
    return r.stdout.splitlines()


def _committed_files(repo: Path) -> list[str]:
    r = subprocess.run(
        ["git", "show", "--name-only", "--format=", "HEAD"],
        cwd=repo,
        capture_output=True,
        text=True,
        check=True,
    )
    return sorted(line for line in r.stdout.splitlines() if line)


# ── Parsing ──────────────────────────────────────────────────────────


class TestParsePorcelain:
    def test_basic_entries(self):
        raw = " M src/a.py\0?? new.txt\0D  gone.py\0"
        assert parse_porcelain(raw) == [(" M", "src/a.py"), ("??", "new.txt"), ("D ", "gone.py")]

    def test_rename_consumes_old_path(self):
        raw = "R  new_name.py\0old_name.py\0 M other.py\0"
        assert parse_porcelain(raw) == [("R ", "new_name.py"), (" M", "other.py")]

    def test_empty(self):
        assert parse_porcelain("") == []

    def test_kind_for_code(self):
        assert kind_for_code("??") == ChangeKind.CREATED
        assert kind_for_code("A ") == ChangeKind.CREATED
        assert kind_for_code(" D") == ChangeKind.DELETED
        assert kind_for_code(" M") == ChangeKind.MODIFIED
        assert kind_for_code("R ") == ChangeKind.MODIFIED


class TestChangesBetween:
    def test_new_and_rewritten_paths(self):
        before = {"a.py": (" M", 1, 10), "b.py": (" M", 1, 10)}
        after = {"a.py": (" M", 1, 10), "b.py": (" M", 2, 12), "c.py": ("??", 1, 3)}
        changes = changes_between(before, after)
        assert changes == [FileChange("b.py"), FileChange("c.py", ChangeKind.CREATED)]

    def test_path_cleaned_up_counts_as_modified(self):
        changes = changes_between({"a.py": (" M", 1, 10)}, {})
        assert changes == [FileChange("a.py", ChangeKind.MODIFIED)]


# ── Against a real repository ────────────────────────────────────────


class TestRepository:
    def test_is_repo(self, git_repo, tmp_path_factory):
        assert is_repo(git_repo)
        assert not is_repo(tmp_path_factory.mktemp("plain"))

    def test_current_branch(self, git_repo):
        assert current_branch(git_repo) in ("main", "master")

    def test_status_changes(self, git_repo):
        write_text(git_repo / "README.md", "# Changed")
        put(git_repo / "src" / "new.py", "x = 1\n")
        changes = {c.path: c.kind for c in status_changes(git_repo)}
        assert changes == {"README.md": ChangeKind.MODIFIED, "src/new.py": ChangeKind.CREATED}

    def test_snapshot_sees_second_edit_of_dirty_file(self, git_repo):
        write_text(git_repo / "README.md", "# one")
        before = snapshot(git_repo)
        write_text(git_repo / "README.md", "# one, and then a longer second edit")
        after = snapshot(git_repo)
        assert changes_between(before, after) == [FileChange("README.md")]

    def test_revert_restores_and_removes(self, git_repo):
        write_text(git_repo / "README.md", "# Changed")
        write_text(git_repo / "stray.txt", "oops")
        revert_paths(
            [FileChange("README.md"), FileChange("stray.txt", ChangeKind.CREATED)], cwd=git_repo
        )
        assert read_text(git_repo / "README.md") == "# Test"
        assert not (git_repo / "stray.txt").exists()
        assert status_changes(git_repo) == []

    def test_commit_only_given_paths(self, git_repo):
        write_text(git_repo / "mine.py", "a = 1\n")
        write_text(git_repo / "theirs.py", "b = 2\n")
        assert commit_paths(["mine.py"], "taskwave: mine", cwd=git_repo)
        assert _log(git_repo)[0] == "taskwave: mine"
        assert _committed_files(git_repo) == ["mine.py"]
        assert [c.path for c in status_changes(git_repo)] == ["theirs.py"]

    def test_commit_records_deletion(self, git_repo):
        (git_repo / "README.md").unlink()
        assert commit_paths(["README.md"], "remove readme", cwd=git_repo)
        assert status_changes(git_repo) == []

    def test_commit_nothing_returns_false(self, git_repo):
        assert not commit_paths(["README.md"], "no-op", cwd=git_repo)
        assert not commit_paths([], "no-op", cwd=git_repo)
        assert len(_log(git_repo)) == 1


class TestGitWorkspace:
    def test_changes_since_ignores_project_dir(self, git_repo):
        ws = GitWorkspace(git_repo)
        before = ws.snapshot()
        put(git_repo / "src" / "a.py", "x\n")
        put(git_repo / ".taskwave" / "tasks" / "pending" / "t.md", "## Goal\nX\n")
        assert ws.changes_since(before) == [FileChange("src/a.py", ChangeKind.CREATED)]

    def test_move_commit(self, git_repo):
        pending = git_repo / ".taskwave" / "tasks" / "pending" / "t.md"
        put(pending, "## Goal\nX\n")
        ws = GitWorkspace(git_repo)
        assert ws.commit([".taskwave/tasks/pending/t.md"], "add task")

        done = git_repo / ".taskwave" / "tasks" / "completed" / "t.md"
        done.parent.mkdir(parents=True)
        pending.replace(done)
        assert ws.commit(
            [".taskwave/tasks/pending/t.md", ".taskwave/tasks/completed/t.md"], "mark t completed"
        )
        assert status_changes(git_repo) == []
