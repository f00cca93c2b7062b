"""Git operations: working-tree snapshots, reverts, commits and task moves."""

from __future__ import annotations

import subprocess
import threading
from pathlib import Path

from taskwave import log
from taskwave.errors import GitError
from taskwave.scope import ChangeKind, FileChange

# Concurrent executors share one index; serialize everything that writes it.
_index_lock = threading.Lock()

# path -> (porcelain XY code, mtime_ns, size)
Snapshot = dict[str, tuple[str, int, int]]


def _git(*args: str, cwd: Path | None = None, check: bool = False) -> subprocess.CompletedProcess[str]:
    """Run a git command, suppressing stderr noise."""
    return subprocess.run(
        ["git", *args],
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        cwd=cwd,
        check=check,
    )


def is_repo(cwd: Path | None = None) -> bool:
    r = _git("rev-parse", "--is-inside-work-tree", cwd=cwd)
    return r.returncode == 0 and r.stdout.strip() == "true"


def current_branch(cwd: Path | None = None) -> str:
    r = _git("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else "main"


# ── Status ───────────────────────────────────────────────────────────


def parse_porcelain(raw: str) -> list[tuple[str, str]]:
    """Parse ``git status --porcelain -z`` into ``(xy, path)`` pairs.

    Renames report the new path; the old path entry is consumed.
    """
    entries: list[tuple[str, str]] = []
    parts = raw.split("\0")
    i = 0
    while i < len(parts):
        item = parts[i]
        i += 1
        if len(item) < 4:
            continue
        xy, path = item[:2], item[3:]
        if "R" in xy or "C" in xy:
            i += 1
        entries.append((xy, path))
    return entries


def kind_for_code(xy: str) -> ChangeKind:
    if xy == "??" or "A" in xy:
        return ChangeKind.CREATED
    if "D" in xy:
        return ChangeKind.DELETED
    return ChangeKind.MODIFIED


def status_entries(cwd: Path | None = None) -> list[tuple[str, str]]:
    r = _git("status", "--porcelain", "-z", "--untracked-files=all", cwd=cwd)
    if r.returncode != 0:
        raise GitError("status", r.stderr.strip() or f"exit code {r.returncode}")
    return parse_porcelain(r.stdout)


def status_changes(cwd: Path | None = None) -> list[FileChange]:
    """Every uncommitted change in the working tree."""
    return [FileChange(path, kind_for_code(xy)) for xy, path in status_entries(cwd)]


def snapshot(cwd: Path | None = None) -> Snapshot:
    """Record dirty paths with their stat so later edits to them are visible."""
    base = cwd or Path.cwd()
    snap: Snapshot = {}
    for xy, path in status_entries(cwd):
        try:
            st = (base / path).stat()
            snap[path] = (xy, st.st_mtime_ns, st.st_size)
        except OSError:
            snap[path] = (xy, 0, -1)
    return snap


def changes_between(before: Snapshot, after: Snapshot) -> list[FileChange]:
    """Paths that appeared, changed status or were rewritten between snapshots.

    A path that was dirty before and is clean after (reverted) shows up as
    modified.
    """
    changes: list[FileChange] = []
    for path, state in after.items():
        if before.get(path) != state:
            changes.append(FileChange(path, kind_for_code(state[0])))
    for path in before:
        if path not in after:
            changes.append(FileChange(path, ChangeKind.MODIFIED))
    return changes


# ── Mutations ────────────────────────────────────────────────────────


def revert_paths(changes: list[FileChange], cwd: Path | None = None) -> None:
    """Undo *changes*: created files are removed, others restored from HEAD."""
    if not changes:
        return
    base = cwd or Path.cwd()
    restore = [c.path for c in changes if c.kind != ChangeKind.CREATED]
    created = [c.path for c in changes if c.kind == ChangeKind.CREATED]

    with _index_lock:
        if created:
            _git("reset", "-q", "--", *created, cwd=cwd)
            for path in created:
                (base / path).unlink(missing_ok=True)
        if restore:
            r = _git("checkout", "HEAD", "--", *restore, cwd=cwd)
            if r.returncode != 0:
                raise GitError("revert", r.stderr.strip() or f"exit code {r.returncode}")
    log.debug(f"Reverted {len(changes)} path(s): {', '.join(c.path for c in changes)}")


def commit_paths(paths: list[str], message: str, cwd: Path | None = None) -> bool:
    """Stage and commit exactly *paths*.  Returns ``False`` when nothing was committed."""
    if not paths:
        return False
    with _index_lock:
        for path in paths:
            # A path that never existed on either side is simply skipped.
            r = _git("add", "-A", "--", path, cwd=cwd)
            if r.returncode != 0:
                log.debug(f"git add skipped {path}: {r.stderr.strip()}")
        staged_r = _git("diff", "--cached", "--no-renames", "--name-only", "-z", "--", *paths, cwd=cwd)
        staged = [p for p in staged_r.stdout.split("\0") if p]
        if not staged:
            return False
        r = _git("commit", "-q", "-m", message, "--", *staged, cwd=cwd)
        if r.returncode != 0:
            raise GitError("commit", (r.stderr or r.stdout).strip() or f"exit code {r.returncode}")
    return True


def push(cwd: Path | None = None) -> None:
    r = _git("push", cwd=cwd)
    if r.returncode != 0:
        raise GitError("push", r.stderr.strip() or f"exit code {r.returncode}")


class GitWorkspace:
    """Git operations bound to one working directory, injected into executors."""

    def __init__(self, cwd: Path, ignore: tuple[str, ...] = (".taskwave/",)) -> None:
        self.cwd = cwd
        self.ignore = ignore

    def snapshot(self) -> Snapshot:
        return snapshot(self.cwd)

    def changes_since(self, before: Snapshot) -> list[FileChange]:
        changes = changes_between(before, snapshot(self.cwd))
        return [c for c in changes if not c.path.startswith(self.ignore)]

    def revert(self, changes: list[FileChange]) -> None:
        revert_paths(changes, cwd=self.cwd)

    def commit(self, paths: list[str], message: str) -> bool:
        return commit_paths(paths, message, cwd=self.cwd)

    def push(self) -> None:
        push(cwd=self.cwd)
