"""Read and write task markdown records.

A task file is plain markdown::

    # TASK: Add login form

    ## Goal
    One paragraph.

    ## Scope
    ### Allowed
    - `src/auth/**`
    ### Forbidden
    - `src/db/**`
    ### Ask Before
    - `package.json`

    ## Requirements
    ...

    ## Definition of Done
    - [ ] Form renders

Terminal states rewrite a ``## Status:`` section in place, and the file
moves between the ``pending/``, ``blocked/`` and ``completed/`` directories.
"""

from __future__ import annotations

import re
from pathlib import Path

from taskwave.errors import ConfigError
from taskwave.io_utils import read_text, write_text_atomic
from taskwave.scope import Scope
from taskwave.tasks.model import BlockedSnapshot, ResumeAttempt, Task, TaskStatus

STATUS_DIRS: tuple[str, ...] = ("pending", "blocked", "completed")

TASK_TYPES: tuple[str, ...] = ("component", "refactor", "test", "docs", "architecture", "bugfix")


# ── Section helpers ─────────────────────────────────────────────────


def _section(content: str, name: str) -> str:
    """Body of ``## name`` up to the next level-2 heading."""
    m = re.search(
        rf"^## {re.escape(name)}[ \t]*\n(.*?)(?=^## (?!#)|\Z)",
        content,
        re.MULTILINE | re.DOTALL | re.IGNORECASE,
    )
    return m.group(1).strip() if m else ""


def _subsection(body: str, name: str) -> str:
    m = re.search(
        rf"^### {re.escape(name)}[ \t]*\n(.*?)(?=^### |\Z)",
        body,
        re.MULTILINE | re.DOTALL | re.IGNORECASE,
    )
    return m.group(1).strip() if m else ""


def _bullets(body: str) -> list[str]:
    items: list[str] = []
    for line in body.splitlines():
        stripped = line.strip()
        if not stripped.startswith("-"):
            continue
        items.append(stripped.lstrip("-").strip())
    return items


def _paths(body: str) -> list[str]:
    out: list[str] = []
    for item in _bullets(body):
        m = re.search(r"`([^`]+)`", item)
        path = m.group(1) if m else item.split()[0] if item else ""
        if path:
            out.append(path.strip())
    return out


def _checklist(body: str) -> list[str]:
    items: list[str] = []
    for line in body.splitlines():
        m = re.match(r"^\s*-\s*\[[ xX]\]\s*(.*)$", line)
        if m:
            items.append(m.group(1).strip())
    return items


def _field(body: str, label: str) -> str:
    m = re.search(rf"\*\*{re.escape(label)}:\*\*[ \t]*(.+)", body, re.IGNORECASE)
    return m.group(1).strip() if m else ""


# ── Parsing ─────────────────────────────────────────────────────────


def parse_scope(content: str) -> Scope:
    body = _section(content, "Scope")
    return Scope(
        allowed=_paths(_subsection(body, "Allowed")),
        forbidden=_paths(_subsection(body, "Forbidden")),
        ask_before=_paths(_subsection(body, "Ask Before")),
    )


def parse_task(path: Path) -> Task:
    """Load a task file.  Raises ``ConfigError`` when it is missing or malformed."""
    if not path.is_file():
        raise ConfigError.missing(str(path))

    content = read_text(path).replace("\r\n", "\n")
    goal = _section(content, "Goal")
    if not goal:
        raise ConfigError.parse_error(str(path), "missing '## Goal' section")

    task_type = _section(content, "Task Type").lower()
    status, snapshot = parse_status(content)
    if status is None:
        status = status_from_location(path)

    return Task(
        path=path,
        goal=goal,
        task_type=task_type if task_type in TASK_TYPES else "component",
        scope=parse_scope(content),
        requirements=_section(content, "Requirements"),
        definition_of_done=_checklist(_section(content, "Definition of Done")),
        notes=_section(content, "Notes"),
        status=status,
        blocked=snapshot,
        raw=content,
    )


def status_from_location(path: Path) -> TaskStatus:
    match path.parent.name:
        case "blocked":
            return TaskStatus.BLOCKED
        case "completed":
            return TaskStatus.COMPLETED
        case _:
            return TaskStatus.PENDING


def _status_section(content: str) -> tuple[str, str] | None:
    """Return ``(heading_text, body)`` of the ``## Status:`` section."""
    m = re.search(
        r"^## Status:(.*)\n(.*?)(?=^## (?!#)|\Z)",
        content,
        re.MULTILINE | re.DOTALL,
    )
    if not m:
        return None
    return m.group(1).strip(), m.group(2)


def parse_status(content: str) -> tuple[TaskStatus | None, BlockedSnapshot | None]:
    """Read the status section, returning the snapshot when it is BLOCKED."""
    found = _status_section(content)
    if found is None:
        return None, None
    heading, body = found
    upper = heading.upper()

    if "BLOCKED" in upper:
        return TaskStatus.BLOCKED, _parse_blocked(body)
    if "COMPLETED" in upper:
        return TaskStatus.COMPLETED, None
    if "FAILED" in upper:
        return TaskStatus.FAILED, None
    if "PROGRESS" in upper:
        return TaskStatus.IN_PROGRESS, None
    return None, None


def _parse_blocked(body: str) -> BlockedSnapshot:
    log = _subsection(body, "Execution Log")
    iterations = _field(log, "Iterations")
    issue = re.search(r"^### Blocking Issue\n```\n?(.*?)```", body, re.MULTILINE | re.DOTALL)

    files_body = re.search(
        r"^### Files Modified\n(.*?)(?=^---|^### |\Z)", body, re.MULTILINE | re.DOTALL
    )
    files = _paths(files_body.group(1)) if files_body else []

    return BlockedSnapshot(
        previous_iteration=int(iterations) if iterations.isdigit() else 0,
        blocking_issue=issue.group(1).strip() if issue else "",
        files_modified=files,
        started_at=_field(log, "Started"),
        blocked_at=_field(log, "Blocked at"),
        attempt_history=_parse_attempts(_subsection(body, "Resume Attempt History")),
    )


def _parse_attempts(body: str) -> list[ResumeAttempt]:
    if not body:
        return []
    attempts: list[ResumeAttempt] = []
    chunks = re.split(r"(?=^- \*\*Resumed at:\*\*)", body, flags=re.MULTILINE)
    for chunk in chunks:
        resumed = _field(chunk, "Resumed at")
        if not resumed:
            continue
        iterations = _field(chunk, "Iterations in this attempt")
        attempts.append(
            ResumeAttempt(
                resumed_at=resumed,
                status=_field(chunk, "Status") or "in_progress",
                iterations=int(iterations) if iterations.isdigit() else 0,
                finished_at=_field(chunk, "Completed at"),
            )
        )
    return attempts


# ── Rendering ───────────────────────────────────────────────────────


def _files_block(files: list[str]) -> str:
    return "\n".join(f"- `{f}`" for f in files) or "_None_"


def _tokens_line(input_tokens: int, output_tokens: int) -> str:
    if not input_tokens and not output_tokens:
        return ""
    total = input_tokens + output_tokens
    return f"\n- **Tokens used:** {total:,} (input: {input_tokens:,} / output: {output_tokens:,})"


def _attempts_block(snapshot: BlockedSnapshot) -> str:
    entries: list[str] = []
    for attempt in snapshot.attempt_history:
        lines = [
            f"- **Resumed at:** {attempt.resumed_at}",
            f"- **Previous attempt:** Iteration {snapshot.previous_iteration}, blocked at {snapshot.blocked_at}",
        ]
        if attempt.finished_at:
            lines.append(f"- **Completed at:** {attempt.finished_at}")
        lines.append(f"- **Status:** {attempt.status}")
        lines.append(f"- **Iterations in this attempt:** {attempt.iterations}")
        entries.append("\n".join(lines))
    return "\n\n".join(entries)


def render_blocked(snapshot: BlockedSnapshot, *, task_ref: str) -> str:
    section = f"""## Status: BLOCKED

### Execution Log
- **Started:** {snapshot.started_at}
- **Iterations:** {snapshot.previous_iteration}
- **Blocked at:** {snapshot.blocked_at}

### Blocking Issue
```
{snapshot.blocking_issue}
```

### Files Modified
{_files_block(snapshot.files_modified)}
"""
    if snapshot.attempt_history:
        section += f"\n### Resume Attempt History\n{_attempts_block(snapshot)}\n"
    section += f"\n---\n@developer: Review and provide guidance, then run `taskwave run --resume {task_ref}`\n"
    return section


def render_completed(
    *,
    started_at: str,
    completed_at: str,
    iterations: int,
    files: list[str],
    input_tokens: int = 0,
    output_tokens: int = 0,
) -> str:
    return f"""## Status: ✅ COMPLETED

### Execution Log
- **Started:** {started_at}
- **Completed:** {completed_at}
- **Iterations:** {iterations}
- **Files modified:** {len(files)}{_tokens_line(input_tokens, output_tokens)}

### Files Modified
{_files_block(files)}
"""


def render_failed(
    *,
    started_at: str,
    failed_at: str,
    iterations: int,
    error: str,
    files: list[str],
    input_tokens: int = 0,
    output_tokens: int = 0,
) -> str:
    return f"""## Status: ❌ FAILED

### Execution Log
- **Started:** {started_at}
- **Failed at:** {failed_at}
- **Iterations:** {iterations}{_tokens_line(input_tokens, output_tokens)}

### Error
```
{error or 'Unknown error'}
```

### Files Modified
{_files_block(files)}
"""


def render_execution_history(
    snapshot: BlockedSnapshot,
    *,
    completed_at: str,
    total_iterations: int,
    files_count: int,
) -> str:
    """History kept when a previously blocked task finally completes."""
    issue = snapshot.blocking_issue
    if len(issue) > 200:
        issue = issue[:200] + "..."
    resumed_at = snapshot.attempt_history[0].resumed_at if snapshot.attempt_history else "N/A"
    return f"""## Execution History

### Original Block
- **Started:** {snapshot.started_at}
- **Blocked at:** {snapshot.blocked_at}
- **Iterations before block:** {snapshot.previous_iteration}
- **Blocking issue:** {issue}

### Resume and Completion
- **Resumed at:** {resumed_at}
- **Completed at:** {completed_at}
- **Total iterations:** {total_iterations}
- **Files modified:** {files_count} files
"""


def _replace_section(content: str, heading_re: str, section: str) -> str | None:
    m = re.search(rf"^{heading_re}.*?(?=^## (?!#)|\Z)", content, re.MULTILINE | re.DOTALL)
    if not m:
        return None
    return content[: m.start()] + section.rstrip("\n") + "\n\n" + content[m.end():].lstrip("\n")


def replace_status_section(content: str, section: str) -> str:
    """Replace the ``## Status:`` section, or insert it after ``## Goal``."""
    replaced = _replace_section(content, r"## Status:", section)
    if replaced is not None:
        return replaced.rstrip("\n") + "\n"

    goal = re.search(r"^## Goal[ \t]*\n.*?(?=^## (?!#)|\Z)", content, re.MULTILINE | re.DOTALL)
    if goal:
        head = content[: goal.end()].rstrip("\n")
        rest = content[goal.end():].lstrip("\n")
        out = f"{head}\n\n{section.rstrip()}\n"
        return out + (f"\n{rest}" if rest else "")
    return content.rstrip("\n") + f"\n\n{section.rstrip()}\n"


def replace_history_section(content: str, section: str) -> str:
    replaced = _replace_section(content, r"## Execution History", section)
    if replaced is not None:
        return replaced.rstrip("\n") + "\n"
    return content.rstrip("\n") + f"\n\n{section.rstrip()}\n"


def write_status(path: Path, section: str, *, history: str = "") -> None:
    """Rewrite the status (and optional history) sections of *path* atomically."""
    content = read_text(path).replace("\r\n", "\n")
    content = replace_status_section(content, section)
    if history:
        content = replace_history_section(content, history)
    write_text_atomic(path, content)


# ── Location ────────────────────────────────────────────────────────


def status_dir_path(path: Path, status: TaskStatus) -> Path:
    """Where *path* lives once it reaches *status*.

    Files that do not live in a status directory stay where they are.
    """
    if status.value not in STATUS_DIRS or path.parent.name not in STATUS_DIRS:
        return path
    return path.parent.parent / status.value / path.name


def move_to_status_dir(path: Path, status: TaskStatus) -> Path:
    """Move *path* into the sibling ``<status>/`` directory."""
    target = status_dir_path(path, status)
    if target == path:
        return path
    target.parent.mkdir(parents=True, exist_ok=True)
    path.replace(target)
    return target


def resolve_task_path(ref: str, tasks_dir: Path, base_dir: Path | None = None) -> Path:
    """Locate a task referenced by name or path.

    Looks in ``pending/``, ``blocked/``, ``completed/`` and then ``tasks_dir``
    itself, so a plan keeps working after its tasks have moved.
    """
    candidate = Path(ref)
    if candidate.is_absolute() and candidate.is_file():
        return candidate
    if base_dir is not None and (base_dir / candidate).is_file():
        return base_dir / candidate

    name = candidate.name
    for folder in STATUS_DIRS:
        p = tasks_dir / folder / name
        if p.is_file():
            return p
    if (tasks_dir / name).is_file():
        return tasks_dir / name
    if candidate.is_file():
        return candidate
    raise ConfigError.missing(f"task file {ref}")


def list_tasks(tasks_dir: Path) -> dict[str, list[Path]]:
    """Task files grouped by status directory."""
    out: dict[str, list[Path]] = {}
    for folder in STATUS_DIRS:
        d = tasks_dir / folder
        out[folder] = sorted(d.glob("*.md")) if d.is_dir() else []
    return out
