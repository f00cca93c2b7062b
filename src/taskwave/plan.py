"""Plan documents: a markdown checklist of task files grouped into waves.

A plan looks like::

    # PLAN: Billing rewrite

    ## Overview

    Free text.

    ## Tasks

    - [ ] `001-models.md` — data models (wave: 1)
    - [x] `002-api.md` — REST endpoints (depends: 001-models.md)
    - [ ] `003-ui.md` - screens (wave: 2, depends: 001-models, 002-api.md)

``—``, ``–`` and ``-`` are all accepted as separators.  Dependencies may omit
the ``.md`` suffix.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from taskwave.errors import ConfigError
from taskwave.graph import DependencyGraph, GraphNode, build_dependency_graph
from taskwave.io_utils import read_text, write_text_atomic
from taskwave.tasks.io import resolve_task_path

TASK_LINE_RE = re.compile(
    r"^- \[([ xX])\]\s+`([^`]+\.md)`\s+[—–-]\s+(.+?)(?:\s+\(([^)]+)\))?\s*$"
)
_WAVE_RE = re.compile(r"wave:\s*(\d+)", re.IGNORECASE)
_DEPENDS_RE = re.compile(r"depends?:\s*(.+)", re.IGNORECASE)
_NAME_RE = re.compile(r"^#\s+(?:PLAN:\s*)?(.+)")


@dataclass
class PlanTask:
    filename: str
    description: str
    path: Path
    wave: int | None = None
    depends_on: list[str] = field(default_factory=list)
    completed: bool = False
    line_number: int = 0  # 1-based


@dataclass
class ParsedPlan:
    path: Path
    name: str
    overview: str
    tasks: list[PlanTask]
    graph: DependencyGraph

    def task(self, filename: str) -> PlanTask | None:
        for t in self.tasks:
            if t.filename == filename:
                return t
        return None


def _dep_name(raw: str) -> str:
    name = Path(raw.strip().strip("`")).name
    return name if name.endswith(".md") else f"{name}.md"


def _extract_name(lines: list[str]) -> str:
    for line in lines:
        m = _NAME_RE.match(line)
        if m:
            return m.group(1).strip()
    return "Unnamed Plan"


def _extract_overview(lines: list[str]) -> str:
    out: list[str] = []
    inside = False
    for line in lines:
        if re.match(r"^##\s+Overview", line, re.IGNORECASE):
            inside = True
            continue
        if inside:
            if line.startswith("## "):
                break
            out.append(line)
    return "\n".join(out).strip()


def parse_plan_tasks(content: str, tasks_dir: Path, base_dir: Path | None = None) -> list[PlanTask]:
    """Extract task lines from plan *content*."""
    tasks: list[PlanTask] = []
    for i, line in enumerate(content.splitlines(), start=1):
        m = TASK_LINE_RE.match(line.rstrip())
        if not m:
            continue
        check, ref, description, meta = m.groups()

        wave: int | None = None
        depends: list[str] = []
        if meta:
            wm = _WAVE_RE.search(meta)
            if wm:
                wave = int(wm.group(1))
            dm = _DEPENDS_RE.search(meta)
            if dm:
                depends = [_dep_name(d) for d in dm.group(1).split(",") if d.strip()]

        try:
            path = resolve_task_path(ref, tasks_dir, base_dir)
        except ConfigError:
            path = tasks_dir / "pending" / Path(ref).name

        tasks.append(
            PlanTask(
                filename=Path(ref).name,
                description=description.strip(),
                path=path,
                wave=wave if wave and wave > 0 else None,
                depends_on=list(dict.fromkeys(depends)),
                completed=check.lower() == "x",
                line_number=i,
            )
        )
    return tasks


def plan_graph(tasks: list[PlanTask]) -> DependencyGraph:
    """Dependency graph over plan tasks; raises ``CycleError``/``ConfigError``.

    Scope overlap needs the task files themselves, so implicit edges are
    added by the scheduler once the tasks are loaded.
    """
    return build_dependency_graph(
        [
            GraphNode(id=t.filename, depends_on=t.depends_on, wave=t.wave, completed=t.completed)
            for t in tasks
        ]
    )


def parse_plan(plan_path: Path, tasks_dir: Path) -> ParsedPlan:
    """Parse a plan file and validate its explicit dependencies."""
    if not plan_path.is_file():
        raise ConfigError.missing(f"plan file {plan_path}")
    content = read_text(plan_path).replace("\r\n", "\n")
    lines = content.split("\n")
    tasks = parse_plan_tasks(content, tasks_dir, base_dir=plan_path.parent)
    if not tasks:
        raise ConfigError.invalid("plan", f"no task lines found in {plan_path}")
    return ParsedPlan(
        path=plan_path,
        name=_extract_name(lines),
        overview=_extract_overview(lines),
        tasks=tasks,
        graph=plan_graph(tasks),
    )


def mark_task_completed(plan_path: Path, line_number: int) -> bool:
    """Flip the checkbox on *line_number* (1-based) to ``[x]``."""
    lines = read_text(plan_path).split("\n")
    idx = line_number - 1
    if not 0 <= idx < len(lines) or "- [ ]" not in lines[idx]:
        return False
    lines[idx] = lines[idx].replace("- [ ]", "- [x]", 1)
    write_text_atomic(plan_path, "\n".join(lines))
    return True
