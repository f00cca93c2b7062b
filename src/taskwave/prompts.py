"""Prompt construction for worker iterations."""

from __future__ import annotations

from dataclasses import dataclass, field

from taskwave.io_utils import tail
from taskwave.tasks.model import Task

PREVIOUS_OUTPUT_LIMIT = 2000


@dataclass
class Feedback:
    """What the previous iteration left for the next one to fix."""

    previous_output: str = ""
    scope_report: str = ""
    validation_report: str = ""
    worker_error: str = ""
    notes: list[str] = field(default_factory=list)

    def clear(self) -> None:
        self.scope_report = ""
        self.validation_report = ""
        self.worker_error = ""
        self.notes.clear()


@dataclass
class BlockingContext:
    previous_iteration: int
    blocking_issue: str
    files_modified: list[str]


def _bullets(items: list[str], empty: str = "_None_") -> str:
    return "\n".join(f"- `{i}`" for i in items) if items else empty


def _task_section(task: Task) -> str:
    parts = [f"### Goal\n\n{task.goal}"]
    if task.task_type:
        parts.append(f"### Task Type\n\n{task.task_type}")
    scope = task.scope
    scope_lines = [
        "**Allowed:**",
        _bullets(scope.allowed, "_Any path not forbidden_"),
        "",
        "**Forbidden:**",
        _bullets(scope.forbidden),
    ]
    if scope.ask_before:
        scope_lines += ["", "**Ask before modifying:**", _bullets(scope.ask_before)]
    parts.append("### Scope\n\n" + "\n".join(scope_lines))
    if task.requirements:
        parts.append(f"### Requirements\n\n{task.requirements}")
    if task.definition_of_done:
        dod = "\n".join(f"- [ ] {item}" for item in task.definition_of_done)
        parts.append(f"### Definition of Done\n\n{dod}")
    if task.notes:
        parts.append(f"### Notes\n\n{task.notes}")
    return "\n\n".join(parts)


def build_iteration_prompt(
    task: Task,
    iteration: int,
    feedback: Feedback | None = None,
    blocking: BlockingContext | None = None,
) -> str:
    """Assemble the prompt for one iteration."""
    out: list[str] = [f"# Autonomous Task Execution - Iteration {iteration}", ""]

    if blocking is not None:
        out += [
            "## Resuming Blocked Task",
            "",
            f"This task was previously blocked at iteration {blocking.previous_iteration}.",
            "",
            "### Previous Blocking Issue",
            "",
            blocking.blocking_issue,
            "",
            "### Files Modified in Previous Attempt",
            "",
            _bullets(blocking.files_modified),
            "",
            "**IMPORTANT**: Review the blocking issue above. Guidance has been provided. "
            "Continue from where it left off.",
            "",
            "---",
            "",
        ]

    out += [
        "You are executing a task autonomously. Follow the context below.",
        "",
        "## Current Task",
        "",
        _task_section(task),
        "",
    ]

    fb = feedback or Feedback()
    if fb.previous_output:
        out += [
            "## Previous Iteration Output",
            "",
            "```",
            tail(fb.previous_output, PREVIOUS_OUTPUT_LIMIT),
            "```",
            "",
        ]
    if fb.scope_report:
        out += ["## Previous Iteration Feedback", "", fb.scope_report, ""]
    if fb.validation_report:
        out += [
            "## Previous Iteration Feedback",
            "",
            "Validation failed after your previous iteration:",
            "",
            fb.validation_report,
            "",
            "Fix the validation errors before signalling completion.",
            "",
        ]
    if fb.worker_error:
        out += ["## Previous Iteration Error", "", "```", fb.worker_error, "```", ""]
    for note in fb.notes:
        out += [note, ""]

    out += [
        "## Execution Instructions",
        "",
        "1. Read the task requirements carefully",
        "2. Check the Definition of Done criteria",
        "3. Make necessary code changes",
        "4. Stay within the allowed scope",
        "5. When ALL Definition of Done criteria are met, output: <TASK_COMPLETE>",
        "6. If you encounter a blocker, output: <BLOCKED: reason>",
        "",
        "**IMPORTANT:** Only modify files within the allowed scope. "
        "Do NOT modify files in the forbidden scope.",
    ]
    return "\n".join(out) + "\n"
