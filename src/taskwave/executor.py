"""Iteration executor: drive one task to completed, blocked or failed.

Each iteration runs the worker, checks the resulting file changes against
the task scope, runs the validation commands, commits what passed and then
looks at the worker's completion signal.  Iteration-level problems (scope
violations, validation failures, retryable worker errors) are fed back into
the next prompt and counted against ``max_consecutive_failures``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from taskwave import log as _log
from taskwave.config import Config
from taskwave.errors import ConfigError, GitError, IterationTimeout, TaskwaveError
from taskwave.events import EventChannel, IterationEvent, PhaseEvent, TaskFinishedEvent
from taskwave.git_ops import GitWorkspace
from taskwave.prompts import BlockingContext, Feedback, build_iteration_prompt
from taskwave.scope import Allow, AskUser, Block, FileChange, ScopeGuard, ScopeMode
from taskwave.signals import SignalKind
from taskwave.tasks import io as task_io
from taskwave.tasks.model import BlockedSnapshot, ResumeAttempt, Task, TaskStatus, now_iso
from taskwave.validator import Validator, format_report
from taskwave.worker_errors import classify_worker_error
from taskwave.workers.base import Worker, WorkerResult

AskUserHandler = Callable[[str, list[str]], bool]


class ExecutorStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass
class ExecutorOptions:
    max_iterations: int = 50
    max_consecutive_failures: int = 3
    timeout_per_iteration: int = 300
    scope_mode: ScopeMode = ScopeMode.ASK
    auto_commit: bool = True
    auto_push: bool = False
    commit_prefix: str = "taskwave:"
    validation_commands: list[str] = field(default_factory=list)
    resume: bool = False

    @classmethod
    def from_config(cls, cfg: Config) -> ExecutorOptions:
        return cls(
            max_iterations=cfg.max_iterations,
            max_consecutive_failures=cfg.max_consecutive_failures,
            timeout_per_iteration=cfg.timeout_per_iteration,
            scope_mode=ScopeMode(cfg.scope_mode),
            auto_commit=cfg.auto_commit,
            auto_push=cfg.auto_push,
            commit_prefix=cfg.commit_prefix,
            validation_commands=list(cfg.validation_commands),
            resume=cfg.resume,
        )


@dataclass
class ExecutorState:
    status: ExecutorStatus = ExecutorStatus.IDLE
    iteration: int = 0
    consecutive_failures: int = 0
    files_modified: list[str] = field(default_factory=list)
    last_error: str = ""
    started_at: str = ""
    completed_at: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    blocked: BlockedSnapshot | None = None

    def add_files(self, paths: list[str]) -> None:
        for p in paths:
            if p not in self.files_modified:
                self.files_modified.append(p)


@dataclass
class ExecutorResult:
    task: str
    status: ExecutorStatus
    iterations: int = 0
    files_modified: list[str] = field(default_factory=list)
    error: str = ""
    blocked_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    task_path: Path | None = None

    @property
    def success(self) -> bool:
        return self.status == ExecutorStatus.COMPLETED


class Executor:
    """Runs one task through the iteration loop.

    Collaborators are injected so the loop can be exercised without a real
    worker, repository or terminal.
    """

    def __init__(
        self,
        task: Task,
        worker: Worker,
        *,
        options: ExecutorOptions | None = None,
        workspace: GitWorkspace | None = None,
        validator: Validator | None = None,
        ask_user: AskUserHandler | None = None,
        logger: _log.Logger | None = None,
        events: EventChannel | None = None,
        cwd: Path | None = None,
    ) -> None:
        self.task = task
        self.worker = worker
        self.options = options or ExecutorOptions()
        self.workspace = workspace
        self.validator = validator
        self.ask_user = ask_user
        self.log = logger or _log.default_logger()
        self.events = events or EventChannel(self.log)
        self.cwd = cwd or (workspace.cwd if workspace else Path.cwd())

        self.guard = ScopeGuard(task.scope, self.options.scope_mode)
        self.state = ExecutorState()
        self.feedback = Feedback()
        self._blocking: BlockingContext | None = None
        self._attempt: ResumeAttempt | None = None
        self._prior: BlockedSnapshot | None = None
        self._uncommitted: dict[str, FileChange] = {}
        self._task_path = task.path

    # ── public ───────────────────────────────────────────────────

    def run(self) -> ExecutorResult:
        self._prepare()
        self.state.status = ExecutorStatus.RUNNING
        self.log.info(f"Starting {self.task.id}: {self._short_goal()}")

        while self.state.status == ExecutorStatus.RUNNING:
            if self.state.iteration >= self.options.max_iterations:
                self._fail(f"Max iterations ({self.options.max_iterations}) reached")
                break

            outcome = self._iterate()
            if outcome is not None:
                break

            if self.state.consecutive_failures >= self.options.max_consecutive_failures:
                self._fail(
                    f"{self.state.consecutive_failures} consecutive failures. "
                    f"Last error: {self.state.last_error or 'unknown'}"
                )

        self.events.emit(
            TaskFinishedEvent(
                task=self.task.id,
                status=self.state.status.value,
                iterations=self.state.iteration,
                error=self.state.last_error if self.state.status == ExecutorStatus.FAILED else "",
            )
        )
        return self._result()

    # ── setup ────────────────────────────────────────────────────

    def _prepare(self) -> None:
        now = now_iso()
        self.state.started_at = now
        if not self.options.resume:
            return

        snapshot = self.task.blocked
        if not self.task.is_blocked or snapshot is None:
            raise ConfigError(
                f"Task {self.task.id} is not blocked; nothing to resume",
                code="not_blocked",
                context={"task": str(self.task.path)},
            )

        self._prior = snapshot
        self.state.iteration = snapshot.previous_iteration
        self.state.add_files(snapshot.files_modified)
        self.state.started_at = snapshot.started_at or now
        self._attempt = ResumeAttempt(resumed_at=now)
        self._blocking = BlockingContext(
            previous_iteration=snapshot.previous_iteration,
            blocking_issue=snapshot.blocking_issue,
            files_modified=list(snapshot.files_modified),
        )
        self.log.info(
            f"Resuming {self.task.id} from iteration {snapshot.previous_iteration + 1}"
        )
        # Persist the attempt before the first iteration.
        in_progress = BlockedSnapshot(
            previous_iteration=snapshot.previous_iteration,
            blocking_issue=snapshot.blocking_issue,
            files_modified=list(snapshot.files_modified),
            started_at=snapshot.started_at,
            blocked_at=snapshot.blocked_at,
            attempt_history=[*snapshot.attempt_history, self._attempt],
        )
        self._write_status(task_io.render_blocked(in_progress, task_ref=self._task_ref()))

    # ── iteration ────────────────────────────────────────────────

    def _phase(self, phase: str) -> None:
        self.events.emit(
            PhaseEvent(
                task=self.task.id,
                phase=phase,
                iteration=self.state.iteration,
                max_iterations=self.options.max_iterations,
                files_modified=len(self.state.files_modified),
            )
        )

    def _iterate(self) -> ExecutorStatus | None:
        """Run one iteration.  Returns the terminal status, or ``None`` to continue."""
        self.state.iteration += 1
        it = self.state.iteration
        self._phase("Starting iteration")
        self.log.debug(f"Iteration {it}/{self.options.max_iterations}")

        prompt = build_iteration_prompt(self.task, it, self.feedback, self._blocking)
        before = self.workspace.snapshot() if self.workspace else None

        self._phase("Executing worker")
        result, error = self._execute(prompt)
        if error is not None and not error.retryable:
            return self._fail(str(error))

        changes = self._changes(result, before)

        self._phase("Checking scope")
        if not self._check_scope(changes):
            self._emit_iteration("scope_rejected", changes)
            return None

        if error is not None:
            self._soft_failure(str(error))
            self.feedback.worker_error = str(error)
            self._hold(changes)
            self._emit_iteration("worker_error", changes)
            return None

        if self.validator is not None and self.options.validation_commands:
            self._phase("Validating")
            summary = self.validator.run(self.options.validation_commands)
            if not summary.passed:
                failed = summary.failed
                self._soft_failure(f"Validation failed: {failed.command if failed else 'unknown'}")
                self.feedback.validation_report = format_report(summary)
                self._hold(changes)
                self._emit_iteration("validation_failed", changes)
                return None

        if not self._commit(changes):
            self._emit_iteration("commit_failed", changes)
            return None

        self.state.consecutive_failures = 0
        self.feedback.clear()
        self._emit_iteration("ok", changes)

        match result.signal.kind:
            case SignalKind.COMPLETE:
                return self._complete()
            case SignalKind.BLOCKED:
                return self._block(result.signal.reason)
            case _:
                return None

    def _execute(self, prompt: str) -> tuple[WorkerResult, TaskwaveError | None]:
        try:
            result = self.worker.execute(
                prompt, cwd=self.cwd, timeout=self.options.timeout_per_iteration
            )
        except TaskwaveError as exc:
            return WorkerResult(error=str(exc)), exc

        self.state.input_tokens += result.input_tokens
        self.state.output_tokens += result.output_tokens
        if result.output:
            self.feedback.previous_output = result.output

        if result.timed_out:
            return result, IterationTimeout(self.options.timeout_per_iteration, self.state.iteration)
        if result.error:
            return result, classify_worker_error(
                self.worker.name,
                result.error,
                status_code=result.status_code,
                return_code=result.return_code,
            )
        return result, None

    def _changes(self, result: WorkerResult, before: dict | None) -> list[FileChange]:
        if result.file_changes is not None:
            return list(result.file_changes)
        if self.workspace is not None and before is not None:
            return self.workspace.changes_since(before)
        return []

    def _check_scope(self, changes: list[FileChange]) -> bool:
        decision = self.guard.validate(changes)
        match decision:
            case Allow(warnings=warnings):
                for w in warnings:
                    self.log.warn(f"Out of scope (permissive): {w}")
                return True
            case Block(reason=reason):
                self._reject(changes, f"Scope violation: {reason}")
                return False
            case AskUser(reason=reason, files=files):
                if self._ask(reason, list(files)):
                    self.guard.approve(files)
                    self.log.info(f"Approved: {', '.join(files)}")
                    return True
                self._reject(changes, f"Changes rejected by user: {reason}")
                return False
        return True

    def _ask(self, reason: str, files: list[str]) -> bool:
        if self.ask_user is None:
            return False
        return bool(self.ask_user(reason, files))

    def _reject(self, changes: list[FileChange], error: str) -> None:
        report = self.guard.violation_report(changes)
        to_revert = self.guard.files_to_revert(changes)
        reverted = {c.path for c in to_revert}
        if self.workspace is not None and to_revert:
            try:
                self.workspace.revert(to_revert)
            except GitError as exc:
                self.log.error(f"Could not revert out-of-scope changes: {exc}")
        self._hold([c for c in changes if c.path not in reverted])
        for path in reverted:
            self._uncommitted.pop(path, None)
        self.feedback.scope_report = report
        self._soft_failure(error)

    def _hold(self, changes: list[FileChange]) -> None:
        """Keep in-scope changes from a failed iteration for the next commit."""
        for c in changes:
            self._uncommitted[c.path] = c

    def _soft_failure(self, error: str) -> None:
        self.state.consecutive_failures += 1
        self.state.last_error = error
        self.log.warn(
            f"{error} ({self.state.consecutive_failures}/{self.options.max_consecutive_failures})"
        )

    def _commit(self, changes: list[FileChange]) -> bool:
        pending = dict(self._uncommitted)
        for c in changes:
            pending[c.path] = c
        paths = list(pending)

        if self.options.auto_commit and self.workspace is not None and paths:
            self._phase("Committing")
            message = f"{self.options.commit_prefix} {self._short_goal()}"
            try:
                if self.workspace.commit(paths, message):
                    self.log.debug(f"Committed: {message}")
            except GitError as exc:
                self._soft_failure(str(exc))
                self._hold(changes)
                return False

        self.state.add_files(paths)
        self._uncommitted.clear()
        return True

    def _emit_iteration(self, outcome: str, changes: list[FileChange]) -> None:
        self.events.emit(
            IterationEvent(
                task=self.task.id,
                iteration=self.state.iteration,
                outcome=outcome,
                files_changed=tuple(c.path for c in changes),
            )
        )

    # ── terminal states ──────────────────────────────────────────

    def _finish_attempt(self, status: str) -> None:
        if self._attempt is None or self._prior is None:
            return
        self._attempt.status = status
        self._attempt.finished_at = self.state.completed_at
        self._attempt.iterations = self.state.iteration - self._prior.previous_iteration

    def _complete(self) -> ExecutorStatus:
        self.state.status = ExecutorStatus.COMPLETED
        self.state.completed_at = now_iso()
        self._finish_attempt("completed")
        self.log.success(f"{self.task.id} completed in {self.state.iteration} iteration(s)")

        section = task_io.render_completed(
            started_at=self.state.started_at,
            completed_at=self.state.completed_at,
            iterations=self.state.iteration,
            files=self.state.files_modified,
            input_tokens=self.state.input_tokens,
            output_tokens=self.state.output_tokens,
        )
        history = ""
        if self._prior is not None:
            prior = BlockedSnapshot(
                previous_iteration=self._prior.previous_iteration,
                blocking_issue=self._prior.blocking_issue,
                files_modified=self._prior.files_modified,
                started_at=self._prior.started_at,
                blocked_at=self._prior.blocked_at,
                attempt_history=[*self._prior.attempt_history, self._attempt] if self._attempt else [],
            )
            history = task_io.render_execution_history(
                prior,
                completed_at=self.state.completed_at,
                total_iterations=self.state.iteration,
                files_count=len(self.state.files_modified),
            )
        self._write_status(section, history=history)
        self._relocate(TaskStatus.COMPLETED)

        if self.options.auto_push and self.workspace is not None:
            try:
                self.workspace.push()
                self.log.info("Pushed changes")
            except GitError as exc:
                self.log.warn(str(exc))
        return self.state.status

    def _block(self, reason: str) -> ExecutorStatus:
        self.state.status = ExecutorStatus.BLOCKED
        self.state.completed_at = now_iso()
        self.state.last_error = reason
        self._finish_attempt("blocked_again")
        self.log.warn(f"{self.task.id} blocked: {reason}")

        history = list(self._prior.attempt_history) if self._prior else []
        if self._attempt is not None:
            history.append(self._attempt)
        snapshot = BlockedSnapshot(
            previous_iteration=self.state.iteration,
            blocking_issue=reason,
            files_modified=list(self.state.files_modified),
            started_at=self.state.started_at,
            blocked_at=self.state.completed_at,
            attempt_history=history,
        )
        self.state.blocked = snapshot

        destination = task_io.status_dir_path(self._task_path, TaskStatus.BLOCKED)
        self._write_status(task_io.render_blocked(snapshot, task_ref=self._rel(destination)))
        self._relocate(TaskStatus.BLOCKED)
        return self.state.status

    def _fail(self, error: str) -> ExecutorStatus:
        self.state.status = ExecutorStatus.FAILED
        self.state.completed_at = now_iso()
        self.state.last_error = error
        self._finish_attempt("failed")
        self.log.error(f"{self.task.id} failed: {error}")

        self._write_status(
            task_io.render_failed(
                started_at=self.state.started_at,
                failed_at=self.state.completed_at,
                iterations=self.state.iteration,
                error=error,
                files=self.state.files_modified,
                input_tokens=self.state.input_tokens,
                output_tokens=self.state.output_tokens,
            )
        )
        return self.state.status

    def _write_status(self, section: str, *, history: str = "") -> None:
        try:
            task_io.write_status(self._task_path, section, history=history)
        except OSError as exc:
            self.log.warn(f"Could not update task file {self._task_path}: {exc}")

    def _relocate(self, status: TaskStatus) -> None:
        old = self._task_path
        try:
            new = task_io.move_to_status_dir(old, status)
        except OSError as exc:
            self.log.warn(f"Could not move task file {old}: {exc}")
            return
        if new == old:
            return
        self._task_path = new
        self.log.debug(f"Moved {old.name} to {new.parent.name}/")
        if self.options.auto_commit and self.workspace is not None:
            try:
                self.workspace.commit(
                    [self._rel(old), self._rel(new)],
                    f"{self.options.commit_prefix} mark {self.task.name} {status.value}",
                )
            except GitError as exc:
                self.log.debug(f"Task move not committed: {exc}")

    def _rel(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self.cwd.resolve()).as_posix()
        except ValueError:
            return str(path)

    def _task_ref(self) -> str:
        return self._rel(self._task_path)

    def _short_goal(self) -> str:
        goal = " ".join(self.task.goal.split())
        return goal[:50] + ("..." if len(goal) > 50 else "")

    def _result(self) -> ExecutorResult:
        blocked_reason = self.state.blocked.blocking_issue if self.state.blocked else ""
        return ExecutorResult(
            task=self.task.id,
            status=self.state.status,
            iterations=self.state.iteration,
            files_modified=list(self.state.files_modified),
            error=self.state.last_error if self.state.status == ExecutorStatus.FAILED else "",
            blocked_reason=blocked_reason,
            input_tokens=self.state.input_tokens,
            output_tokens=self.state.output_tokens,
            task_path=self._task_path,
        )
