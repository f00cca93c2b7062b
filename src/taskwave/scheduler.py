"""Wave scheduler for running a batch of tasks in parallel.

Usage::

    sched = ParallelScheduler(worker_factory, options=opts, workspace=ws)
    result = sched.run(tasks)            # ad-hoc batch
    result = sched.run_plan(plan)        # plan document, checkboxes updated

Tasks are grouped into waves (see ``taskwave.graph``).  Each wave runs on a
thread pool bounded by ``concurrency``; the next wave starts only after the
current one, and its conflict retries, have finished.  Conflict losers that
failed are retried one at a time after the wave; losers that finished keep
their result.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable

from taskwave import log as _log
from taskwave.errors import GitError
from taskwave.events import EventChannel, RunFinishedEvent, WaveEvent
from taskwave.executor import (
    AskUserHandler,
    Executor,
    ExecutorOptions,
    ExecutorResult,
    ExecutorStatus,
)
from taskwave.git_ops import GitWorkspace
from taskwave.graph import DependencyGraph, GraphNode, TaskDependency, Wave, build_dependency_graph
from taskwave.plan import ParsedPlan, mark_task_completed
from taskwave.tasks import io as task_io
from taskwave.tasks.io import parse_task
from taskwave.tasks.model import Task, TaskStatus, now_iso
from taskwave.validator import Validator
from taskwave.workers.base import Worker

WorkerFactory = Callable[[Task], Worker]


@dataclass
class SchedulerOptions:
    concurrency: int = 3
    continue_on_error: bool = False
    dry_run: bool = False
    validation_timeout: int = 300
    executor: ExecutorOptions = field(default_factory=ExecutorOptions)


@dataclass
class TaskRun:
    """Outcome of one task within a scheduling run."""

    task: str
    wave: int
    result: ExecutorResult
    retried: bool = False
    duration_s: float = 0.0


@dataclass
class ParallelExecutionResult:
    completed: int = 0
    failed: int = 0
    blocked: int = 0
    skipped: int = 0
    results: list[TaskRun] = field(default_factory=list)
    dependencies: list[TaskDependency] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    waves: list[Wave] = field(default_factory=list)
    total_iterations: int = 0
    files_modified: list[str] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    dry_run: bool = False
    graph: DependencyGraph | None = None

    @property
    def success(self) -> bool:
        return self.failed == 0 and self.blocked == 0


def _failed(task_id: str, error: str, path: Path | None = None) -> ExecutorResult:
    return ExecutorResult(task=task_id, status=ExecutorStatus.FAILED, error=error, task_path=path)


def find_conflicts(ordered: list[tuple[str, list[str]]]) -> tuple[list[str], dict[str, list[str]]]:
    """Detect paths touched by more than one task.

    *ordered* is ``(task, files)`` in wave order.  Returns the losers (every
    toucher after the first, in wave order) and ``path -> tasks`` for each
    contested path.
    """
    owners: dict[str, list[str]] = {}
    for task_id, files in ordered:
        for f in dict.fromkeys(files):
            owners.setdefault(f, []).append(task_id)
    contested = {f: ts for f, ts in owners.items() if len(ts) > 1}
    losers: list[str] = []
    for task_id, _ in ordered:
        if any(task_id in ts[1:] for ts in contested.values()):
            losers.append(task_id)
    return losers, contested


def batch_graph(
    tasks: list[Task],
    *,
    depends: dict[str, list[str]] | None = None,
    waves: dict[str, int] | None = None,
    completed: list[str] | None = None,
) -> DependencyGraph:
    """Dependency graph for a batch of loaded tasks.

    *completed* names tasks that finished before this run and have no loaded
    record (checked-off plan lines).  Tasks whose own status is completed are
    skipped as well.
    """
    depends = depends or {}
    waves = waves or {}
    nodes = [
        GraphNode(
            id=t.id,
            allowed=list(t.scope.allowed),
            depends_on=list(depends.get(t.id, [])),
            wave=waves.get(t.id),
            completed=t.status == TaskStatus.COMPLETED,
        )
        for t in tasks
    ]
    known = {n.id for n in nodes}
    for task_id in completed or []:
        if task_id not in known:
            nodes.append(GraphNode(id=task_id, completed=True))
    return build_dependency_graph(nodes)


class ParallelScheduler:
    """Runs tasks wave by wave with bounded concurrency."""

    def __init__(
        self,
        worker_factory: WorkerFactory,
        *,
        options: SchedulerOptions | None = None,
        workspace: GitWorkspace | None = None,
        ask_user: AskUserHandler | None = None,
        logger: _log.Logger | None = None,
        events: EventChannel | None = None,
        cwd: Path | None = None,
    ) -> None:
        self.worker_factory = worker_factory
        self.options = options or SchedulerOptions()
        self.workspace = workspace
        self.ask_user = ask_user
        self.log = logger or _log.default_logger()
        self.events = events or EventChannel(self.log)
        self.cwd = cwd or (workspace.cwd if workspace else Path.cwd())
        self._color_index: dict[str, int] = {}

    # ── entry points ─────────────────────────────────────────────

    def run(
        self,
        tasks: list[Task],
        *,
        depends: dict[str, list[str]] | None = None,
        waves: dict[str, int] | None = None,
        completed: list[str] | None = None,
        on_complete: Callable[[str], None] | None = None,
    ) -> ParallelExecutionResult:
        """Run *tasks*.  Raises ``ConfigError``/``CycleError`` before any task starts."""
        graph = batch_graph(tasks, depends=depends, waves=waves, completed=completed)
        by_id = {t.id: t for t in tasks}
        self._color_index = {tid: i for i, tid in enumerate(graph.order)}

        result = ParallelExecutionResult(
            dependencies=list(graph.dependencies),
            waves=list(graph.waves),
            skipped=len(graph.skipped),
            dry_run=self.options.dry_run,
            graph=graph,
        )
        self._log_plan(graph)

        if self.options.dry_run:
            self.log.warn("[DRY RUN] No tasks will be executed.")
            return result

        runs: dict[str, TaskRun] = {}
        done = set(graph.skipped)
        for wave in graph.waves:
            runnable: list[Task] = []
            for task_id in wave.tasks:
                missing = self._unmet_dependency(graph, task_id, done)
                if missing:
                    self.log.warn(f"Skipping {task_id}: dependency {missing} did not complete")
                    skipped = _failed(
                        task_id, f"dependency {missing} did not complete", by_id[task_id].path
                    )
                    self._write_failed(skipped.task_path, skipped, now_iso())
                    runs[task_id] = TaskRun(task=task_id, wave=wave.number, result=skipped)
                    continue
                runnable.append(by_id[task_id])

            self._run_wave(wave.number, runnable, runs, result)

            for task_id in wave.tasks:
                run = runs.get(task_id)
                if run and run.result.success:
                    done.add(task_id)
                    if on_complete is not None:
                        on_complete(task_id)

        return self._finish(graph, runs, result)

    def run_plan(self, plan: ParsedPlan) -> ParallelExecutionResult:
        """Run the pending tasks of *plan*, ticking each completed task's checkbox."""
        tasks: list[Task] = []
        for pt in plan.tasks:
            if pt.completed:
                continue
            tasks.append(parse_task(pt.path))

        def _mark(task_id: str) -> None:
            pt = plan.task(task_id)
            if pt is None:
                return
            try:
                mark_task_completed(plan.path, pt.line_number)
            except OSError as exc:
                self.log.warn(f"Could not update plan {plan.path}: {exc}")

        self.log.info(f"Plan: {plan.name} ({len(plan.tasks)} tasks)")
        return self.run(
            tasks,
            depends={pt.filename: pt.depends_on for pt in plan.tasks},
            waves={pt.filename: pt.wave for pt in plan.tasks if pt.wave},
            completed=[pt.filename for pt in plan.tasks if pt.completed],
            on_complete=_mark,
        )

    # ── waves ────────────────────────────────────────────────────

    def _unmet_dependency(self, graph: DependencyGraph, task_id: str, done: set[str]) -> str:
        if self.options.continue_on_error:
            return ""
        for dep in graph.explicit_deps(task_id):
            if dep not in done:
                return dep
        return ""

    def _run_wave(
        self,
        number: int,
        tasks: list[Task],
        runs: dict[str, TaskRun],
        result: ParallelExecutionResult,
    ) -> None:
        if not tasks:
            return
        self.log.info(f"--- Wave {number} ({len(tasks)} task{'s' if len(tasks) != 1 else ''}) ---")
        self.events.emit(WaveEvent(wave=number, tasks=tuple(t.id for t in tasks)))
        batch = self._execute_batch(number, tasks)
        runs.update(batch)

        losers, contested = find_conflicts(
            [(t.id, batch[t.id].result.files_modified) for t in tasks]
        )
        if not losers:
            return
        self._record_conflicts(contested, result)

        # Only losers that failed are run again; finished work is kept.
        retry: list[Task] = []
        for t in tasks:
            if t.id not in losers:
                continue
            if batch[t.id].result.status == ExecutorStatus.FAILED:
                retry.append(t)
            else:
                self.log.warn(f"{t.id} finished despite the conflict; keeping its result")
        if not retry:
            return

        retry_ids = {t.id for t in retry}
        claimed: dict[str, str] = {}
        for t in tasks:
            if t.id not in retry_ids:
                for f in batch[t.id].result.files_modified:
                    claimed.setdefault(f, t.id)

        self.log.info(f"--- Retrying {len(retry)} conflicted task(s) one at a time ---")
        self.events.emit(WaveEvent(wave=number, tasks=tuple(t.id for t in retry), retry=True))
        for task in retry:
            first = batch[task.id]
            started_at = now_iso()
            run = self._execute_batch(number, [task], retried=True)[task.id]

            clash = [f for f in dict.fromkeys(run.result.files_modified) if f in claimed]
            for f in run.result.files_modified:
                claimed.setdefault(f, task.id)
            run.result = replace(
                run.result,
                files_modified=list(
                    dict.fromkeys([*first.result.files_modified, *run.result.files_modified])
                ),
                input_tokens=first.result.input_tokens + run.result.input_tokens,
                output_tokens=first.result.output_tokens + run.result.output_tokens,
            )
            run.duration_s += first.duration_s
            if clash:
                self._record_conflicts({f: [claimed[f], task.id] for f in clash}, result)
                self._fail_after_retry(task, run, clash, started_at)
            runs[task.id] = run

    def _fail_after_retry(self, task: Task, run: TaskRun, files: list[str], started_at: str) -> None:
        """Turn a retried task that conflicted again into a failure, record included.

        The task file gets a failed status and goes back to the directory the
        retry started from, so it never stays in ``completed/``.
        """
        error = f"file conflict after retry: {', '.join(sorted(files))}"
        self.log.error(f"{task.id}: conflicted again on {', '.join(sorted(files))}")
        run.result = replace(run.result, status=ExecutorStatus.FAILED, error=error)

        path = run.result.task_path or task.path
        self._write_failed(path, run.result, started_at)
        if path == task.path:
            return
        try:
            restored = task_io.move_to_status_dir(path, task_io.status_from_location(task.path))
        except OSError as exc:
            self.log.warn(f"Could not move task file {path}: {exc}")
            return
        run.result = replace(run.result, task_path=restored)
        opts = self.options.executor
        if opts.auto_commit and self.workspace is not None:
            try:
                self.workspace.commit(
                    [self._rel(path), self._rel(restored)],
                    f"{opts.commit_prefix} mark {task.name} failed",
                )
            except GitError as exc:
                self.log.debug(f"Task move not committed: {exc}")

    def _write_failed(self, path: Path | None, res: ExecutorResult, started_at: str) -> None:
        if path is None:
            return
        section = task_io.render_failed(
            started_at=started_at,
            failed_at=now_iso(),
            iterations=res.iterations,
            error=res.error,
            files=res.files_modified,
            input_tokens=res.input_tokens,
            output_tokens=res.output_tokens,
        )
        try:
            task_io.write_status(path, section)
        except OSError as exc:
            self.log.warn(f"Could not update task file {path}: {exc}")

    def _rel(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self.cwd.resolve()).as_posix()
        except ValueError:
            return str(path)

    def _record_conflicts(self, contested: dict[str, list[str]], result: ParallelExecutionResult) -> None:
        for path, owners in contested.items():
            self.log.warn(f"File conflict: {path} (modified by {', '.join(owners)})")
            if path not in result.conflicts:
                result.conflicts.append(path)

    def _execute_batch(self, wave: int, tasks: list[Task], *, retried: bool = False) -> dict[str, TaskRun]:
        out: dict[str, TaskRun] = {}
        workers = max(1, min(self.options.concurrency, len(tasks)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="taskwave") as pool:
            futures = {pool.submit(self._execute_one, t): t for t in tasks}
            for future in as_completed(futures):
                task = futures[future]
                try:
                    res, elapsed = future.result()
                except Exception as exc:
                    self.log.error(f"{task.id}: {exc}")
                    res, elapsed = _failed(task.id, str(exc), task.path), 0.0
                out[task.id] = TaskRun(
                    task=task.id, wave=wave, result=res, retried=retried, duration_s=elapsed
                )
        return out

    def _execute_one(self, task: Task) -> tuple[ExecutorResult, float]:
        logger = self.log.child(task.name, self._color_index.get(task.id, 0))
        opts = self.options.executor
        if opts.resume and not task.is_blocked:
            opts = replace(opts, resume=False)
        validator = None
        if opts.validation_commands:
            validator = Validator(self.cwd, timeout=self.options.validation_timeout, logger=logger)

        executor = Executor(
            task,
            self.worker_factory(task),
            options=opts,
            workspace=self.workspace,
            validator=validator,
            ask_user=self.ask_user,
            logger=logger,
            events=self.events,
            cwd=self.cwd,
        )
        start = time.monotonic()
        res = executor.run()
        elapsed = time.monotonic() - start
        label = res.status.value.upper()
        logger.info(
            f"Finished: {label} ({res.iterations} iterations, {len(res.files_modified)} files)"
        )
        return res, elapsed

    # ── aggregation ──────────────────────────────────────────────

    def _log_plan(self, graph: DependencyGraph) -> None:
        for dep in graph.dependencies:
            if dep.kind == "implicit":
                self.log.warn(f"{dep.task} waits for {', '.join(dep.depends_on)} ({dep.reason})")
            else:
                self.log.debug(f"{dep.task} depends on {', '.join(dep.depends_on)}")
        for wave in graph.waves:
            self.log.info(f"Wave {wave.number}: {', '.join(wave.tasks)}")
        if graph.skipped:
            self.log.info(f"Already completed: {', '.join(graph.skipped)}")

    def _finish(
        self,
        graph: DependencyGraph,
        runs: dict[str, TaskRun],
        result: ParallelExecutionResult,
    ) -> ParallelExecutionResult:
        files: dict[str, None] = {}
        for task_id in graph.order:
            run = runs.get(task_id)
            if run is None:
                continue
            result.results.append(run)
            match run.result.status:
                case ExecutorStatus.COMPLETED:
                    result.completed += 1
                case ExecutorStatus.BLOCKED:
                    result.blocked += 1
                case _:
                    result.failed += 1
            result.total_iterations += run.result.iterations
            result.input_tokens += run.result.input_tokens
            result.output_tokens += run.result.output_tokens
            for f in run.result.files_modified:
                files[f] = None
        result.files_modified = list(files)

        self.events.emit(
            RunFinishedEvent(
                success=result.success,
                completed=result.completed,
                failed=result.failed,
                blocked=result.blocked,
                skipped=result.skipped,
                conflicts=tuple(result.conflicts),
            )
        )
        return result
