"""taskwave CLI.

Installed as the ``taskwave`` console_script.

Exit codes: 0 every task completed, 1 at least one task failed, 3 tasks
blocked but none failed, 4 configuration error (2 is click's usage error).
"""

from __future__ import annotations

import contextlib
import sys
import threading
from pathlib import Path
from typing import Any, Callable

import click

from taskwave import __version__
from taskwave.scope import ScopeMode

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BLOCKED = 3
EXIT_CONFIG = 4

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


class TaskwaveGroup(click.Group):
    """Accept ``ls`` and ``show`` as aliases for ``status`` and ``waves``."""

    _ALIASES: dict[str, str] = {
        "ls": "status",
        "show": "waves",
    }

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        return super().get_command(ctx, self._ALIASES.get(cmd_name, cmd_name))


@click.group(cls=TaskwaveGroup, context_settings=CONTEXT_SETTINGS)
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, prog_name="taskwave")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """taskwave: scoped, iterative task execution in parallel waves.

    \b
    EXAMPLES:
      taskwave run .taskwave/tasks/pending/001-auth.md
      taskwave run --concurrency 2 a.md b.md c.md
      taskwave run --resume 001-auth.md
      taskwave plan PLAN.md
      taskwave waves PLAN.md
      taskwave status
    """
    from taskwave import log

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    log.set_verbose(verbose)


# ── Shared options ───────────────────────────────────────────────────


def _execution_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    options = [
        click.option("--concurrency", "-c", type=click.IntRange(min=1), default=None,
                     help="Max tasks running at once (default 3)"),
        click.option("--max-iterations", type=click.IntRange(min=1), default=None,
                     help="Iteration budget per task (default 50)"),
        click.option("--mode", "scope_mode", type=click.Choice([m.value for m in ScopeMode]),
                     default=None, help="Scope enforcement mode"),
        click.option("--resume", is_flag=True, default=None, help="Resume blocked tasks"),
        click.option("--dry-run", is_flag=True, default=None, help="Show waves without executing"),
        click.option("--continue-on-error", is_flag=True, default=None,
                     help="Start tasks even if their dependencies did not complete"),
        click.option("--worker", default=None, help="Worker CLI to use (claude, opencode)"),
        click.option("--model", "worker_model", default=None, help="Worker model override"),
        click.option("--no-commit", is_flag=True, default=False, help="Do not auto-commit changes"),
        click.option("--notify", is_flag=True, default=None, help="Desktop notification when done"),
        click.option("-v", "--verbose", is_flag=True, default=False, help="Show debug output"),
    ]
    for opt in reversed(options):
        fn = opt(fn)
    return fn


def _load_config(ctx: click.Context, **flags: Any) -> Any:
    """Load project config and apply CLI flag overrides.  Exits 4 on error."""
    from taskwave import log
    from taskwave.config import find_project_root, load_config
    from taskwave.errors import ConfigError

    verbose = flags.pop("verbose", False) or (ctx.obj or {}).get("verbose", False)
    no_commit = flags.pop("no_commit", False)
    # Unset flags arrive as None or False; neither overrides the file.
    overrides = {k: v for k, v in flags.items() if v is not None and v is not False}
    try:
        root = find_project_root()
        cfg = load_config(root).with_overrides(
            **overrides,
            auto_commit=False if no_commit else None,
            verbose=verbose or None,
        )
    except ConfigError as exc:
        log.error(str(exc))
        sys.exit(EXIT_CONFIG)
    log.set_verbose(cfg.verbose)
    return cfg


# ── Interaction ──────────────────────────────────────────────────────


_ask_lock = threading.Lock()
# Progress spinner of the running command, paused while prompting.
_live_status: Any = None


def ask_user(reason: str, files: list[str]) -> bool:
    """Confirm scope exceptions on the terminal, one prompt at a time."""
    from taskwave import log

    with _ask_lock:
        if not sys.stdin.isatty():
            log.warn(f"Not a TTY; rejecting: {reason}")
            return False
        if _live_status is not None:
            _live_status.stop()
        try:
            log.console.print(f"[yellow]Scope check:[/yellow] {reason}")
            for f in files:
                log.console.print(f"  - {f}")
            return click.confirm("Allow these changes?", default=False)
        finally:
            if _live_status is not None:
                _live_status.start()


def _progress_listener(status: Any) -> Callable[[Any], None]:
    from taskwave.events import PhaseEvent, WaveEvent

    def _listen(event: Any) -> None:
        if isinstance(event, PhaseEvent):
            status.update(
                f"{event.task}: {event.phase} "
                f"({event.iteration}/{event.max_iterations}, {event.files_modified} files)"
            )
        elif isinstance(event, WaveEvent):
            label = "Retrying" if event.retry else f"Wave {event.wave}"
            status.update(f"{label}: {', '.join(event.tasks)}")

    return _listen


# ── Execution ────────────────────────────────────────────────────────


def _build_scheduler(cfg: Any) -> Any:
    from taskwave import log
    from taskwave.events import EventChannel
    from taskwave.executor import ExecutorOptions
    from taskwave.git_ops import GitWorkspace, is_repo
    from taskwave.notify import on_event
    from taskwave.scheduler import ParallelScheduler, SchedulerOptions
    from taskwave.workers.registry import get_worker

    root = Path(cfg.project_root or ".")
    probe = get_worker(cfg.worker, model=cfg.worker_model)
    if not cfg.dry_run:
        err = probe.check_available()
        if err:
            log.error(err)
            sys.exit(EXIT_CONFIG)

    workspace = None
    if is_repo(root):
        workspace = GitWorkspace(root)
    else:
        log.warn(f"{root} is not a git repository; file changes will not be tracked")

    logger = log.default_logger()
    events = EventChannel(logger)
    if cfg.notify:
        events.subscribe(on_event)

    return ParallelScheduler(
        lambda _task: get_worker(cfg.worker, model=cfg.worker_model),
        options=SchedulerOptions(
            concurrency=cfg.concurrency,
            continue_on_error=cfg.continue_on_error,
            dry_run=cfg.dry_run,
            validation_timeout=cfg.validation_timeout,
            executor=ExecutorOptions.from_config(cfg),
        ),
        workspace=workspace,
        ask_user=ask_user,
        logger=logger,
        events=events,
        cwd=root,
    )


def _execute(cfg: Any, start: Callable[[Any], Any]) -> None:
    """Run *start(scheduler)*, print the summary and exit with the run's code."""
    from taskwave import log
    from taskwave.errors import ConfigError
    from taskwave.summary import show_summary

    _show_banner(cfg)
    scheduler = _build_scheduler(cfg)

    spinner: Any = contextlib.nullcontext()
    if log.console.is_terminal and not cfg.dry_run:
        spinner = log.console.status("Starting...")
    global _live_status
    try:
        with spinner as status:
            if status is not None:
                _live_status = status
                scheduler.events.subscribe(_progress_listener(status))
            result = start(scheduler)
    except ConfigError as exc:
        log.error(str(exc))
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        log.warn("Interrupted!")
        sys.exit(EXIT_FAILED)
    finally:
        _live_status = None

    if result.dry_run:
        from taskwave.summary import show_waves

        show_waves(result.graph, "Planned waves (dry run)")
        sys.exit(EXIT_OK)

    show_summary(result, cfg.worker)
    sys.exit(exit_code(result))


def exit_code(result: Any) -> int:
    if result.failed:
        return EXIT_FAILED
    if result.blocked:
        return EXIT_BLOCKED
    return EXIT_OK


def _show_banner(cfg: Any) -> None:
    from taskwave import log

    worker_display = {
        "claude": "[magenta]Claude Code[/magenta]",
        "opencode": "[cyan]OpenCode[/cyan]",
    }.get(cfg.worker, cfg.worker)

    parts: list[str] = [f"scope:{cfg.scope_mode}", f"parallel:{cfg.concurrency}",
                        f"max:{cfg.max_iterations}"]
    if cfg.dry_run:
        parts.append("dry-run")
    if cfg.resume:
        parts.append("resume")
    if cfg.continue_on_error:
        parts.append("continue-on-error")
    if not cfg.auto_commit:
        parts.append("no-commit")

    log.console.print("[bold]============================================[/bold]")
    log.console.print(f"[bold]taskwave[/bold] {__version__}")
    log.console.print(f"Worker: {worker_display}")
    log.console.print(f"Mode: [yellow]{' '.join(parts)}[/yellow]")
    log.console.print("[bold]============================================[/bold]")


# ── Commands ─────────────────────────────────────────────────────────


@main.command()
@click.argument("task_files", nargs=-1, required=True)
@_execution_options
@click.pass_context
def run(ctx: click.Context, task_files: tuple[str, ...], **flags: Any) -> None:
    """Run one or more task files as a batch.

    Tasks whose allowed scopes overlap are placed in successive waves;
    the rest run in parallel.
    """
    from taskwave import log
    from taskwave.errors import ConfigError
    from taskwave.tasks.io import parse_task, resolve_task_path

    cfg = _load_config(ctx, **flags)
    try:
        paths = [resolve_task_path(ref, cfg.tasks_dir, Path.cwd()) for ref in task_files]
        tasks = [parse_task(p) for p in dict.fromkeys(paths)]
    except ConfigError as exc:
        log.error(str(exc))
        sys.exit(EXIT_CONFIG)

    _execute(cfg, lambda sched: sched.run(tasks))


@main.command()
@click.argument("plan_file", type=click.Path(dir_okay=False, path_type=Path))
@_execution_options
@click.pass_context
def plan(ctx: click.Context, plan_file: Path, **flags: Any) -> None:
    """Execute the tasks listed in a plan document, wave by wave.

    \b
    Task lines look like:
      - [ ] `001-models.md` — data models (wave: 1)
      - [ ] `002-api.md` — endpoints (depends: 001-models.md)
    """
    from taskwave import log
    from taskwave.errors import ConfigError
    from taskwave.plan import parse_plan

    cfg = _load_config(ctx, **flags)
    try:
        parsed = parse_plan(plan_file, cfg.tasks_dir)
    except ConfigError as exc:
        log.error(str(exc))
        sys.exit(EXIT_CONFIG)

    if parsed.overview:
        log.info(parsed.overview.splitlines()[0][:200])
    _execute(cfg, lambda sched: sched.run_plan(parsed))


@main.command()
@click.argument("plan_file", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def waves(ctx: click.Context, plan_file: Path) -> None:
    """Print the dependencies and waves computed for a plan."""
    from taskwave import log
    from taskwave.errors import ConfigError
    from taskwave.plan import parse_plan
    from taskwave.scheduler import batch_graph
    from taskwave.summary import show_waves
    from taskwave.tasks.io import parse_task

    cfg = _load_config(ctx)
    try:
        parsed = parse_plan(plan_file, cfg.tasks_dir)
        tasks = [parse_task(pt.path) for pt in parsed.tasks if not pt.completed]
        graph = batch_graph(
            tasks,
            depends={pt.filename: pt.depends_on for pt in parsed.tasks},
            waves={pt.filename: pt.wave for pt in parsed.tasks if pt.wave},
            completed=[pt.filename for pt in parsed.tasks if pt.completed],
        )
    except ConfigError as exc:
        log.error(str(exc))
        sys.exit(EXIT_CONFIG)

    show_waves(graph, parsed.name)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """List tasks by status directory."""
    from rich.markup import escape

    from taskwave import log
    from taskwave.errors import ConfigError
    from taskwave.tasks.io import list_tasks, parse_task

    cfg = _load_config(ctx)
    groups = list_tasks(cfg.tasks_dir)
    if not any(groups.values()):
        log.warn(f"No tasks found under {cfg.tasks_dir}")
        return

    styles = {"pending": "cyan", "blocked": "yellow", "completed": "green"}
    for folder, paths in groups.items():
        style = styles.get(folder, "white")
        log.console.print(f"[bold {style}]{folder.upper()}[/bold {style}] ({len(paths)})")
        for p in paths:
            try:
                goal = parse_task(p).goal.splitlines()[0]
            except (ConfigError, IndexError):
                goal = "[dim](unreadable)[/dim]"
            else:
                goal = escape(goal[:70])
            log.console.print(f"  - {escape(p.name)}: {goal}")
