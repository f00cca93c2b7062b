"""Console summaries for scheduling runs."""

from __future__ import annotations

from rich.markup import escape

from taskwave import log
from taskwave.executor import ExecutorStatus
from taskwave.graph import DependencyGraph
from taskwave.scheduler import ParallelExecutionResult

_RULE = "[bold]============================================[/bold]"

# Per-token pricing (USD) by worker.  Values are rough estimates.
_WORKER_PRICING: dict[str, tuple[float, float]] = {
    "claude": (0.000003, 0.000015),
    "opencode": (0.000003, 0.000015),
}

_STATUS_STYLE = {
    ExecutorStatus.COMPLETED: "[green]COMPLETED[/green]",
    ExecutorStatus.BLOCKED: "[yellow]BLOCKED[/yellow]",
    ExecutorStatus.FAILED: "[red]FAILED[/red]",
}


def estimate_cost(worker: str, input_tokens: int, output_tokens: int) -> float:
    """Return a rough USD cost estimate for the given worker and token counts."""
    inp_price, out_price = _WORKER_PRICING.get(worker, (0.000003, 0.000015))
    return (input_tokens * inp_price) + (output_tokens * out_price)


def format_duration(seconds: float) -> str:
    total = round(seconds)
    minutes, secs = divmod(total, 60)
    return f"{minutes}m {secs}s" if minutes else f"{secs}s"


def show_waves(graph: DependencyGraph, title: str = "") -> None:
    """Print dependencies and waves computed for a batch."""
    console = log.console
    console.print("")
    console.print(_RULE)
    if title:
        console.print(f"[bold]{escape(title)}[/bold]")
    console.print(f"Waves: {len(graph.waves)}  Pending: {len(graph.order)}  Completed: {len(graph.skipped)}")
    console.print(_RULE)
    for wave in graph.waves:
        console.print(f"  Wave {wave.number}: {escape(', '.join(wave.tasks))}")
    if graph.dependencies:
        console.print("")
        console.print("[bold]>>> Dependencies[/bold]")
        for dep in graph.dependencies:
            console.print(
                f"  {escape(dep.task)} -> {escape(', '.join(dep.depends_on))} "
                f"[dim]({dep.kind}: {escape(dep.reason)})[/dim]"
            )
    console.print(_RULE)


def show_summary(result: ParallelExecutionResult, worker: str = "claude") -> None:
    """Print the final run summary."""
    console = log.console
    total = result.completed + result.failed + result.blocked + result.skipped
    headline = "[green]All tasks complete![/green]" if result.success else "[red]Run incomplete.[/red]"

    console.print("")
    console.print(_RULE)
    console.print(f"{headline} {result.completed}/{total} task(s) completed.")
    console.print(_RULE)
    console.print(f"  Completed: {result.completed}")
    console.print(f"  Failed:    {result.failed}")
    console.print(f"  Blocked:   {result.blocked}")
    console.print(f"  Skipped:   {result.skipped}")
    console.print("")
    console.print(f"Total iterations:     {result.total_iterations}")
    console.print(f"Total files modified: {len(result.files_modified)}")
    console.print(f"File conflicts:       {len(result.conflicts)}")

    if result.results:
        console.print("")
        console.print("[bold]>>> Tasks[/bold]")
        for run in result.results:
            res = run.result
            retried = " [dim](retried)[/dim]" if run.retried else ""
            console.print(
                f"  {escape(run.task)}: {_STATUS_STYLE.get(res.status, res.status.value)}"
                f" | wave {run.wave} | {res.iterations} iterations"
                f" | {len(res.files_modified)} files | {format_duration(run.duration_s)}{retried}"
            )
            if res.error:
                console.print(f"    [red]Error:[/red] {escape(res.error)}")
            elif res.blocked_reason:
                console.print(f"    [yellow]Blocked:[/yellow] {escape(res.blocked_reason)}")

    if result.conflicts:
        console.print("")
        console.print("[bold]>>> File Conflicts[/bold]")
        for path in result.conflicts:
            console.print(f"  - {escape(path)}")

    console.print("")
    console.print("[bold]>>> Cost Summary[/bold]")
    console.print(f"Input tokens:  {result.input_tokens}")
    console.print(f"Output tokens: {result.output_tokens}")
    console.print(f"Total tokens:  {result.input_tokens + result.output_tokens}")
    cost = estimate_cost(worker, result.input_tokens, result.output_tokens)
    console.print(f"Est. cost:     ${cost:.4f}")
    console.print(_RULE)
