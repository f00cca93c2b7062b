"""Validation gate: run configured shell commands after each iteration."""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path

from taskwave import log as _log

REPORT_OUTPUT_LIMIT = 5000


@dataclass
class CommandResult:
    command: str
    passed: bool
    exit_code: int
    output: str = ""
    duration_ms: int = 0


@dataclass
class ValidationSummary:
    passed: bool = True
    results: list[CommandResult] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def failed(self) -> CommandResult | None:
        for r in self.results:
            if not r.passed:
                return r
        return None


def run_command(command: str, cwd: Path, timeout: int = 300) -> CommandResult:
    """Run one shell command, capturing combined output."""
    start = time.monotonic()
    try:
        proc = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        partial = exc.stdout or ""
        if isinstance(partial, bytes):
            partial = partial.decode("utf-8", errors="replace")
        return CommandResult(
            command=command,
            passed=False,
            exit_code=-1,
            output=f"Command timed out after {timeout}s\n{partial}",
            duration_ms=int((time.monotonic() - start) * 1000),
        )
    except OSError as exc:
        return CommandResult(
            command=command,
            passed=False,
            exit_code=-1,
            output=f"Failed to execute: {exc}",
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    output = proc.stdout or ""
    if proc.stderr:
        output += f"\n--- stderr ---\n{proc.stderr}"
    return CommandResult(
        command=command,
        passed=proc.returncode == 0,
        exit_code=proc.returncode,
        output=output,
        duration_ms=int((time.monotonic() - start) * 1000),
    )


class Validator:
    """Runs validation commands in *cwd*, stopping at the first failure by default."""

    def __init__(
        self,
        cwd: Path,
        *,
        timeout: int = 300,
        stop_on_first: bool = True,
        logger: _log.Logger | None = None,
    ) -> None:
        self.cwd = cwd
        self.timeout = timeout
        self.stop_on_first = stop_on_first
        self.log = logger or _log.default_logger()

    def run(self, commands: list[str]) -> ValidationSummary:
        start = time.monotonic()
        results: list[CommandResult] = []
        for command in commands:
            self.log.debug(f"Validating: {command}")
            result = run_command(command, self.cwd, self.timeout)
            results.append(result)
            if not result.passed:
                self.log.warn(f"Validation failed: {command} (exit {result.exit_code})")
                if self.stop_on_first:
                    break
        return ValidationSummary(
            passed=all(r.passed for r in results),
            results=results,
            duration_ms=int((time.monotonic() - start) * 1000),
        )


def format_report(summary: ValidationSummary) -> str:
    """Markdown report of a validation run, output truncated per command."""
    icon = "✅" if summary.passed else "❌"
    lines = [
        f"## {icon} Validation",
        "",
        f"**Status:** {'PASSED' if summary.passed else 'FAILED'}",
        f"**Duration:** {summary.duration_ms / 1000:.2f}s",
        "",
    ]
    if not summary.results:
        lines.append("_No validation commands configured._")
        return "\n".join(lines) + "\n"

    lines += ["### Results", ""]
    for r in summary.results:
        lines.append(f"#### {'✅' if r.passed else '❌'} `{r.command}`")
        lines.append("")
        lines.append(f"- Exit code: {r.exit_code}")
        lines.append(f"- Duration: {r.duration_ms / 1000:.2f}s")
        if not r.passed or r.output.strip():
            body = r.output[:REPORT_OUTPUT_LIMIT]
            if len(r.output) > REPORT_OUTPUT_LIMIT:
                body += "\n... (truncated)"
            lines += ["", "```", body, "```"]
        lines.append("")
    return "\n".join(lines)
