"""Base class for worker adapters (the external agent CLIs that do the edits)."""

from __future__ import annotations

import json
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from taskwave.scope import FileChange
from taskwave.signals import NO_SIGNAL, CompletionSignal, parse_signal
from taskwave.worker_errors import looks_like_policy_block, looks_like_rate_limit


@dataclass
class WorkerResult:
    """Uniform result from any worker invocation."""

    output: str = ""
    # None means the worker does not track edits; the executor diffs the tree.
    file_changes: list[FileChange] | None = None
    signal: CompletionSignal = field(default=NO_SIGNAL)
    error: str = ""
    timed_out: bool = False
    status_code: int | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0
    return_code: int = 0

    @property
    def ok(self) -> bool:
        return not self.error and not self.timed_out


class Worker(ABC):
    """Anything that can take a prompt and work in a directory."""

    name: str = "worker"

    @abstractmethod
    def execute(self, prompt: str, *, cwd: Path, timeout: int | None = None) -> WorkerResult:
        ...

    def check_available(self) -> str | None:
        return None


class CliWorker(Worker):
    """Worker backed by a CLI subprocess.  Subclasses implement ``build_cmd``."""

    @abstractmethod
    def build_cmd(self, prompt: str) -> list[str]:
        """Return the CLI command list for the given prompt."""
        ...

    @abstractmethod
    def parse_output(self, raw: str) -> WorkerResult:
        """Parse raw stdout into a :class:`WorkerResult`."""
        ...

    def env(self) -> dict[str, str] | None:
        return None

    def check_available(self) -> str | None:
        """Return an error message if the worker CLI is not available, else None."""
        cmd_name = self.build_cmd("test")[0]
        if not shutil.which(cmd_name):
            return f"{cmd_name} not found in PATH"
        return None

    def execute(self, prompt: str, *, cwd: Path, timeout: int | None = None) -> WorkerResult:
        """Run the worker synchronously and return the parsed result."""
        cmd = self.build_cmd(prompt)
        start = time.monotonic()

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
                env=self.env(),
            )
        except FileNotFoundError:
            return WorkerResult(error=f"{cmd[0]} not found in PATH", return_code=-1)

        try:
            stdout, stderr = _wait(proc, timeout)
        except subprocess.TimeoutExpired:
            _stop(proc)
            return WorkerResult(
                error=f"timeout after {timeout}s",
                timed_out=True,
                return_code=-1,
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        except KeyboardInterrupt:
            _stop(proc)
            raise

        stdout = stdout or ""
        result = self.parse_output(stdout)
        result.return_code = proc.returncode
        result.duration_ms = result.duration_ms or int((time.monotonic() - start) * 1000)
        if result.signal is NO_SIGNAL:
            result.signal = parse_signal(result.output)
        result.error = result.error or stream_error(stdout)

        # Some CLIs report argument/auth failures only on stderr with empty stdout.
        if proc.returncode != 0 and not result.error:
            first = (stderr or "").strip().splitlines()
            result.error = first[0] if first else f"exit code {proc.returncode}"
        return result


# ── subprocess helpers ───────────────────────────────────────────────


def _wait(proc: subprocess.Popen[str], timeout: int | None) -> tuple[str, str]:
    """``communicate`` in short slices so Ctrl-C reaches us while the worker runs."""
    if timeout is None:
        return proc.communicate()
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise subprocess.TimeoutExpired(proc.args, timeout)
        try:
            return proc.communicate(timeout=min(0.2, remaining))
        except subprocess.TimeoutExpired:
            continue


def _stop(proc: subprocess.Popen[str]) -> None:
    """Terminate, then kill if the worker ignores SIGTERM."""
    for signal_proc in (proc.terminate, proc.kill):
        try:
            if proc.poll() is None:
                signal_proc()
            proc.wait(timeout=2)
            return
        except (OSError, subprocess.TimeoutExpired):
            continue


# ── JSON-lines output ────────────────────────────────────────────────


def json_events(raw: str) -> Iterator[dict]:
    """Yield every JSON object line in *raw*, skipping anything else."""
    for line in raw.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            yield obj


def _classify(message: str) -> str:
    if looks_like_policy_block(message):
        return "Blocked by policy"
    if looks_like_rate_limit(message):
        return "Rate limit exceeded"
    return message


def stream_error(raw: str) -> str:
    """First error reported in a worker's JSON-lines output, or ``""``."""
    for obj in json_events(raw):
        err = obj.get("error")
        if isinstance(err, dict):
            message = str(err.get("message", "")).strip()
            kind = str(err.get("type", "") or err.get("code", "")).lower()
            if looks_like_rate_limit(kind):
                return message or "Rate limit exceeded"
            if message:
                return message
        elif isinstance(err, str) and err.strip():
            return _classify(err.strip())

        if str(obj.get("type", "")).lower() == "error":
            message = next(
                (obj[k].strip() for k in ("message", "text") if isinstance(obj.get(k), str)), ""
            )
            return _classify(message) if message else "Unknown error"
    return ""
