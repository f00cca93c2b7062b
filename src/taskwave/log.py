"""Logging utilities with colored output via Rich.

``Logger`` instances are passed explicitly to the executor and scheduler so
concurrent tasks can tag their lines.  The module-level functions write
through a shared default logger and are what the CLI uses.
"""

from __future__ import annotations

import threading

from rich.console import Console
from rich.markup import escape

console = Console(highlight=False)
_err_console = Console(highlight=False, stderr=True)

_print_lock = threading.Lock()

_PREFIX_COLORS = ("cyan", "magenta", "green", "yellow", "blue", "red")


class Logger:
    """Tagged console logger.  ``child()`` derives a per-task logger."""

    def __init__(
        self,
        *,
        verbose: bool = False,
        prefix: str = "",
        color: str = "cyan",
        out: Console | None = None,
        err: Console | None = None,
    ) -> None:
        self.verbose = verbose
        self.prefix = prefix
        self.color = color
        self._out = out or console
        self._err = err or _err_console

    def child(self, prefix: str, index: int = 0) -> Logger:
        """Return a logger sharing this one's consoles with a task *prefix*."""
        return Logger(
            verbose=self.verbose,
            prefix=prefix,
            color=_PREFIX_COLORS[index % len(_PREFIX_COLORS)],
            out=self._out,
            err=self._err,
        )

    def _tag(self) -> str:
        if not self.prefix:
            return ""
        return f"[{self.color}]\\[{escape(self.prefix)}][/{self.color}] "

    def _print(self, target: Console, line: str) -> None:
        with _print_lock:
            target.print(line)

    def info(self, msg: str) -> None:
        self._print(self._out, f"{self._tag()}[blue]\\[INFO][/blue] {msg}")

    def success(self, msg: str) -> None:
        self._print(self._out, f"{self._tag()}[green]\\[OK][/green] {msg}")

    def warn(self, msg: str) -> None:
        self._print(self._out, f"{self._tag()}[yellow]\\[WARN][/yellow] {msg}")

    def error(self, msg: str) -> None:
        self._print(self._err, f"{self._tag()}[red]\\[ERROR][/red] {msg}")

    def debug(self, msg: str) -> None:
        if self.verbose:
            self._print(self._out, f"{self._tag()}[dim]\\[DEBUG] {msg}[/dim]")


_default = Logger()


def default_logger() -> Logger:
    return _default


def set_verbose(enabled: bool) -> None:
    _default.verbose = enabled


def info(msg: str) -> None:
    _default.info(msg)


def success(msg: str) -> None:
    _default.success(msg)


def warn(msg: str) -> None:
    _default.warn(msg)


def error(msg: str) -> None:
    _default.error(msg)


def debug(msg: str) -> None:
    _default.debug(msg)
