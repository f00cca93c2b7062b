"""Exception hierarchy shared by the executor, scheduler and CLI.

Every error carries a ``category``, a short machine ``code``, a
``retryable`` flag and a free-form ``context`` dict.  The executor uses
``retryable`` to decide whether an iteration-level failure is counted
against the consecutive-failure budget or ends the task immediately.
"""

from __future__ import annotations

from typing import Any


class TaskwaveError(Exception):
    """Base class for all taskwave errors."""

    category: str = "internal"

    def __init__(
        self,
        message: str,
        *,
        code: str = "error",
        retryable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable
        self.context = dict(context or {})

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }


# ── Worker / provider ───────────────────────────────────────────────


class ProviderError(TaskwaveError):
    """The worker process crashed, is missing, or its backend rejected the call."""

    category = "provider"

    @classmethod
    def crash(cls, worker: str, detail: str, return_code: int | None = None) -> ProviderError:
        return cls(
            f"{worker} crashed: {detail}",
            code="crash",
            retryable=True,
            context={"worker": worker, "return_code": return_code},
        )

    @classmethod
    def not_available(cls, worker: str, detail: str = "") -> ProviderError:
        msg = f"{worker} is not available"
        if detail:
            msg += f": {detail}"
        return cls(msg, code="not_available", retryable=False, context={"worker": worker})

    @classmethod
    def api_error(cls, worker: str, detail: str, status_code: int | None = None) -> ProviderError:
        # Unknown status is treated like a server-side failure.
        retryable = status_code is None or status_code >= 500
        return cls(
            f"{worker} API error: {detail}",
            code="api_error",
            retryable=retryable,
            context={"worker": worker, "status_code": status_code},
        )

    @classmethod
    def rate_limit(cls, worker: str, detail: str = "Rate limit exceeded") -> ProviderError:
        return cls(
            f"{worker} rate limited: {detail}",
            code="rate_limit",
            retryable=True,
            context={"worker": worker},
        )


class IterationTimeout(TaskwaveError):
    """A single worker invocation exceeded ``timeout_per_iteration``."""

    category = "timeout"

    def __init__(self, seconds: int, iteration: int | None = None) -> None:
        super().__init__(
            f"Iteration timed out after {seconds}s",
            code="iteration",
            retryable=True,
            context={"timeout": seconds, "iteration": iteration},
        )
        self.seconds = seconds


# ── Gates ───────────────────────────────────────────────────────────


class ValidationError(TaskwaveError):
    """A validation command failed."""

    category = "validation"

    def __init__(self, command: str, output: str = "", exit_code: int | None = None) -> None:
        super().__init__(
            f"Validation failed: {command}",
            code="command_failed",
            retryable=True,
            context={"command": command, "exit_code": exit_code, "output": output},
        )
        self.command = command
        self.output = output


class ScopeError(TaskwaveError):
    """Changes fell outside the task's permitted scope."""

    category = "scope"

    def __init__(self, message: str, *, code: str, files: list[str]) -> None:
        super().__init__(message, code=code, retryable=code != "user_denied", context={"files": files})
        self.files = list(files)

    @classmethod
    def forbidden(cls, files: list[str]) -> ScopeError:
        return cls(f"Forbidden files changed: {', '.join(files)}", code="forbidden", files=files)

    @classmethod
    def outside(cls, files: list[str]) -> ScopeError:
        return cls(
            f"Files outside allowed scope changed: {', '.join(files)}",
            code="outside_allowed",
            files=files,
        )

    @classmethod
    def user_denied(cls, files: list[str]) -> ScopeError:
        return cls(f"Change rejected by user: {', '.join(files)}", code="user_denied", files=files)


# ── Fatal ───────────────────────────────────────────────────────────


class ConfigError(TaskwaveError):
    """Bad configuration or input documents.  Never retryable."""

    category = "config"

    def __init__(self, message: str, *, code: str = "invalid", context: dict[str, Any] | None = None) -> None:
        super().__init__(message, code=code, retryable=False, context=context)

    @classmethod
    def invalid(cls, field: str, detail: str) -> ConfigError:
        return cls(f"Invalid {field}: {detail}", code="invalid", context={"field": field})

    @classmethod
    def missing(cls, what: str) -> ConfigError:
        return cls(f"Not found: {what}", code="missing", context={"path": what})

    @classmethod
    def env_var_missing(cls, name: str) -> ConfigError:
        return cls(
            f"Environment variable {name} is referenced in config but not set",
            code="missing_env_var",
            context={"var": name},
        )

    @classmethod
    def parse_error(cls, path: str, detail: str) -> ConfigError:
        return cls(f"Could not parse {path}: {detail}", code="parse_error", context={"path": path})


class CycleError(ConfigError):
    """Explicit task dependencies form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            code="cycle",
            context={"cycle": cycle},
        )
        self.cycle = list(cycle)


class PermissionDenied(TaskwaveError):
    """The worker or environment refused an operation.  Never retryable."""

    category = "permission"

    def __init__(self, message: str, *, code: str) -> None:
        super().__init__(message, code=code, retryable=False)

    @classmethod
    def command_blocked(cls, command: str) -> PermissionDenied:
        return cls(f"Command blocked by policy: {command}", code="command_blocked")

    @classmethod
    def skip_denied(cls, detail: str = "") -> PermissionDenied:
        return cls(f"Permission skip was denied{': ' + detail if detail else ''}", code="skip_denied")

    @classmethod
    def api_auth(cls, worker: str, detail: str = "") -> PermissionDenied:
        return cls(f"{worker} authentication failed{': ' + detail if detail else ''}", code="api_auth")


class GitError(TaskwaveError):
    """A git operation failed."""

    category = "git"

    def __init__(self, operation: str, detail: str) -> None:
        super().__init__(
            f"git {operation} failed: {detail}",
            code=f"{operation}_failed",
            retryable=operation != "revert",
            context={"operation": operation},
        )
        self.operation = operation
