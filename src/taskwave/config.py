"""Configuration defaults, the ``.taskwave/config.yml`` loader and runtime options."""

from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from taskwave import log
from taskwave.errors import ConfigError
from taskwave.io_utils import read_text
from taskwave.scope import ScopeMode
from taskwave.workers.registry import WORKER_NAMES

PROJECT_DIR = ".taskwave"
CONFIG_FILE = "config.yml"

SECRET_KEYS: tuple[str, ...] = ("key", "secret", "password", "token", "pass", "webhook_url")

_ENV_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


@dataclass
class Config:
    """Runtime configuration.  File values are overridden by CLI flags."""

    # Worker
    worker: str = "claude"
    worker_model: str = ""

    # Execution
    max_iterations: int = 50
    max_consecutive_failures: int = 3
    timeout_per_iteration: int = 300
    scope_mode: str = "ask"
    concurrency: int = 3
    continue_on_error: bool = False
    dry_run: bool = False
    resume: bool = False

    # Validation
    validation_commands: list[str] = field(default_factory=list)
    validation_timeout: int = 300

    # Git
    auto_commit: bool = True
    auto_push: bool = False
    commit_prefix: str = "taskwave:"

    # Misc
    notify: bool = False
    verbose: bool = False

    # Derived / runtime state (not user-set)
    project_root: str = ""

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.worker not in WORKER_NAMES:
            raise ConfigError.invalid("worker", f"{self.worker!r} (expected one of {', '.join(WORKER_NAMES)})")
        try:
            ScopeMode(self.scope_mode)
        except ValueError:
            raise ConfigError.invalid(
                "scope_mode", f"{self.scope_mode!r} (expected strict, ask or permissive)"
            ) from None
        for name in ("max_iterations", "max_consecutive_failures", "timeout_per_iteration",
                     "concurrency", "validation_timeout"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigError.invalid(name, f"{value!r} (expected a positive integer)")
        if not isinstance(self.validation_commands, list) or not all(
            isinstance(c, str) for c in self.validation_commands
        ):
            raise ConfigError.invalid("validation_commands", "expected a list of strings")

    @property
    def tasks_dir(self) -> Path:
        return Path(self.project_root or ".") / PROJECT_DIR / "tasks"

    def with_overrides(self, **overrides: Any) -> Config:
        """Return a copy with every non-``None`` override applied."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return Config(**values)


# ── YAML layout ─────────────────────────────────────────────────────

# Nested YAML keys -> flat Config fields.
_YAML_KEYS: dict[tuple[str, str], str] = {
    ("worker", "name"): "worker",
    ("worker", "model"): "worker_model",
    ("execution", "max_iterations"): "max_iterations",
    ("execution", "max_consecutive_failures"): "max_consecutive_failures",
    ("execution", "timeout_per_iteration"): "timeout_per_iteration",
    ("execution", "concurrency"): "concurrency",
    ("execution", "continue_on_error"): "continue_on_error",
    ("scope", "mode"): "scope_mode",
    ("validation", "commands"): "validation_commands",
    ("validation", "timeout"): "validation_timeout",
    ("git", "auto_commit"): "auto_commit",
    ("git", "auto_push"): "auto_push",
    ("git", "commit_prefix"): "commit_prefix",
    ("notifications", "enabled"): "notify",
}

_INT_FIELDS = frozenset({
    "max_iterations", "max_consecutive_failures", "timeout_per_iteration",
    "concurrency", "validation_timeout",
})


def resolve_env_vars(value: Any) -> Any:
    """Expand ``${VAR}`` / ``$VAR`` in every string of *value*.

    Raises ``ConfigError`` when a referenced variable is unset.
    """
    if isinstance(value, str):
        def _sub(m: re.Match[str]) -> str:
            name = m.group(1) or m.group(2)
            if name not in os.environ:
                raise ConfigError.env_var_missing(name)
            return os.environ[name]

        return _ENV_RE.sub(_sub, value)
    if isinstance(value, list):
        return [resolve_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}
    return value


def detect_plaintext_secrets(raw: Any, path: str = "") -> list[str]:
    """Return dotted keys that look like secrets stored as literal strings."""
    found: list[str] = []
    if isinstance(raw, dict):
        for k, v in raw.items():
            key_path = f"{path}.{k}" if path else str(k)
            if isinstance(v, (dict, list)):
                found.extend(detect_plaintext_secrets(v, key_path))
                continue
            if not isinstance(v, str) or not v or v.startswith("$"):
                continue
            lower = str(k).lower()
            if any(lower == s or lower.endswith(f"_{s}") for s in SECRET_KEYS):
                found.append(key_path)
    elif isinstance(raw, list):
        for i, item in enumerate(raw):
            found.extend(detect_plaintext_secrets(item, f"{path}[{i}]"))
    return found


def _flatten(raw: dict[str, Any], path: Path) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for section, body in raw.items():
        if not isinstance(body, dict):
            raise ConfigError.parse_error(str(path), f"section '{section}' must be a mapping")
        for key, value in body.items():
            target = _YAML_KEYS.get((section, key))
            if target is None:
                log.warn(f"Ignoring unknown config key: {section}.{key}")
                continue
            if target in _INT_FIELDS and isinstance(value, str) and value.strip().isdigit():
                value = int(value)
            values[target] = value
    return values


def load_config(project_root: Path) -> Config:
    """Load ``.taskwave/config.yml`` under *project_root* (defaults if absent)."""
    path = project_root / PROJECT_DIR / CONFIG_FILE
    if not path.is_file():
        log.debug(f"No config at {path}; using defaults")
        return Config(project_root=str(project_root))

    try:
        raw = yaml.safe_load(read_text(path)) or {}
    except yaml.YAMLError as exc:
        raise ConfigError.parse_error(str(path), str(exc)) from exc
    if not isinstance(raw, dict):
        raise ConfigError.parse_error(str(path), "top level must be a mapping")

    for key in detect_plaintext_secrets(raw):
        log.warn(f"Config key '{key}' looks like a plaintext secret; use ${{ENV_VAR}} instead")

    values = _flatten(resolve_env_vars(raw), path)
    return Config(project_root=str(project_root), **values)


# ── Project discovery ───────────────────────────────────────────────


def resolve_repo_root(cwd: Path | None = None) -> Path:
    """Return the git repository root, falling back to cwd."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            check=True,
            cwd=cwd,
        )
        return Path(result.stdout.strip())
    except (subprocess.CalledProcessError, FileNotFoundError):
        return cwd or Path.cwd()


def find_project_root(start: Path | None = None) -> Path:
    """Walk up from *start* to the directory holding ``.taskwave/``."""
    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / PROJECT_DIR).is_dir():
            return candidate
    return resolve_repo_root(current)
