"""Tests for taskwave.config defaults, validation and the YAML loader."""

from __future__ import annotations

from pathlib import Path

import pytest

from taskwave.config import (
    Config,
    detect_plaintext_secrets,
    find_project_root,
    load_config,
    resolve_env_vars,
)
from taskwave.errors import ConfigError
from taskwave.io_utils import write_text


def _write_config(root: Path, text: str) -> None:
    path = root / ".taskwave" / "config.yml"
    path.parent.mkdir(parents=True, exist_ok=True)
    write_text(path, text)


# ── Defaults / validation ────────────────────────────────────────────


class TestConfigDefaults:
    def test_defaults(self):
        cfg = Config()
        assert cfg.worker == "claude"
        assert cfg.max_iterations == 50
        assert cfg.max_consecutive_failures == 3
        assert cfg.timeout_per_iteration == 300
        assert cfg.scope_mode == "ask"
        assert cfg.concurrency == 3
        assert cfg.auto_commit is True
        assert cfg.auto_push is False
        assert cfg.validation_commands == []

    def test_validation_commands_not_shared(self):
        a = Config()
        b = Config()
        a.validation_commands.append("pytest")
        assert b.validation_commands == []

    def test_tasks_dir(self, tmp_path):
        cfg = Config(project_root=str(tmp_path))
        assert cfg.tasks_dir == tmp_path / ".taskwave" / "tasks"

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"worker": "cursor"}, "worker"),
            ({"scope_mode": "lenient"}, "scope_mode"),
            ({"concurrency": 0}, "concurrency"),
            ({"max_iterations": -1}, "max_iterations"),
            ({"timeout_per_iteration": True}, "timeout_per_iteration"),
            ({"validation_commands": "pytest"}, "validation_commands"),
        ],
    )
    def test_invalid_values(self, kwargs, field):
        with pytest.raises(ConfigError) as exc_info:
            Config(**kwargs)
        assert exc_info.value.context["field"] == field

    def test_with_overrides_skips_none(self):
        cfg = Config(concurrency=5).with_overrides(concurrency=None, scope_mode="strict")
        assert cfg.concurrency == 5
        assert cfg.scope_mode == "strict"

    def test_with_overrides_validates(self):
        with pytest.raises(ConfigError):
            Config().with_overrides(concurrency=0)


# ── Loader ───────────────────────────────────────────────────────────


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_config(tmp_path)
        assert cfg == Config(project_root=str(tmp_path))

    def test_nested_sections(self, tmp_path):
        _write_config(
            tmp_path,
            """
worker:
  name: opencode
  model: big-model
execution:
  max_iterations: 20
  concurrency: "2"
  continue_on_error: true
scope:
  mode: strict
validation:
  commands:
    - ruff check .
    - pytest -q
  timeout: 120
git:
  auto_commit: false
  commit_prefix: "wip:"
notifications:
  enabled: true
""",
        )
        cfg = load_config(tmp_path)
        assert cfg.worker == "opencode"
        assert cfg.worker_model == "big-model"
        assert cfg.max_iterations == 20
        assert cfg.concurrency == 2
        assert cfg.continue_on_error is True
        assert cfg.scope_mode == "strict"
        assert cfg.validation_commands == ["ruff check .", "pytest -q"]
        assert cfg.validation_timeout == 120
        assert cfg.auto_commit is False
        assert cfg.commit_prefix == "wip:"
        assert cfg.notify is True

    def test_empty_file(self, tmp_path):
        _write_config(tmp_path, "")
        assert load_config(tmp_path).worker == "claude"

    def test_unknown_keys_ignored(self, tmp_path):
        _write_config(tmp_path, "execution:\n  turbo: true\n")
        assert load_config(tmp_path).max_iterations == 50

    def test_invalid_yaml(self, tmp_path):
        _write_config(tmp_path, "execution: [unclosed\n")
        with pytest.raises(ConfigError) as exc_info:
            load_config(tmp_path)
        assert exc_info.value.code == "parse_error"

    def test_section_must_be_mapping(self, tmp_path):
        _write_config(tmp_path, "execution: 5\n")
        with pytest.raises(ConfigError):
            load_config(tmp_path)

    def test_invalid_value(self, tmp_path):
        _write_config(tmp_path, "scope:\n  mode: yolo\n")
        with pytest.raises(ConfigError):
            load_config(tmp_path)

    def test_env_vars_expanded(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TW_MODEL", "env-model")
        _write_config(tmp_path, "worker:\n  model: ${TW_MODEL}\n")
        assert load_config(tmp_path).worker_model == "env-model"

    def test_missing_env_var(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TW_NOT_SET", raising=False)
        _write_config(tmp_path, "worker:\n  model: $TW_NOT_SET\n")
        with pytest.raises(ConfigError) as exc_info:
            load_config(tmp_path)
        assert exc_info.value.code == "missing_env_var"


# ── Helpers ──────────────────────────────────────────────────────────


def test_resolve_env_vars_nested(monkeypatch):
    monkeypatch.setenv("A", "1")
    assert resolve_env_vars({"x": ["$A", "${A}b"], "y": 3}) == {"x": ["1", "1b"], "y": 3}


def test_detect_plaintext_secrets():
    raw = {
        "notifications": {"webhook_url": "https://hooks.example", "api_key": "${KEY}"},
        "worker": {"name": "claude", "auth_token": "abc"},
    }
    assert detect_plaintext_secrets(raw) == ["notifications.webhook_url", "worker.auth_token"]


def test_find_project_root_walks_up(tmp_path):
    (tmp_path / ".taskwave").mkdir()
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    assert find_project_root(nested) == tmp_path.resolve()
