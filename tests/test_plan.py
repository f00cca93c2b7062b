"""Tests for plan document parsing and checkbox updates."""

from __future__ import annotations

import pytest

from taskwave.errors import ConfigError, CycleError
from taskwave.io_utils import read_text, write_text
from taskwave.plan import mark_task_completed, parse_plan, parse_plan_tasks

PLAN = """# PLAN: Billing rewrite

## Overview

Move billing onto the new ledger.
Second line.

## Tasks

- [ ] `001-models.md` — data models (wave: 1)
- [x] `002-api.md` – REST endpoints (depends: 001-models.md)
- [ ] `003-ui.md` - screens (wave: 2, depends: 001-models, 002-api.md)
- [ ] not a task line
* [ ] `004-other.md` — wrong bullet
"""


@pytest.fixture
def plan_file(tmp_path, write_task):
    write_task("001-models.md")
    write_task("002-api.md", folder="completed")
    write_task("003-ui.md")
    path = tmp_path / "PLAN.md"
    write_text(path, PLAN)
    return path


class TestParsePlan:
    def test_header_and_overview(self, plan_file, tasks_dir):
        plan = parse_plan(plan_file, tasks_dir)
        assert plan.name == "Billing rewrite"
        assert plan.overview == "Move billing onto the new ledger.\nSecond line."

    def test_task_lines(self, plan_file, tasks_dir):
        plan = parse_plan(plan_file, tasks_dir)
        assert [t.filename for t in plan.tasks] == ["001-models.md", "002-api.md", "003-ui.md"]

        models, api, ui = plan.tasks
        assert models.description == "data models"
        assert models.wave == 1
        assert not models.completed
        assert models.path == tasks_dir / "pending" / "001-models.md"

        assert api.completed
        assert api.depends_on == ["001-models.md"]
        assert api.path == tasks_dir / "completed" / "002-api.md"

        assert ui.wave == 2
        assert ui.depends_on == ["001-models.md", "002-api.md"]
        assert ui.line_number == 12

        assert plan.task("003-ui.md") is ui
        assert plan.task("nope.md") is None

    def test_graph_uses_explicit_edges(self, plan_file, tasks_dir):
        plan = parse_plan(plan_file, tasks_dir)
        assert plan.graph.skipped == ["002-api.md"]
        assert [w.tasks for w in plan.graph.waves] == [("001-models.md",), ("003-ui.md",)]

    def test_missing_task_file_falls_back_to_pending(self, tmp_path, tasks_dir):
        tasks = parse_plan_tasks("- [ ] `009-new.md` — later\n", tasks_dir, tmp_path)
        assert tasks[0].path == tasks_dir / "pending" / "009-new.md"

    def test_default_name(self, tmp_path, tasks_dir):
        path = tmp_path / "p.md"
        write_text(path, "- [ ] `a.md` — first\n")
        plan = parse_plan(path, tasks_dir)
        assert plan.name == "Unnamed Plan"
        assert plan.overview == ""

    def test_missing_file(self, tmp_path, tasks_dir):
        with pytest.raises(ConfigError) as exc_info:
            parse_plan(tmp_path / "missing.md", tasks_dir)
        assert exc_info.value.code == "missing"

    def test_no_tasks(self, tmp_path, tasks_dir):
        path = tmp_path / "p.md"
        write_text(path, "# PLAN: Empty\n\nNothing here.\n")
        with pytest.raises(ConfigError):
            parse_plan(path, tasks_dir)

    def test_cycle_rejected(self, tmp_path, tasks_dir):
        path = tmp_path / "p.md"
        write_text(
            path,
            "- [ ] `a.md` — first (depends: b)\n- [ ] `b.md` — second (depends: a.md)\n",
        )
        with pytest.raises(CycleError) as exc_info:
            parse_plan(path, tasks_dir)
        assert str(exc_info.value).startswith("Dependency cycle detected: ")

    def test_unknown_dependency_rejected(self, tmp_path, tasks_dir):
        path = tmp_path / "p.md"
        write_text(path, "- [ ] `a.md` — first (depends: ghost.md)\n")
        with pytest.raises(ConfigError):
            parse_plan(path, tasks_dir)


class TestMarkTaskCompleted:
    def test_flips_checkbox(self, plan_file, tasks_dir):
        plan = parse_plan(plan_file, tasks_dir)
        assert mark_task_completed(plan_file, plan.task("003-ui.md").line_number)

        content = read_text(plan_file)
        assert "- [x] `003-ui.md` - screens" in content
        assert "- [ ] `001-models.md`" in content
        assert parse_plan(plan_file, tasks_dir).task("003-ui.md").completed

    def test_already_checked_or_out_of_range(self, plan_file, tasks_dir):
        plan = parse_plan(plan_file, tasks_dir)
        assert not mark_task_completed(plan_file, plan.task("002-api.md").line_number)
        assert not mark_task_completed(plan_file, 999)
        assert read_text(plan_file) == PLAN
