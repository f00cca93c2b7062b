"""Tests for the validation gate."""

from __future__ import annotations

import sys

from taskwave.validator import (
    REPORT_OUTPUT_LIMIT,
    CommandResult,
    ValidationSummary,
    Validator,
    format_report,
    run_command,
)

PY = f'"{sys.executable}"'


class TestRunCommand:
    def test_success_captures_output(self, tmp_path):
        result = run_command(f"{PY} -c \"print('hello')\"", tmp_path)
        assert result.passed
        assert result.exit_code == 0
        assert "hello" in result.output

    def test_failure_includes_stderr(self, tmp_path):
        result = run_command(
            f"{PY} -c \"import sys; sys.stderr.write('bad thing'); sys.exit(3)\"", tmp_path
        )
        assert not result.passed
        assert result.exit_code == 3
        assert "--- stderr ---" in result.output
        assert "bad thing" in result.output

    def test_timeout(self, tmp_path):
        result = run_command(f"{PY} -c \"import time; time.sleep(5)\"", tmp_path, timeout=1)
        assert not result.passed
        assert result.exit_code == -1
        assert result.output.startswith("Command timed out after 1s")

    def test_runs_in_cwd(self, tmp_path):
        (tmp_path / "marker.txt").write_text("x", encoding="utf-8")
        result = run_command(f"{PY} -c \"import os; print(os.listdir('.'))\"", tmp_path)
        assert "marker.txt" in result.output


class TestValidator:
    def test_stops_on_first_failure(self, tmp_path):
        commands = [
            f"{PY} -c \"pass\"",
            f"{PY} -c \"raise SystemExit(1)\"",
            f"{PY} -c \"pass\"",
        ]
        summary = Validator(tmp_path).run(commands)
        assert not summary.passed
        assert len(summary.results) == 2
        assert summary.failed is summary.results[1]

    def test_runs_everything_when_asked(self, tmp_path):
        commands = [f"{PY} -c \"raise SystemExit(1)\"", f"{PY} -c \"pass\""]
        summary = Validator(tmp_path, stop_on_first=False).run(commands)
        assert len(summary.results) == 2
        assert not summary.passed

    def test_no_commands_passes(self, tmp_path):
        summary = Validator(tmp_path).run([])
        assert summary.passed
        assert summary.failed is None


class TestFormatReport:
    def test_failed_report(self):
        summary = ValidationSummary(
            passed=False,
            results=[
                CommandResult(command="ruff check .", passed=True, exit_code=0),
                CommandResult(command="pytest", passed=False, exit_code=1, output="E  assert 1 == 2"),
            ],
            duration_ms=2500,
        )
        report = format_report(summary)
        assert report.startswith("## ❌ Validation")
        assert "**Status:** FAILED" in report
        assert "**Duration:** 2.50s" in report
        assert "#### ✅ `ruff check .`" in report
        assert "#### ❌ `pytest`" in report
        assert "E  assert 1 == 2" in report

    def test_long_output_truncated(self):
        summary = ValidationSummary(
            passed=False,
            results=[
                CommandResult(
                    command="make", passed=False, exit_code=2, output="x" * (REPORT_OUTPUT_LIMIT + 100)
                )
            ],
        )
        report = format_report(summary)
        assert "x" * REPORT_OUTPUT_LIMIT + "\n... (truncated)" in report
        assert "x" * (REPORT_OUTPUT_LIMIT + 1) not in report

    def test_empty(self):
        report = format_report(ValidationSummary())
        assert report.startswith("## ✅ Validation")
        assert "_No validation commands configured._" in report
