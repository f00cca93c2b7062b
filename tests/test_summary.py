"""Tests for the run summary, wave listing and completion notifications."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from taskwave.events import RunFinishedEvent, WaveEvent
from taskwave.executor import ExecutorResult, ExecutorStatus
from taskwave.graph import GraphNode, build_dependency_graph
from taskwave.notify import _toast, notify, on_event, run_message
from taskwave.scheduler import ParallelExecutionResult, TaskRun
from taskwave.summary import _WORKER_PRICING, estimate_cost, format_duration, show_summary, show_waves


def _result(**kwargs) -> ParallelExecutionResult:
    runs = [
        TaskRun(
            task="001-api.md",
            wave=1,
            result=ExecutorResult(
                task="001-api.md",
                status=ExecutorStatus.COMPLETED,
                iterations=3,
                files_modified=["src/api/app.py"],
            ),
            duration_s=75,
        ),
        TaskRun(
            task="002-ui.md",
            wave=2,
            result=ExecutorResult(
                task="002-ui.md",
                status=ExecutorStatus.BLOCKED,
                iterations=2,
                blocked_reason="Need design tokens",
            ),
            retried=True,
            duration_s=4,
        ),
    ]
    defaults = dict(completed=1, blocked=1, results=runs, total_iterations=5, files_modified=["src/api/app.py"])
    defaults.update(kwargs)
    return ParallelExecutionResult(**defaults)


class TestEstimateCost:
    def test_claude_pricing(self):
        inp_price, out_price = _WORKER_PRICING["claude"]
        expected = (1_000_000 * inp_price) + (1_000_000 * out_price)
        assert estimate_cost("claude", 1_000_000, 1_000_000) == pytest.approx(expected)

    def test_unknown_worker_uses_default(self):
        assert estimate_cost("mystery", 1000, 1000) == pytest.approx(estimate_cost("claude", 1000, 1000))

    def test_zero_tokens(self):
        assert estimate_cost("opencode", 0, 0) == 0.0

    def test_pricing_values_positive(self):
        for worker, (inp, out) in _WORKER_PRICING.items():
            assert inp > 0, f"{worker} input price should be positive"
            assert out > 0, f"{worker} output price should be positive"


class TestFormatDuration:
    @pytest.mark.parametrize(("seconds", "expected"), [(0, "0s"), (59.4, "59s"), (60, "1m 0s"), (125, "2m 5s")])
    def test_format(self, seconds, expected):
        assert format_duration(seconds) == expected


class TestShowSummary:
    def test_counts_and_tasks(self, capsys):
        show_summary(_result())
        out = capsys.readouterr().out
        assert "Run incomplete." in out
        assert "1/2 task(s) completed." in out
        assert "001-api.md: COMPLETED | wave 1 | 3 iterations | 1 files | 1m 15s" in out
        assert "002-ui.md: BLOCKED" in out
        assert "(retried)" in out
        assert "Blocked: Need design tokens" in out
        assert "Total iterations:     5" in out

    def test_success_headline(self, capsys):
        show_summary(ParallelExecutionResult(completed=2))
        out = capsys.readouterr().out
        assert "All tasks complete!" in out

    def test_token_totals_and_cost(self, capsys):
        show_summary(_result(input_tokens=5000, output_tokens=2000), "claude")
        out = capsys.readouterr().out
        assert "Total tokens:  7000" in out
        assert f"${estimate_cost('claude', 5000, 2000):.4f}" in out

    def test_conflicts_listed(self, capsys):
        show_summary(_result(conflicts=["src/shared.py"]))
        out = capsys.readouterr().out
        assert "File Conflicts" in out
        assert "- src/shared.py" in out


class TestShowWaves:
    def test_waves_and_dependencies(self, capsys):
        graph = build_dependency_graph(
            [
                GraphNode(id="a.md", allowed=["src/**"]),
                GraphNode(id="b.md", allowed=["src/api/**"]),
            ]
        )
        show_waves(graph, "Demo plan")
        out = capsys.readouterr().out
        assert "Demo plan" in out
        assert "Wave 1: a.md" in out
        assert "Wave 2: b.md" in out
        assert "b.md -> a.md" in out
        assert "implicit" in out


# ── Notifications ────────────────────────────────────────────────────


class TestNotify:
    def test_run_message(self):
        event = RunFinishedEvent(success=False, completed=2, failed=1, blocked=0, conflicts=("a", "b"))
        assert run_message(event) == "2 completed, 1 failed, 2 conflicts"

    def test_linux_toast(self):
        with patch("taskwave.notify._platform", return_value="linux"):
            assert _toast("t", "m", success=False) == ("notify-send", "-u", "critical", "t", "m")

    def test_darwin_toast_escapes_quotes(self):
        with patch("taskwave.notify._platform", return_value="darwin"):
            toast = _toast("t", 'say "hi"', success=True)
        assert toast is not None
        assert "say 'hi'" in toast[2]

    def test_unknown_platform_has_no_toast(self):
        with patch("taskwave.notify._platform", return_value="plan9"):
            assert _toast("t", "m", success=True) is None

    def test_notify_runs_commands(self):
        with patch("taskwave.notify._platform", return_value="linux"), \
             patch("taskwave.notify.subprocess.Popen") as mock_popen:
            notify("done")
        commands = [c.args[0] for c in mock_popen.call_args_list]
        assert commands[0][0] == "notify-send"
        assert commands[1][0] == "paplay"

    def test_missing_binary_is_ignored(self):
        with patch("taskwave.notify._platform", return_value="linux"), \
             patch("taskwave.notify.subprocess.Popen", side_effect=FileNotFoundError):
            notify("done", success=False)

    def test_on_event_only_reacts_to_run_finished(self):
        with patch("taskwave.notify.notify") as mock_notify:
            on_event(WaveEvent(wave=1, tasks=("a.md",)))
            mock_notify.assert_not_called()
            on_event(RunFinishedEvent(success=True, completed=3, failed=0, blocked=0))
        mock_notify.assert_called_once_with("All tasks finished: 3 completed")
