"""Claude Code worker adapter."""

from __future__ import annotations

import shutil

from taskwave.workers.base import CliWorker, WorkerResult, json_events


def _int(value: object) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class ClaudeWorker(CliWorker):
    name = "claude"

    def __init__(self, model: str = "", skip_permissions: bool = True) -> None:
        self.model = model
        self.skip_permissions = skip_permissions

    def build_cmd(self, prompt: str) -> list[str]:
        # Resolved path: on some platforms the child resolves PATH differently.
        claude = shutil.which("claude") or "claude"
        cmd = [claude]
        if self.skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        if self.model:
            cmd += ["--model", self.model]
        cmd += ["--verbose", "-p", prompt, "--output-format", "stream-json"]
        return cmd

    def parse_output(self, raw: str) -> WorkerResult:
        result = WorkerResult()
        texts: list[str] = []
        for obj in json_events(raw):
            match obj.get("type"):
                case "assistant":
                    message = obj.get("message") or {}
                    for block in message.get("content") or []:
                        if isinstance(block, dict) and block.get("type") == "text":
                            texts.append(str(block.get("text", "")))
                case "result":
                    final = str(obj.get("result") or "")
                    texts.append(final)
                    usage = obj.get("usage") or {}
                    result.input_tokens = _int(usage.get("input_tokens"))
                    result.output_tokens = _int(usage.get("output_tokens"))
                    result.duration_ms = _int(obj.get("duration_ms"))
                    if obj.get("is_error"):
                        result.error = final or str(obj.get("subtype", "error"))
        result.output = "\n".join(t for t in texts if t)
        return result

    def check_available(self) -> str | None:
        if not shutil.which("claude"):
            return "Claude Code CLI not found. Install from https://github.com/anthropics/claude-code"
        return None
