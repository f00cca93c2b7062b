"""OpenCode worker adapter."""

from __future__ import annotations

import os
import shutil

from taskwave.workers.base import CliWorker, WorkerResult, json_events


class OpenCodeWorker(CliWorker):
    name = "opencode"

    def __init__(self, model: str = "") -> None:
        self.model = model

    def build_cmd(self, prompt: str) -> list[str]:
        opencode = shutil.which("opencode") or "opencode"
        cmd = [opencode, "run", "--format", "json"]
        if self.model:
            cmd += ["--model", self.model]
        cmd.append(prompt)
        return cmd

    def env(self) -> dict[str, str] | None:
        # Allow every tool; runs are non-interactive.
        return {**os.environ, "OPENCODE_PERMISSION": '{"*":"allow"}'}

    def parse_output(self, raw: str) -> WorkerResult:
        result = WorkerResult()
        parts: list[str] = []
        for obj in json_events(raw):
            part = obj.get("part")
            if not isinstance(part, dict):
                continue
            if obj.get("type") == "text" and part.get("text"):
                parts.append(str(part["text"]))
            elif obj.get("type") == "step_finish":
                tokens = part.get("tokens") or {}
                try:
                    result.input_tokens += int(tokens.get("input", 0))
                    result.output_tokens += int(tokens.get("output", 0))
                except (TypeError, ValueError, AttributeError):
                    continue
        result.output = "".join(parts)
        return result

    def check_available(self) -> str | None:
        if not shutil.which("opencode"):
            return "OpenCode CLI not found. Install from https://opencode.ai/docs/"
        return None
