"""ScopeGuard: decide whether a set of file changes is within a task's scope.

``decide`` is a pure function of (changes, scope, mode, approvals).
``ScopeGuard`` wraps it with the approvals granted during one task run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Union

from taskwave import patterns


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class FileChange:
    path: str
    kind: ChangeKind = ChangeKind.MODIFIED

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", patterns.normalize(self.path))
        object.__setattr__(self, "kind", ChangeKind(self.kind))


class ScopeMode(str, Enum):
    STRICT = "strict"
    ASK = "ask"
    PERMISSIVE = "permissive"


@dataclass
class Scope:
    """Allow / forbid / ask-before patterns for one task."""

    allowed: list[str] = field(default_factory=list)
    forbidden: list[str] = field(default_factory=list)
    ask_before: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.allowed = [patterns.validate_pattern(p) for p in self.allowed]
        self.forbidden = [patterns.validate_pattern(p) for p in self.forbidden]
        self.ask_before = [patterns.validate_pattern(p) for p in self.ask_before]


# ── Decisions ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class Allow:
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class Block:
    reason: str
    files: tuple[str, ...]


@dataclass(frozen=True)
class AskUser:
    reason: str
    files: tuple[str, ...]


ScopeDecision = Union[Allow, Block, AskUser]


class Verdict(str, Enum):
    """Per-file classification before the mode is applied."""

    ALLOWED = "allowed"
    APPROVED = "approved"
    FORBIDDEN = "forbidden"
    OUTSIDE = "outside"
    ASK = "ask"


def classify(path: str, scope: Scope, approved: Iterable[str] = ()) -> tuple[Verdict, str]:
    """Return the verdict for one path and a human-readable reason."""
    p = patterns.normalize(path)
    if p in set(approved):
        return Verdict.APPROVED, "approved earlier in this run"

    hit = patterns.first_match(p, scope.forbidden)
    if hit is not None:
        return Verdict.FORBIDDEN, f"matches forbidden pattern: {hit}"

    hit = patterns.first_match(p, scope.ask_before)
    if hit is not None:
        return Verdict.ASK, f"requires approval (matches {hit})"

    if scope.allowed and not patterns.matches_any(p, scope.allowed):
        return Verdict.OUTSIDE, "outside allowed scope"

    return Verdict.ALLOWED, ""


def decide(
    changes: Iterable[FileChange],
    scope: Scope,
    mode: ScopeMode | str,
    approved: Iterable[str] = frozenset(),
) -> ScopeDecision:
    """Classify *changes* against *scope* under *mode*.

    Forbidden and out-of-scope files block in ``strict``, ask in ``ask`` and
    only warn in ``permissive``.  ``ask_before`` files ask in ``strict`` and
    ``ask`` and are allowed in ``permissive``.  Any blocked file makes the
    whole decision ``Block``; otherwise any file needing a human makes it
    ``AskUser``.
    """
    mode = ScopeMode(mode)
    approved_set = frozenset(patterns.normalize(a) for a in approved)

    blocked: list[str] = []
    ask: list[str] = []
    warnings: list[str] = []
    reasons: list[str] = []

    for change in changes:
        verdict, why = classify(change.path, scope, approved_set)
        match verdict:
            case Verdict.FORBIDDEN | Verdict.OUTSIDE:
                if mode == ScopeMode.STRICT:
                    blocked.append(change.path)
                    reasons.append(f"{change.path}: {why}")
                elif mode == ScopeMode.ASK:
                    ask.append(change.path)
                    reasons.append(f"{change.path}: {why}")
                else:
                    warnings.append(f"{change.path}: {why}")
            case Verdict.ASK:
                if mode == ScopeMode.PERMISSIVE:
                    continue
                ask.append(change.path)
                reasons.append(f"{change.path}: {why}")
            case _:
                continue

    if blocked:
        return Block(reason="; ".join(reasons), files=tuple(_dedupe(blocked)))
    if ask:
        return AskUser(reason="; ".join(reasons), files=tuple(_dedupe(ask)))
    return Allow(warnings=tuple(warnings))


def _dedupe(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


# ── Stateful guard ──────────────────────────────────────────────────


class ScopeGuard:
    """Scope decisions for a single task run, remembering user approvals."""

    def __init__(self, scope: Scope, mode: ScopeMode | str = ScopeMode.ASK) -> None:
        self.scope = scope
        self.mode = ScopeMode(mode)
        self._approved: set[str] = set()

    def validate(self, changes: Iterable[FileChange]) -> ScopeDecision:
        return decide(changes, self.scope, self.mode, self._approved)

    def approve(self, paths: Iterable[str]) -> None:
        for p in paths:
            self._approved.add(patterns.normalize(p))

    def is_approved(self, path: str) -> bool:
        return patterns.normalize(path) in self._approved

    @property
    def approved(self) -> frozenset[str]:
        return frozenset(self._approved)

    def files_to_revert(self, changes: Iterable[FileChange]) -> list[FileChange]:
        """Changes that are not permitted as things stand (nothing in permissive mode)."""
        if self.mode == ScopeMode.PERMISSIVE:
            return []
        out: list[FileChange] = []
        for change in changes:
            verdict, _ = classify(change.path, self.scope, self._approved)
            if verdict in (Verdict.FORBIDDEN, Verdict.OUTSIDE, Verdict.ASK):
                out.append(change)
        return out

    def violation_report(self, changes: Iterable[FileChange]) -> str:
        """Markdown summary of the offending changes, fed back to the worker."""
        offending: list[tuple[FileChange, Verdict, str]] = []
        for change in changes:
            verdict, why = classify(change.path, self.scope, self._approved)
            if verdict in (Verdict.FORBIDDEN, Verdict.OUTSIDE, Verdict.ASK):
                offending.append((change, verdict, why))

        if not offending:
            return ""

        lines = ["## Scope Violations Detected", ""]
        for change, _verdict, why in offending:
            lines.append(f"- `{change.path}` ({change.kind.value}): {why}")
        lines += ["", "### Task Scope", ""]
        lines.append("**Allowed:** " + _fmt(self.scope.allowed, "_any path_"))
        lines.append("**Forbidden:** " + _fmt(self.scope.forbidden, "_none_"))
        if self.scope.ask_before:
            lines.append("**Ask before:** " + _fmt(self.scope.ask_before, "_none_"))
        lines += ["", "These changes were reverted. Keep edits inside the allowed paths."]
        return "\n".join(lines)


def _fmt(items: list[str], empty: str) -> str:
    return ", ".join(f"`{i}`" for i in items) if items else empty
