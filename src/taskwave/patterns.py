"""Path pattern grammar used for task scopes.

Patterns are ``/``-separated and matched against repository-relative
POSIX paths:

* ``**`` as a whole segment matches zero or more segments.
* ``*`` matches any run of characters inside one segment.
* ``?`` matches exactly one character inside one segment.
* Everything else is literal.  Matching is case-sensitive.
* A leading ``./`` is ignored on both patterns and paths.
* A pattern without wildcards also matches everything below it, so
  ``src/config`` behaves like ``src/config/**``.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable

from taskwave.errors import ConfigError

_WILDCARDS = ("*", "?")


def normalize(path: str) -> str:
    """Strip leading ``./`` and trailing ``/`` from a path or pattern."""
    p = path.strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.rstrip("/") if p != "/" else p


def has_wildcard(pattern: str) -> bool:
    return any(c in pattern for c in _WILDCARDS)


def validate_pattern(pattern: str) -> str:
    """Return the normalized pattern, raising ``ConfigError`` if it is unusable."""
    p = normalize(pattern)
    if not p:
        raise ConfigError.invalid("scope pattern", "empty pattern")
    if "\0" in p:
        raise ConfigError.invalid("scope pattern", f"NUL byte in {pattern!r}")
    if p.startswith("/"):
        raise ConfigError.invalid("scope pattern", f"{pattern!r} must be relative to the project root")
    if ".." in p.split("/"):
        raise ConfigError.invalid("scope pattern", f"{pattern!r} must not contain '..'")
    return p


def _translate_segment(seg: str) -> str:
    out: list[str] = []
    for ch in seg:
        if ch == "*":
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(ch))
    return "".join(out)


@lru_cache(maxsize=1024)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile *pattern* into an anchored regular expression."""
    p = validate_pattern(pattern)

    if not has_wildcard(p):
        return re.compile(f"^{re.escape(p)}(?:/.*)?$")

    segs = p.split("/")
    rx = ""
    for i, seg in enumerate(segs):
        last = i == len(segs) - 1
        if seg == "**":
            if last:
                # "a/**" also matches "a" itself.
                rx = rx[:-1] + "(?:/.*)?" if rx.endswith("/") else rx + ".*"
            else:
                rx += "(?:[^/]+/)*"
        else:
            rx += _translate_segment(seg)
            if not last:
                rx += "/"
    return re.compile(f"^{rx}$")


def matches(path: str, pattern: str) -> bool:
    """Return ``True`` when *path* is matched by *pattern*."""
    return compile_pattern(pattern).match(normalize(path)) is not None


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(matches(path, p) for p in patterns)


def first_match(path: str, patterns: Iterable[str]) -> str | None:
    for p in patterns:
        if matches(path, p):
            return p
    return None


def static_prefix(pattern: str) -> str:
    """Return the literal leading segments of *pattern* (may be empty)."""
    segs: list[str] = []
    for seg in normalize(pattern).split("/"):
        if has_wildcard(seg):
            break
        segs.append(seg)
    return "/".join(s for s in segs if s)


def _segment_prefix(a: str, b: str) -> bool:
    sa, sb = a.split("/"), b.split("/")
    n = min(len(sa), len(sb))
    return sa[:n] == sb[:n]


def _sample_path(pattern: str) -> str:
    """A concrete path *pattern* matches: ``**`` segments dropped, wildcards filled."""
    segs = [
        s.replace("*", "x").replace("?", "x")
        for s in normalize(pattern).split("/")
        if s != "**"
    ]
    return "/".join(segs) or "x"


def patterns_overlap(a: str, b: str) -> bool:
    """Return ``True`` when the path sets of *a* and *b* may intersect.

    Conservative: two patterns under the same literal directory overlap even
    when their wildcards could never match the same file.  Patterns without a
    literal directory overlap when they are equal or when one matches a path
    built from the other, so ``**/*.py`` overlaps ``**/test_*.py`` but not
    ``**/*.ts``.
    """
    pa, pb = static_prefix(a), static_prefix(b)
    if pa and pb and _segment_prefix(pa, pb):
        return True
    if pb and matches(pb, a):
        return True
    if pa and matches(pa, b):
        return True
    if normalize(a) == normalize(b):
        return True
    return matches(_sample_path(a), b) or matches(_sample_path(b), a)


def scopes_overlap(a: Iterable[str], b: Iterable[str]) -> list[tuple[str, str]]:
    """Return every overlapping ``(pattern_a, pattern_b)`` pair."""
    b_list = list(b)
    return [(x, y) for x in a for y in b_list if patterns_overlap(x, y)]
