"""Classify worker failure text into typed, retryable-or-not errors."""

from __future__ import annotations

import re
from typing import Callable

from taskwave.errors import PermissionDenied, ProviderError, TaskwaveError

RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "usage limit",
    "you've hit your limit",
    "quota",
    "429",
    "too many requests",
    "overloaded",
)

POLICY_BLOCK_PATTERNS: tuple[str, ...] = (
    "blocked by policy",
    "read-only sandbox",
    "approval_policy",
)

AUTH_PATTERNS: tuple[str, ...] = (
    "invalid api key",
    "invalid x-api-key",
    "authentication_error",
    "unauthorized",
    "401",
    "please run /login",
    "not logged in",
)

NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "not found in path",
    "command not found",
    "commandnotfoundexception",
    "enoent",
)

EXTERNAL_FAILURE_PATTERNS: tuple[str, ...] = (
    "network",
    "timeout",
    "tls",
    "econnreset",
    "etimedout",
    "certificate",
    "ssl",
    "stalled",
    "internal server error",
    "bad gateway",
    "service unavailable",
)

_STATUS_RE = re.compile(r"\b([45]\d\d)\b")


def _matcher(*groups: tuple[str, ...]) -> Callable[[str], bool]:
    patterns = tuple(p for group in groups for p in group)

    def _match(text: str) -> bool:
        lower = (text or "").lower()
        return any(p in lower for p in patterns)

    return _match


looks_like_rate_limit = _matcher(RATE_LIMIT_PATTERNS)
looks_like_policy_block = _matcher(POLICY_BLOCK_PATTERNS)
looks_like_auth_failure = _matcher(AUTH_PATTERNS)
looks_like_not_available = _matcher(NOT_AVAILABLE_PATTERNS)
# Rate limits count as external.
looks_like_external_failure = _matcher(RATE_LIMIT_PATTERNS, EXTERNAL_FAILURE_PATTERNS)


def extract_status_code(text: str) -> int | None:
    """Return the first HTTP-looking 4xx/5xx status in *text*, if any."""
    m = _STATUS_RE.search(text or "")
    return int(m.group(1)) if m else None


def classify_worker_error(
    worker: str,
    text: str,
    *,
    status_code: int | None = None,
    return_code: int | None = None,
) -> TaskwaveError:
    """Map a worker's error text to a typed error.

    Order matters: a missing binary or bad credentials are fatal even when the
    message also mentions a transient-looking word.
    """
    detail = (text or "").strip() or f"exit code {return_code}"
    if looks_like_not_available(detail):
        return ProviderError.not_available(worker, detail)
    if looks_like_auth_failure(detail):
        return PermissionDenied.api_auth(worker, detail)
    if looks_like_policy_block(detail):
        return PermissionDenied.command_blocked(detail)
    if looks_like_rate_limit(detail):
        return ProviderError.rate_limit(worker, detail)

    status = status_code if status_code is not None else extract_status_code(detail)
    if status is not None:
        return ProviderError.api_error(worker, detail, status_code=status)
    if looks_like_external_failure(detail):
        return ProviderError.api_error(worker, detail)
    return ProviderError.crash(worker, detail, return_code=return_code)
