"""Redaction helpers for text that leaves the process (events, summaries, logs)."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable

MAX_MESSAGE_CHARS = 2_000

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(r"\b(gh[pousr]_[A-Za-z0-9]{16,}|github_pat_[A-Za-z0-9_]{16,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(r"(?i)(https?://)[^/\s:@]+(?::[^/\s@]*)?@"),
        r"\1[redacted]@",
    ),
    (
        re.compile(
            r"(?i)\b(kanban|taskinfa|gh|github|anthropic)[a-z0-9_]*_?(api_)?(key|token)\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
)


def sanitize_text(
    text: str,
    *,
    secrets: Iterable[str] = (),
    max_chars: int = MAX_MESSAGE_CHARS,
) -> str:
    """Redact known secrets and token-shaped strings, then clamp."""

    compact = text.strip()
    if not compact:
        return ""

    redacted = compact
    for secret in secrets:
        if secret and len(secret) >= 4:
            redacted = redacted.replace(secret, "[redacted-secret]")
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)

    if len(redacted) <= max_chars:
        return redacted
    return redacted[:max_chars]


def tail(text: str, limit: int) -> str:
    """Last `limit` characters of stripped text."""

    compact = text.strip()
    if len(compact) <= limit:
        return compact
    return compact[-limit:]
