"""Session identifier extraction from live output and archived artefacts."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Callable, Iterable, Optional

logger = logging.getLogger(__name__)

_UUID = r"[a-f0-9-]{36}"

LIVE_SESSION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"Session ID[:\s]+({_UUID})", re.IGNORECASE),
    re.compile(rf"session[:\s]+({_UUID})", re.IGNORECASE),
    re.compile(rf"Starting session[:\s]+({_UUID})", re.IGNORECASE),
)

_SHARE_LABELLED_RE = re.compile(rf"Session(?:\s+ID)?[:\s*]+`?({_UUID})`?", re.IGNORECASE)
_ANY_UUID_RE = re.compile(
    r"[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}", re.IGNORECASE
)
_CHAT_LINK_RE = re.compile(r"vscode-chat-session://[^/]+/([a-f0-9-]+)", re.IGNORECASE)
_LOG_NAME_RE = re.compile(r"copilot-\d{4}-\d{2}-\d{2}-([a-f0-9-]+)\.log$", re.IGNORECASE)

SessionStrategy = Callable[[], Optional[str]]


def extract_session_id(text: str) -> Optional[str]:
    """Return the first session identifier found in a line of agent output."""
    for pattern in LIVE_SESSION_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def session_id_from_share_text(content: str) -> Optional[str]:
    if match := _SHARE_LABELLED_RE.search(content):
        return match.group(1)
    if match := _ANY_UUID_RE.search(content[:500]):
        return match.group(0)
    if match := _CHAT_LINK_RE.search(content):
        return match.group(1)
    if match := _ANY_UUID_RE.search(content):
        return match.group(0)
    return None


def session_id_from_share_file(path: Path) -> Optional[str]:
    """Read a session identifier from the agent's shared transcript."""
    if not path.is_file():
        return None
    return session_id_from_share_text(path.read_text(encoding="utf-8", errors="replace"))


def session_id_from_log_dir(log_dir: Path) -> Optional[str]:
    """Take the identifier from the newest ``copilot-YYYY-MM-DD-<id>.log`` file."""
    if not log_dir.is_dir():
        return None
    candidates = sorted(
        log_dir.glob("copilot-*.log"), key=lambda item: item.stat().st_mtime, reverse=True
    )
    for candidate in candidates:
        match = _LOG_NAME_RE.search(candidate.name)
        if match:
            return match.group(1)
    return None


def resolve_session_id(strategies: Iterable[SessionStrategy]) -> Optional[str]:
    """Run strategies in order and return the first non-empty identifier."""
    for strategy in strategies:
        try:
            value = strategy()
        except OSError as exc:
            logger.warning("Session lookup failed: %s", exc)
            continue
        if value:
            return value
    return None


__all__ = [
    "LIVE_SESSION_PATTERNS",
    "SessionStrategy",
    "extract_session_id",
    "resolve_session_id",
    "session_id_from_log_dir",
    "session_id_from_share_file",
    "session_id_from_share_text",
]
