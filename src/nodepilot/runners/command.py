"""Command construction for the agent CLI with allowlist enforcement."""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import sys
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("nodepilot.security")

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_SHELL_METACHARS_RE = re.compile(r"[`|;\n\r\\]")
_WHITESPACE_RE = re.compile(r"\s")
_ALLOWED_SCHEMES = frozenset({"http", "https"})


@dataclass(frozen=True, slots=True)
class CommandOptions:
    """Inputs for a single agent command line."""

    task: str
    cwd: Optional[str] = None
    model: Optional[str] = None
    log_dir: Optional[str] = None
    share_path: Optional[str] = None
    session_id: Optional[str] = None
    config_dir: Optional[str] = None
    max_turns: Optional[int] = None
    allowed_folders: Sequence[str] = ()
    allowed_urls: Sequence[str] = ()


def _reject(raw: object, reason: str) -> None:
    audit_logger.warning("[SECURITY] Rejected URL %r: %s", raw, reason)


def sanitize_url(raw: object) -> Optional[str]:
    """Validate a network allowlist entry.

    Returns the trimmed entry when it is safe to forward to the agent, ``None``
    otherwise. Bare domains and ``*.domain`` wildcards are accepted; the only
    permitted schemes are http and https.
    """
    if not isinstance(raw, str) or not raw:
        _reject(raw, "empty or not a string")
        return None

    value = raw.strip()
    if not value:
        _reject(raw, "empty after trimming")
        return None
    if _CONTROL_CHARS_RE.search(value):
        _reject(raw, "contains control characters")
        return None
    if _SHELL_METACHARS_RE.search(value) or "$(" in value or "&&" in value:
        _reject(raw, "contains shell metacharacters")
        return None
    if value.startswith("-"):
        _reject(raw, "looks like a command-line flag")
        return None
    if _WHITESPACE_RE.search(value):
        _reject(raw, "contains whitespace")
        return None

    if value.startswith("*."):
        candidate = "https://" + value[2:]
    elif "://" in value:
        candidate = value
    else:
        candidate = "https://" + value

    try:
        parsed = urlsplit(candidate)
        # Accessing .port validates the port component.
        parsed.port
    except ValueError as exc:
        _reject(raw, f"unparseable ({exc})")
        return None

    if parsed.scheme.lower() not in _ALLOWED_SCHEMES:
        _reject(raw, f"scheme {parsed.scheme!r} is not allowed")
        return None
    if not parsed.hostname:
        _reject(raw, "missing host")
        return None
    if parsed.username or parsed.password:
        _reject(raw, "embedded credentials")
        return None

    return value


def _describe_url(value: str) -> str:
    candidate = value if "://" in value else "https://" + value.removeprefix("*.")
    parsed = urlsplit(candidate)
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}"


def resolve_allowed_urls(urls: Iterable[object]) -> list[str]:
    """Sanitize and dedupe URL allowlist entries, preserving order."""
    accepted: list[str] = []
    for raw in urls:
        value = sanitize_url(raw)
        if value is not None and value not in accepted:
            accepted.append(value)
    if accepted:
        audit_logger.info(
            "[SECURITY] URL allowlist: %s", ", ".join(_describe_url(value) for value in accepted)
        )
    return accepted


def resolve_allowed_dirs(
    cwd: Optional[str],
    folders: Iterable[str],
    *,
    fallback_cwd: Optional[str] = None,
) -> list[str]:
    """Resolve the filesystem allowlist.

    The working directory comes first. Extra folders must be absolute and must
    exist; anything else is dropped with a warning. When nothing resolves, the
    fallback directory (or the process cwd) is used so the agent is never
    launched without a scope.
    """
    resolved: list[str] = []

    if cwd:
        cwd_path = os.path.abspath(cwd)
        if os.path.isdir(cwd_path):
            resolved.append(cwd_path)
        else:
            audit_logger.error("[SECURITY] Working directory does not exist: %s", cwd_path)

    for folder in folders:
        if not os.path.isabs(folder):
            audit_logger.warning("[SECURITY] Dropping relative allowed folder: %s", folder)
            continue
        path = os.path.normpath(folder)
        if not os.path.isdir(path):
            audit_logger.warning("[SECURITY] Dropping missing allowed folder: %s", path)
            continue
        if path not in resolved:
            resolved.append(path)

    if not resolved:
        fallback = fallback_cwd or os.getcwd()
        audit_logger.warning("[SECURITY] No allowed directory resolved; falling back to %s", fallback)
        resolved.append(fallback)

    audit_logger.info("[SECURITY] Directory allowlist: %s", ", ".join(resolved))
    return resolved


def quote_arg(value: str, platform: str = sys.platform) -> str:
    """Quote a single argument for the platform shell."""
    if platform == "win32":
        return json.dumps(value)
    return shlex.quote(value)


def build_command(
    options: CommandOptions,
    *,
    binary: str = "copilot",
    platform: str = sys.platform,
    fallback_cwd: Optional[str] = None,
) -> str:
    """Build the shell command line for one agent invocation.

    ``binary`` is inserted verbatim since it comes from trusted configuration;
    every other value is quoted.
    """

    def q(value: str) -> str:
        return quote_arg(value, platform)

    parts: list[str] = [binary, "-p", q(options.task), "--stream", "off"]

    for directory in resolve_allowed_dirs(
        options.cwd, options.allowed_folders, fallback_cwd=fallback_cwd
    ):
        parts.extend(["--add-dir", q(directory)])

    # Tool permission only; filesystem and network scope stay explicit above and below.
    parts.append("--allow-all-tools")

    for url in resolve_allowed_urls(options.allowed_urls):
        parts.extend(["--allow-url", q(url)])

    if options.config_dir:
        parts.extend(["--config-dir", q(options.config_dir)])
    if options.model:
        parts.extend(["--model", q(options.model)])
    if options.log_dir:
        parts.extend(["--log-dir", q(options.log_dir), "--log-level", "debug"])
    if options.share_path:
        parts.extend(["--share", q(options.share_path)])
    if options.session_id:
        parts.extend(["--resume", q(options.session_id)])
    if options.max_turns is not None:
        parts.extend(["--max-turns", str(int(options.max_turns))])

    command = " ".join(parts)
    logger.debug("Built agent command: %s", command)
    return command


__all__ = [
    "CommandOptions",
    "build_command",
    "quote_arg",
    "resolve_allowed_dirs",
    "resolve_allowed_urls",
    "sanitize_url",
]
