"""Incremental parser for the agent's end-of-run usage summary.

Each output line is handed to an ordered list of matcher functions; the first
matcher that recognizes the line returns a partial update which is folded into
the accumulated state. Lines nobody recognizes are ignored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from nodepilot.agent.spec import CodeChangeStats, ModelUsageBreakdown, UsageMetrics

ANSI_ESCAPE_RE = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")
_PREFIX_RE = re.compile(r"^(\s*\[.*?\]\s*)+")

_PREMIUM_RE = re.compile(r"Total usage est:\s+([\d.]+)\s+Premium requests?", re.IGNORECASE)
_API_TIME_RE = re.compile(r"API time spent:\s+(.+)", re.IGNORECASE)
_SESSION_TIME_RE = re.compile(r"Total session time:\s+(.+)", re.IGNORECASE)
_CODE_CHANGES_RE = re.compile(r"Total code changes:\s+\+(\d+)\s+-(\d+)", re.IGNORECASE)
_BREAKDOWN_HEADER_RE = re.compile(r"Breakdown by AI model:", re.IGNORECASE)
_TOKEN = r"\d+(?:\.\d+)?[km]?"
_MODEL_LINE_RE = re.compile(
    rf"^([\w./-]+)\s+({_TOKEN})\s+in,\s+({_TOKEN})\s+out"
    rf"(?:,\s+({_TOKEN})\s+cached)?"
    r"(?:\s+\(Est\.\s+([\d.]+)\s+Premium requests?\))?",
    re.IGNORECASE,
)

_HOURS_RE = re.compile(r"([\d.]+)\s*h")
_MINUTES_RE = re.compile(r"([\d.]+)\s*m(?!s)")
_SECONDS_RE = re.compile(r"([\d.]+)\s*s")


def strip_ansi(value: str) -> str:
    """Remove ANSI escape sequences from a string."""
    return ANSI_ESCAPE_RE.sub("", value)


def strip_prefix(line: str) -> str:
    """Drop leading bracketed tags such as timestamps and log levels."""
    return _PREFIX_RE.sub("", strip_ansi(line)).strip()


def _to_float(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        return 0.0


def parse_duration(text: str) -> float:
    """Convert ``"2h 5m 10s"``-style durations to seconds."""
    total = 0.0
    if match := _HOURS_RE.search(text):
        total += _to_float(match.group(1)) * 3600
    if match := _MINUTES_RE.search(text):
        total += _to_float(match.group(1)) * 60
    if match := _SECONDS_RE.search(text):
        total += _to_float(match.group(1))
    return total


def parse_token_count(text: str) -> int:
    """Convert ``"231.5k"`` / ``"1.2m"`` / ``"500"`` to an integer count.

    Raises ``ValueError`` for input that is not a number with an optional suffix.
    """
    value = text.strip().lower()
    multiplier = 1
    if value.endswith("m"):
        multiplier, value = 1_000_000, value[:-1]
    elif value.endswith("k"):
        multiplier, value = 1_000, value[:-1]
    return int(round(float(value) * multiplier))


@dataclass(slots=True)
class StatsUpdate:
    """Partial update produced by one matcher."""

    premium_requests: Optional[float] = None
    api_time_seconds: Optional[float] = None
    session_time_seconds: Optional[float] = None
    code_changes: Optional[CodeChangeStats] = None
    model: Optional[ModelUsageBreakdown] = None
    opens_breakdown: bool = False


Matcher = Callable[[str], Optional[StatsUpdate]]


def match_premium_requests(line: str) -> Optional[StatsUpdate]:
    match = _PREMIUM_RE.search(line)
    if match is None:
        return None
    return StatsUpdate(premium_requests=_to_float(match.group(1)))


def match_api_time(line: str) -> Optional[StatsUpdate]:
    match = _API_TIME_RE.search(line)
    if match is None:
        return None
    return StatsUpdate(api_time_seconds=parse_duration(match.group(1)))


def match_session_time(line: str) -> Optional[StatsUpdate]:
    match = _SESSION_TIME_RE.search(line)
    if match is None:
        return None
    return StatsUpdate(session_time_seconds=parse_duration(match.group(1)))


def match_code_changes(line: str) -> Optional[StatsUpdate]:
    match = _CODE_CHANGES_RE.search(line)
    if match is None:
        return None
    return StatsUpdate(
        code_changes=CodeChangeStats(
            lines_added=int(match.group(1)), lines_removed=int(match.group(2))
        )
    )


def match_breakdown_header(line: str) -> Optional[StatsUpdate]:
    if _BREAKDOWN_HEADER_RE.search(line) is None:
        return None
    return StatsUpdate(opens_breakdown=True)


def match_model_line(line: str) -> Optional[StatsUpdate]:
    match = _MODEL_LINE_RE.match(line)
    if match is None:
        return None
    model, input_raw, output_raw, cached_raw, premium_raw = match.groups()
    try:
        breakdown = ModelUsageBreakdown(
            model=model,
            input_tokens=parse_token_count(input_raw),
            output_tokens=parse_token_count(output_raw),
            cached_tokens=parse_token_count(cached_raw) if cached_raw else None,
            premium_requests=_to_float(premium_raw) if premium_raw else None,
        )
    except ValueError:
        return None
    return StatsUpdate(model=breakdown)


TOP_LEVEL_MATCHERS: tuple[Matcher, ...] = (
    match_premium_requests,
    match_api_time,
    match_session_time,
    match_code_changes,
    match_breakdown_header,
)


@dataclass(slots=True)
class StatsParser:
    """Fold agent output lines into :class:`UsageMetrics`."""

    premium_requests: Optional[float] = None
    api_time_seconds: Optional[float] = None
    session_time_seconds: Optional[float] = None
    code_changes: Optional[CodeChangeStats] = None
    model_breakdown: list[ModelUsageBreakdown] = field(default_factory=list)
    in_breakdown: bool = False

    def feed(self, line: str) -> None:
        content = strip_prefix(line)
        if not content:
            return

        if self.in_breakdown:
            update = match_model_line(content)
            if update is not None:
                self._apply(update)
                return
            # Any non-model line ends the breakdown section.
            self.in_breakdown = False

        for matcher in TOP_LEVEL_MATCHERS:
            update = matcher(content)
            if update is not None:
                self._apply(update)
                return

    def _apply(self, update: StatsUpdate) -> None:
        if update.model is not None:
            self.model_breakdown.append(update.model)
            return
        self.in_breakdown = update.opens_breakdown
        if update.premium_requests is not None:
            self.premium_requests = update.premium_requests
        if update.api_time_seconds is not None:
            self.api_time_seconds = update.api_time_seconds
        if update.session_time_seconds is not None:
            self.session_time_seconds = update.session_time_seconds
        if update.code_changes is not None:
            self.code_changes = update.code_changes

    def has_metrics(self) -> bool:
        return (
            self.premium_requests is not None
            or self.api_time_seconds is not None
            or self.session_time_seconds is not None
            or self.code_changes is not None
            or bool(self.model_breakdown)
        )

    def get_metrics(self) -> Optional[UsageMetrics]:
        """Return accumulated metrics, or ``None`` when no summary line was seen."""
        if not self.has_metrics():
            return None
        return UsageMetrics(
            duration_ms=0,
            premium_requests=self.premium_requests,
            api_time_seconds=self.api_time_seconds,
            session_time_seconds=self.session_time_seconds,
            code_changes=self.code_changes,
            model_breakdown=list(self.model_breakdown),
        )


__all__ = [
    "Matcher",
    "StatsParser",
    "StatsUpdate",
    "TOP_LEVEL_MATCHERS",
    "parse_duration",
    "parse_token_count",
    "strip_ansi",
    "strip_prefix",
]
