"""Request and result primitives shared by the runner, delegator and CLI surfaces."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional

ModelTier = Literal["fast", "standard", "premium"]
ModelVendor = Literal["anthropic", "openai", "google", "unknown"]
AgentSource = Literal["plugin", "custom-agent"]
AuthMethod = Literal["gh", "standalone", "unknown"]


@dataclass(slots=True)
class TokenUsage:
    """Aggregate token counts for a run."""

    input_tokens: int
    output_tokens: int
    total_tokens: int
    model: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "model": self.model,
        }


@dataclass(slots=True)
class ModelUsageBreakdown:
    """Per-model usage line from the agent's end-of-run summary."""

    model: str
    input_tokens: int
    output_tokens: int
    cached_tokens: Optional[int] = None
    premium_requests: Optional[float] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cached_tokens": self.cached_tokens,
            "premium_requests": self.premium_requests,
        }


@dataclass(slots=True)
class CodeChangeStats:
    lines_added: int
    lines_removed: int


@dataclass(slots=True)
class UsageMetrics:
    """Usage statistics scraped from agent output.

    Only ``duration_ms`` is always present; every other field is filled in when
    the corresponding summary line was seen.
    """

    duration_ms: int = 0
    premium_requests: Optional[float] = None
    api_time_seconds: Optional[float] = None
    session_time_seconds: Optional[float] = None
    code_changes: Optional[CodeChangeStats] = None
    model_breakdown: list[ModelUsageBreakdown] = field(default_factory=list)
    token_usage: Optional[TokenUsage] = None

    def ensure_token_usage(self) -> None:
        """Derive the aggregate token usage from the model breakdown when missing."""
        if self.token_usage is not None or not self.model_breakdown:
            return
        input_tokens = sum(entry.input_tokens for entry in self.model_breakdown)
        output_tokens = sum(entry.output_tokens for entry in self.model_breakdown)
        self.token_usage = TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            model=self.model_breakdown[0].model,
        )

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"duration_ms": self.duration_ms}
        if self.premium_requests is not None:
            payload["premium_requests"] = self.premium_requests
        if self.api_time_seconds is not None:
            payload["api_time_seconds"] = self.api_time_seconds
        if self.session_time_seconds is not None:
            payload["session_time_seconds"] = self.session_time_seconds
        if self.code_changes is not None:
            payload["code_changes"] = {
                "lines_added": self.code_changes.lines_added,
                "lines_removed": self.code_changes.lines_removed,
            }
        if self.model_breakdown:
            payload["model_breakdown"] = [entry.as_dict() for entry in self.model_breakdown]
        if self.token_usage is not None:
            payload["token_usage"] = self.token_usage.as_dict()
        return payload


@dataclass(frozen=True, slots=True)
class RunRequest:
    """Immutable description of one agent invocation."""

    cwd: Path
    task: str
    instructions: Optional[str] = None
    label: str = "agent"
    job_id: Optional[str] = None
    session_id: Optional[str] = None
    model: Optional[str] = None
    log_dir: Optional[Path] = None
    share_path: Optional[Path] = None
    config_dir: Optional[Path] = None
    allowed_folders: tuple[str, ...] = ()
    allowed_urls: tuple[str, ...] = ()
    max_turns: Optional[int] = None
    timeout_ms: Optional[int] = None
    skip_instructions_file: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "cwd", Path(self.cwd))
        object.__setattr__(self, "allowed_folders", tuple(self.allowed_folders))
        object.__setattr__(self, "allowed_urls", tuple(self.allowed_urls))
        if self.timeout_ms is not None and self.timeout_ms < 0:
            raise ValueError(f"timeout_ms must be >= 0, got {self.timeout_ms}")
        if self.max_turns is not None and self.max_turns <= 0:
            raise ValueError(f"max_turns must be positive, got {self.max_turns}")


@dataclass(slots=True)
class RunResult:
    """Outcome of a single agent invocation."""

    success: bool
    session_id: Optional[str] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None
    metrics: Optional[UsageMetrics] = None
    timed_out: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "session_id": self.session_id,
            "error": self.error,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "metrics": self.metrics.as_dict() if self.metrics else None,
        }


@dataclass(slots=True)
class ModelInfo:
    id: str
    vendor: ModelVendor
    family: str
    tier: ModelTier


@dataclass(slots=True)
class ModelDiscoveryResult:
    """Snapshot of the models the agent CLI advertises."""

    models: list[ModelInfo] = field(default_factory=list)
    raw_choices: list[str] = field(default_factory=list)
    discovered_at: float = 0.0
    cli_version: Optional[str] = None


@dataclass(slots=True)
class InstalledPlugin:
    name: str
    source: Optional[str] = None


@dataclass(slots=True)
class PluginInstallResult:
    success: bool
    error: Optional[str] = None


@dataclass(slots=True)
class CustomAgent:
    name: str
    path: Path


@dataclass(slots=True)
class AgentAvailability:
    available: bool
    source: Optional[AgentSource] = None
    install_source: Optional[str] = None


@dataclass(slots=True)
class AuthStatus:
    authenticated: bool
    method: AuthMethod = "unknown"


@dataclass(slots=True)
class AugmentableNode:
    """A plan node whose instructions may be enriched before execution."""

    id: str
    instructions: str
    original_instructions: Optional[str] = None
    augment_instructions: bool = True


@dataclass(slots=True)
class SkillDescription:
    name: str
    description: str


__all__ = [
    "AgentAvailability",
    "AgentSource",
    "AugmentableNode",
    "AuthMethod",
    "AuthStatus",
    "CodeChangeStats",
    "CustomAgent",
    "InstalledPlugin",
    "ModelDiscoveryResult",
    "ModelInfo",
    "ModelTier",
    "ModelUsageBreakdown",
    "ModelVendor",
    "PluginInstallResult",
    "RunRequest",
    "RunResult",
    "SkillDescription",
    "TokenUsage",
    "UsageMetrics",
]
