"""Request, result and delegation primitives for agent runs."""

from __future__ import annotations

from .spec import (
    AugmentableNode,
    ModelUsageBreakdown,
    RunRequest,
    RunResult,
    TokenUsage,
    UsageMetrics,
)

__all__ = [
    "AugmentableNode",
    "ModelUsageBreakdown",
    "RunRequest",
    "RunResult",
    "TokenUsage",
    "UsageMetrics",
]
