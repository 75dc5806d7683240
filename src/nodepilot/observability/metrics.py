"""Lightweight in-process metrics aggregation over agent runs."""

from __future__ import annotations

import threading
from dataclasses import dataclass

from nodepilot.agent.spec import RunResult


@dataclass
class AggregatedMetrics:
    """Aggregated counters across every recorded run."""

    runs_total: int = 0
    runs_failed: int = 0
    runs_timed_out: int = 0
    premium_requests_total: float = 0.0
    api_time_seconds_total: float = 0.0
    lines_added_total: int = 0
    lines_removed_total: int = 0
    tokens_total: int = 0

    def as_dict(self) -> dict[str, float | int]:
        failure_rate = (self.runs_failed / self.runs_total) if self.runs_total else 0.0
        return {
            "runs_total": self.runs_total,
            "runs_failed": self.runs_failed,
            "runs_timed_out": self.runs_timed_out,
            "failure_rate": failure_rate,
            "premium_requests_total": self.premium_requests_total,
            "api_time_seconds_total": self.api_time_seconds_total,
            "lines_added_total": self.lines_added_total,
            "lines_removed_total": self.lines_removed_total,
            "tokens_total": self.tokens_total,
        }


class MetricsRegistry:
    """Thread-safe accumulator for run results."""

    def __init__(self) -> None:
        self._metrics = AggregatedMetrics()
        self._lock = threading.RLock()

    def record(self, result: RunResult) -> None:
        with self._lock:
            self._metrics.runs_total += 1
            if not result.success:
                self._metrics.runs_failed += 1
            if result.timed_out:
                self._metrics.runs_timed_out += 1

            usage = result.metrics
            if usage is None:
                return
            if usage.premium_requests:
                self._metrics.premium_requests_total += usage.premium_requests
            if usage.api_time_seconds:
                self._metrics.api_time_seconds_total += usage.api_time_seconds
            if usage.code_changes is not None:
                self._metrics.lines_added_total += usage.code_changes.lines_added
                self._metrics.lines_removed_total += usage.code_changes.lines_removed
            if usage.token_usage is not None:
                self._metrics.tokens_total += usage.token_usage.total_tokens

    def snapshot(self) -> AggregatedMetrics:
        with self._lock:
            return AggregatedMetrics(
                runs_total=self._metrics.runs_total,
                runs_failed=self._metrics.runs_failed,
                runs_timed_out=self._metrics.runs_timed_out,
                premium_requests_total=self._metrics.premium_requests_total,
                api_time_seconds_total=self._metrics.api_time_seconds_total,
                lines_added_total=self._metrics.lines_added_total,
                lines_removed_total=self._metrics.lines_removed_total,
                tokens_total=self._metrics.tokens_total,
            )


_GLOBAL_METRICS = MetricsRegistry()


def get_metrics_registry() -> MetricsRegistry:
    return _GLOBAL_METRICS


def reset_metrics() -> None:
    global _GLOBAL_METRICS
    _GLOBAL_METRICS = MetricsRegistry()


__all__ = ["AggregatedMetrics", "MetricsRegistry", "get_metrics_registry", "reset_metrics"]
