"""
OpenTelemetry tracing for agent runs.

Tracing is opt-in: when ``NODEPILOT_OTEL_TRACING_ENABLED`` is not ``true`` every
span is a no-op, so the runner can always wrap its work in :func:`trace_span`.
Spans are exported over OTLP/HTTP when an endpoint is configured, otherwise to
the console.
"""

from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

logger = logging.getLogger(__name__)


class ObservabilityConfig:
    """Configuration for tracing."""

    def __init__(
        self,
        enable_tracing: bool = False,
        service_name: str = "nodepilot",
        otlp_endpoint: Optional[str] = None,
    ):
        """
        Initialize observability configuration.

        Args:
            enable_tracing: Enable OpenTelemetry tracing
            service_name: Service name attached to exported spans
            otlp_endpoint: OTLP endpoint URL (e.g., http://localhost:4318)
        """
        self.enable_tracing = enable_tracing
        self.service_name = service_name
        self.otlp_endpoint = otlp_endpoint

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Create configuration from environment variables."""
        return cls(
            enable_tracing=os.getenv("NODEPILOT_OTEL_TRACING_ENABLED", "false").lower() == "true",
            service_name=os.getenv("NODEPILOT_SERVICE_NAME", "nodepilot"),
            otlp_endpoint=os.getenv("NODEPILOT_OTLP_ENDPOINT"),
        )


class ObservabilityManager:
    """
    Owns the tracer provider lifecycle.

    Singleton pattern for global access.
    """

    _instance: Optional[ObservabilityManager] = None
    _lock = threading.Lock()

    def __init__(self, config: Optional[ObservabilityConfig] = None):
        self.config = config or ObservabilityConfig.from_env()
        self._initialized = False
        self._provider: Optional[TracerProvider] = None
        self._tracer: Optional[Any] = None

    @classmethod
    def get_instance(cls, config: Optional[ObservabilityConfig] = None) -> ObservabilityManager:
        """Get or create singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(config)
        return cls._instance

    def initialize(self) -> None:
        with self._lock:
            if self._initialized:
                return
            if self.config.enable_tracing:
                self._init_tracing()
            self._initialized = True
            logger.info("Observability initialized: tracing=%s", self.config.enable_tracing)

    def _init_tracing(self) -> None:
        resource = Resource.create({"service.name": self.config.service_name})
        provider = TracerProvider(resource=resource)

        if self.config.otlp_endpoint:
            exporter = OTLPSpanExporter(endpoint=f"{self.config.otlp_endpoint}/v1/traces")
            provider.add_span_processor(BatchSpanProcessor(exporter))
        else:
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

        # Use a private provider so repeated initialization does not fight over the global one.
        self._provider = provider
        self._tracer = provider.get_tracer(__name__)
        logger.info("OpenTelemetry tracing initialized")

    def get_tracer(self) -> Any:
        """Get OpenTelemetry tracer instance (``None`` when tracing is disabled)."""
        if not self._initialized:
            self.initialize()
        return self._tracer

    def shutdown(self) -> None:
        with self._lock:
            if self._provider is not None:
                self._provider.shutdown()
                self._provider = None
            self._tracer = None
            self._initialized = False
            logger.info("Observability shutdown complete")


def initialize_observability(config: Optional[ObservabilityConfig] = None) -> None:
    manager = ObservabilityManager.get_instance(config)
    manager.initialize()


def get_tracer() -> Any:
    """Get global tracer instance."""
    return ObservabilityManager.get_instance().get_tracer()


def shutdown_observability() -> None:
    ObservabilityManager.get_instance().shutdown()


class NoOpSpan:
    """Span stand-in used while tracing is disabled."""

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def add_event(self, name: str, attributes: Optional[Dict[str, Any]] = None) -> None:
        pass


@contextmanager
def trace_span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[Any]:
    """
    Context manager for creating a trace span.

    Usage:
        with trace_span("nodepilot.agent.run", {"label": "job"}) as span:
            span.set_attribute("success", True)
    """
    tracer = get_tracer()
    if tracer is None:
        yield NoOpSpan()
        return

    with tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def current_traceparent() -> Optional[str]:
    """Return the current W3C traceparent string when a span is recording."""
    ctx = trace.get_current_span().get_span_context()
    if not ctx.is_valid:
        return None
    return f"00-{ctx.trace_id:032x}-{ctx.span_id:016x}-01"


__all__ = [
    "NoOpSpan",
    "ObservabilityConfig",
    "ObservabilityManager",
    "current_traceparent",
    "get_tracer",
    "initialize_observability",
    "shutdown_observability",
    "trace_span",
]
