"""Discover the models the agent CLI accepts by parsing its help text."""

from __future__ import annotations

import logging
import re
import time
from typing import Callable, Optional

from nodepilot.agent.spec import ModelDiscoveryResult, ModelInfo, ModelTier, ModelVendor
from nodepilot.runners.process import AsyncioProcessSpawner, ProcessSpawner, capture_command
from nodepilot.settings import AgentSettings, get_agent_settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

_CHOICES_RE = re.compile(r"--model\s+<\w+>\s+.*?\(choices:\s*([^)]+)\)", re.IGNORECASE | re.DOTALL)
_QUOTED_RE = re.compile(r'"([^"]+)"')
_VERSION_RE = re.compile(r"\d+\.\d+\.\d+(?:[-+][\w.]+)?")

_VENDOR_PREFIXES: tuple[tuple[str, ModelVendor, str], ...] = (
    ("claude-", "anthropic", "claude"),
    ("gpt-", "openai", "gpt"),
    ("gemini-", "google", "gemini"),
)
_FAST_RE = re.compile(r"\b(mini|haiku)\b", re.IGNORECASE)
_PREMIUM_RE = re.compile(r"\b(opus|max)\b", re.IGNORECASE)


def classify_model(model_id: str) -> ModelInfo:
    """Derive vendor, family and tier from a model identifier."""
    lowered = model_id.lower()
    vendor: ModelVendor = "unknown"
    family = model_id
    for prefix, prefix_vendor, prefix_family in _VENDOR_PREFIXES:
        if lowered.startswith(prefix):
            vendor, family = prefix_vendor, prefix_family
            break

    tier: ModelTier = "standard"
    if _FAST_RE.search(model_id):
        tier = "fast"
    elif _PREMIUM_RE.search(model_id):
        tier = "premium"
    return ModelInfo(id=model_id, vendor=vendor, family=family, tier=tier)


def parse_model_choices(help_text: str) -> list[str]:
    """Extract the quoted ``--model`` choices from help output (empty on no match)."""
    match = _CHOICES_RE.search(help_text)
    if match is None:
        return []
    return _QUOTED_RE.findall(match.group(1))


class ModelDiscovery:
    """Cache of discovered models with separate success and failure lifetimes."""

    def __init__(
        self,
        *,
        spawner: ProcessSpawner | None = None,
        settings: AgentSettings | None = None,
        clock: Clock = time.time,
    ) -> None:
        self.spawner = spawner or AsyncioProcessSpawner()
        self.settings = settings or get_agent_settings()
        self.clock = clock
        self._cached: Optional[ModelDiscoveryResult] = None
        self._failed_at: Optional[float] = None

    def _empty(self) -> ModelDiscoveryResult:
        return ModelDiscoveryResult(discovered_at=self.clock())

    async def discover(self) -> ModelDiscoveryResult:
        """Query the CLI for its models, honouring the failure back-off window."""
        now = self.clock()
        if self._failed_at is not None and now - self._failed_at < self.settings.MODEL_FAILURE_TTL_SEC:
            logger.debug("Skipping model discovery; last failure %.0fs ago", now - self._failed_at)
            return self._empty()

        binary = self.settings.AGENT_BINARY
        # The help command's exit code is not meaningful; only its text is.
        output = await capture_command(
            self.spawner, f"{binary} --help", timeout=self.settings.HELP_TIMEOUT_SEC
        )
        choices = parse_model_choices(output.stdout + "\n" + output.stderr)
        if not choices:
            logger.warning("Model discovery found no --model choices in CLI help output")
            self._failed_at = self.clock()
            return self._empty()

        version_output = await capture_command(
            self.spawner, f"{binary} --version", timeout=self.settings.HELP_TIMEOUT_SEC
        )
        version_match = _VERSION_RE.search(version_output.stdout) if version_output.ok else None

        result = ModelDiscoveryResult(
            models=[classify_model(choice) for choice in choices],
            raw_choices=choices,
            discovered_at=self.clock(),
            cli_version=version_match.group(0) if version_match else None,
        )
        self._cached = result
        self._failed_at = None
        logger.info("Discovered %d models", len(result.models))
        return result

    async def get_cached_models(self) -> ModelDiscoveryResult:
        if self._cached is not None:
            age = self.clock() - self._cached.discovered_at
            if age < self.settings.MODEL_CACHE_TTL_SEC:
                return self._cached
        return await self.discover()

    async def refresh(self) -> ModelDiscoveryResult:
        self.reset()
        return await self.discover()

    def reset(self) -> None:
        self._cached = None
        self._failed_at = None

    async def is_valid_model(self, model_id: str) -> bool:
        result = await self.get_cached_models()
        return any(model.id == model_id for model in result.models)

    async def suggest_model(self, tier: ModelTier) -> Optional[ModelInfo]:
        """Pick a model for ``tier``, falling back to standard and then to anything."""
        models = (await self.get_cached_models()).models
        for candidate_tier in (tier, "standard"):
            for model in models:
                if model.tier == candidate_tier:
                    return model
        return models[0] if models else None


__all__ = ["Clock", "ModelDiscovery", "classify_model", "parse_model_choices"]
