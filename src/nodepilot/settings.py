"""Global settings for agent CLI invocation and discovery defaults."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentSettings(BaseSettings):
    """Environment-driven configuration for the agent CLI runner."""

    model_config = SettingsConfigDict(
        env_prefix="NODEPILOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    AGENT_BINARY: str = Field(
        default="copilot",
        description="Agent CLI executable (may include a leading interpreter).",
    )
    WRAPPER_BINARY: str = Field(
        default="gh",
        description="Host CLI that can wrap the agent as an extension.",
    )
    RUN_TIMEOUT_MS: int = Field(
        default=0,
        description="Default run timeout in milliseconds (0 disables the timeout).",
    )
    KILL_GRACE_SEC: float = Field(
        default=5.0,
        description="Seconds between SIGTERM and SIGKILL when a run times out.",
    )
    MODEL_CACHE_TTL_SEC: float = Field(
        default=3600.0,
        description="How long a successful model discovery stays valid.",
    )
    MODEL_FAILURE_TTL_SEC: float = Field(
        default=300.0,
        description="How long a failed model discovery suppresses retries.",
    )
    HELP_TIMEOUT_SEC: float = Field(
        default=10.0,
        description="Timeout for the help-text probe used by model discovery.",
    )
    CLI_CHECK_TIMEOUT_SEC: float = Field(
        default=10.0,
        description="Timeout for each availability/auth probe command.",
    )
    PLUGIN_LIST_TIMEOUT_SEC: float = Field(
        default=15.0,
        description="Timeout for listing installed plugins.",
    )
    PLUGIN_INSTALL_TIMEOUT_SEC: float = Field(
        default=60.0,
        description="Timeout for installing a plugin.",
    )
    AUGMENT_TIMEOUT_MS: int = Field(
        default=30_000,
        description="Timeout for the single-turn instruction augmentation run.",
    )
    STRIPPED_ENV_VARS: str = Field(
        default="NODE_OPTIONS,PYTHONPATH,PYTHONHOME,PYTHONSTARTUP",
        description="Comma-separated host runtime variables removed from the child env.",
    )
    COMPLETION_MARKER: str = Field(
        default="Task complete",
        description="Stdout marker that proves completion when no exit status is reported.",
    )

    @property
    def stripped_env_vars(self) -> tuple[str, ...]:
        return tuple(name.strip() for name in self.STRIPPED_ENV_VARS.split(",") if name.strip())

    @model_validator(mode="after")
    def validate_limits(self) -> "AgentSettings":
        """Reject negative timeouts and inverted cache lifetimes."""
        for name in (
            "RUN_TIMEOUT_MS",
            "KILL_GRACE_SEC",
            "MODEL_CACHE_TTL_SEC",
            "MODEL_FAILURE_TTL_SEC",
            "HELP_TIMEOUT_SEC",
            "CLI_CHECK_TIMEOUT_SEC",
            "PLUGIN_LIST_TIMEOUT_SEC",
            "PLUGIN_INSTALL_TIMEOUT_SEC",
            "AUGMENT_TIMEOUT_MS",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"NODEPILOT_{name} must be >= 0")
        if self.MODEL_FAILURE_TTL_SEC > self.MODEL_CACHE_TTL_SEC:
            raise ValueError(
                "NODEPILOT_MODEL_FAILURE_TTL_SEC must not exceed NODEPILOT_MODEL_CACHE_TTL_SEC"
            )
        if not self.AGENT_BINARY.strip():
            raise ValueError("NODEPILOT_AGENT_BINARY must not be empty")
        return self


@lru_cache
def get_agent_settings() -> AgentSettings:
    """Return cached agent settings."""
    return AgentSettings()


__all__ = ["AgentSettings", "get_agent_settings"]
