from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ResilienceSettings(BaseModel):
    skill_max_melts: int = Field(3, ge=1, description="Failures within the melt window that blow a skill fuse.")
    skill_melt_window_ms: int = Field(60_000, ge=1, description="Window in which melts accumulate.")
    skill_reset_ms: int = Field(30_000, ge=0, description="Cooldown before a blown fuse closes again.")
    agent_max_skill_calls: int = Field(5, ge=0)
    turn_max_agents: int = Field(8, ge=0)
    turn_max_skill_calls: int = Field(30, ge=0)
    conversation_max_calls: int = Field(50, ge=0)
    conversation_window_ms: int = Field(300_000, ge=1)


class SchedulerSettings(BaseModel):
    max_concurrent_agents: int = Field(10, ge=1, description="Upper bound of sub-agent tasks alive per conversation.")
    agent_timeout_ms: int = Field(60_000, ge=1)
    max_agent_timeout_ms: int = Field(120_000, ge=1)
    default_wait_ms: int = Field(5_000, ge=0)
    max_wait_ms: int = Field(60_000, ge=0)


class SubAgentSettings(BaseModel):
    max_tool_calls: int = Field(5, ge=0)
    skill_timeout_ms: int = Field(30_000, ge=1)
    resume_timeout_ms: int = Field(300_000, ge=1)
    llm_retry_attempts: int = Field(3, ge=1)
    llm_retry_max_backoff_seconds: float = Field(10.0, ge=0.0)


class MemorySettings(BaseModel):
    max_tool_calls: int = Field(15, ge=0)
    compaction_trigger_threshold: float = Field(0.8, gt=0.0, le=1.0)
    compaction_cooldown_ms: int = Field(60_000, ge=0)
    max_context_tokens: int = Field(200_000, ge=1)
    compaction_message_limit: int = Field(100, ge=1)
    compaction_token_budget: int = Field(2048, ge=1)


class EngineSettings(BaseModel):
    max_iterations: int = Field(10, ge=1)
    orchestrator_model: str | None = Field(default=None, description="Model identifier passed to the LLM client.")


class ObservabilitySettings(BaseModel):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_logs: bool = Field(True)


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")

    resilience: ResilienceSettings = Field(default_factory=ResilienceSettings)  # type: ignore[arg-type]
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)  # type: ignore[arg-type]
    sub_agent: SubAgentSettings = Field(default_factory=SubAgentSettings)  # type: ignore[arg-type]
    memory: MemorySettings = Field(default_factory=MemorySettings)  # type: ignore[arg-type]
    engine: EngineSettings = Field(default_factory=EngineSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_prefix="ASSISTANT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()


__all__ = [
    "EngineSettings",
    "MemorySettings",
    "ObservabilitySettings",
    "ResilienceSettings",
    "SchedulerSettings",
    "Settings",
    "SubAgentSettings",
    "get_settings",
]
