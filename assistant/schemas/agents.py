from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..orchestration.enums import AgentStatus


class DispatchSpec(BaseModel):
    """One agent to run within a dispatch batch."""

    model_config = ConfigDict(frozen=True)

    agent_id: str = Field(..., min_length=1)
    mission: str = Field(..., min_length=1)
    skills: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    context: str | None = None
    max_tool_calls: int | None = Field(default=None, ge=0)
    timeout_ms: int | None = Field(default=None, ge=1)
    model_override: str | None = None

    @field_validator("depends_on", "skills", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class AgentExecutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: AgentStatus
    result: str | None = None
    tool_calls_used: int = Field(0, ge=0)
    duration_ms: int | None = None
    reason: str | None = Field(default=None, description="Why an awaiting agent needs orchestrator input.")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def completed(cls, result: str | None, *, tool_calls_used: int = 0, duration_ms: int | None = None) -> "AgentExecutionResult":
        return cls(status=AgentStatus.COMPLETED, result=result, tool_calls_used=tool_calls_used, duration_ms=duration_ms)

    @classmethod
    def failed(cls, result: str, *, tool_calls_used: int = 0, duration_ms: int | None = None) -> "AgentExecutionResult":
        return cls(status=AgentStatus.FAILED, result=result, tool_calls_used=tool_calls_used, duration_ms=duration_ms)


class AgentUpdate(BaseModel):
    """Orchestrator reply delivered to an agent waiting on ``request_help``."""

    model_config = ConfigDict(frozen=True)

    message: str | None = None
    skills: list[str] = Field(default_factory=list)
    context_files: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _require_content(self) -> "AgentUpdate":
        if not self.message and not self.skills and not self.context_files:
            raise ValueError("At least one of message, skills, or context_files must be provided.")
        return self

    def render(self) -> str:
        parts: list[str] = []
        if self.message:
            parts.append(f"Orchestrator response: {self.message}")
        if self.skills:
            parts.append(f"New skills added: {', '.join(self.skills)}")
        if self.context_files:
            parts.append(f"New context files provided: {', '.join(self.context_files)}")
        return "\n\n".join(parts)


__all__ = ["AgentExecutionResult", "AgentUpdate", "DispatchSpec"]
