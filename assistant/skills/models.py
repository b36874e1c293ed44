from __future__ import annotations

from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field


class SkillResult(BaseModel):
    status: Literal["ok", "error"] = "ok"
    content: str = ""
    files_produced: list[str] = Field(default_factory=list)
    side_effects: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, content: str, **metadata: Any) -> "SkillResult":
        return cls(status="ok", content=content, metadata=metadata)

    @classmethod
    def error(cls, content: str, **metadata: Any) -> "SkillResult":
        return cls(status="error", content=content, metadata=metadata)

    @property
    def succeeded(self) -> bool:
        return self.status == "ok"


class SkillContext(BaseModel):
    """Identifiers a skill handler may need to scope its side effects."""

    model_config = ConfigDict(frozen=True)

    conversation_id: str
    user_id: str
    agent_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


SkillHandler = Callable[[dict[str, Any], SkillContext], Awaitable[SkillResult]]


class SkillDefinition(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(..., min_length=1)
    description: str = ""
    handler: SkillHandler | None = None
    tags: list[str] = Field(default_factory=list)

    @property
    def domain(self) -> str:
        return self.name.split(".", 1)[0]


__all__ = ["SkillContext", "SkillDefinition", "SkillHandler", "SkillResult"]
