from __future__ import annotations

from typing import Iterable


class OrchestrationError(RuntimeError):
    """Base class for orchestration failures."""


class SchedulingError(OrchestrationError):
    """Raised when a dispatch batch cannot be planned. Nothing has run yet."""

    kind = "scheduling_error"


class CycleDetectedError(SchedulingError):
    kind = "cycle_detected"

    def __init__(self, remaining: Iterable[str]) -> None:
        self.remaining = sorted(remaining)
        super().__init__(f"Dependency cycle detected among agents: {', '.join(self.remaining)}")


class UnknownDependencyError(SchedulingError):
    kind = "unknown_dependency"

    def __init__(self, dependency: str, *, agent_id: str | None = None) -> None:
        self.dependency = dependency
        self.agent_id = agent_id
        super().__init__(f"Unknown dependency '{dependency}'" + (f" referenced by '{agent_id}'" if agent_id else ""))


class AgentNotFoundError(OrchestrationError):
    def __init__(self, key: object) -> None:
        super().__init__(f"No agent registered for {key!r}")
        self.key = key


class AgentBusyError(OrchestrationError):
    """Raised when a mission is dispatched to an agent that is not idle."""


class AgentNotAwaitingError(OrchestrationError):
    """Raised when an update is sent to an agent that did not ask for help."""


__all__ = [
    "AgentBusyError",
    "AgentNotAwaitingError",
    "AgentNotFoundError",
    "CycleDetectedError",
    "OrchestrationError",
    "SchedulingError",
    "UnknownDependencyError",
]
