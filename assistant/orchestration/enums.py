from __future__ import annotations

from enum import Enum


class AgentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_ORCHESTRATOR = "awaiting_orchestrator"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def blocks_dependents(self) -> bool:
        return self in (AgentStatus.FAILED, AgentStatus.TIMEOUT, AgentStatus.SKIPPED)


TERMINAL_STATUSES = frozenset(
    {AgentStatus.COMPLETED, AgentStatus.FAILED, AgentStatus.SKIPPED, AgentStatus.TIMEOUT}
)


class WaitMode(str, Enum):
    NON_BLOCKING = "non_blocking"
    WAIT_ANY = "wait_any"
    WAIT_ALL = "wait_all"


class MemoryAgentStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_ORCHESTRATOR = "awaiting_orchestrator"


__all__ = ["AgentStatus", "MemoryAgentStatus", "TERMINAL_STATUSES", "WaitMode"]
