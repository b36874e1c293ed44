from __future__ import annotations

import threading
from typing import Any, Hashable

from .exceptions import AgentNotFoundError

AgentKey = tuple[str, Hashable]

SUB_AGENT = "sub_agent"
MEMORY_AGENT = "memory_agent"


class AgentRegistry:
    """Lock-guarded map from ``(kind, key)`` to a live agent handle."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._agents: dict[AgentKey, Any] = {}

    def register(self, kind: str, key: Hashable, agent: Any) -> None:
        with self._lock:
            current = self._agents.get((kind, key))
            if current is not None and current is not agent:
                raise ValueError(f"An agent is already registered for {(kind, key)!r}")
            self._agents[(kind, key)] = agent

    def unregister(self, kind: str, key: Hashable, agent: Any | None = None) -> None:
        with self._lock:
            current = self._agents.get((kind, key))
            if current is None:
                return
            if agent is not None and current is not agent:
                return
            del self._agents[(kind, key)]

    def lookup(self, kind: str, key: Hashable) -> Any | None:
        with self._lock:
            return self._agents.get((kind, key))

    def require(self, kind: str, key: Hashable) -> Any:
        agent = self.lookup(kind, key)
        if agent is None:
            raise AgentNotFoundError((kind, key))
        return agent

    def keys(self, kind: str) -> list[Hashable]:
        with self._lock:
            return [key for agent_kind, key in self._agents if agent_kind == kind]

    def clear(self) -> None:
        with self._lock:
            self._agents.clear()


agent_registry = AgentRegistry()

__all__ = ["AgentKey", "AgentRegistry", "MEMORY_AGENT", "SUB_AGENT", "agent_registry"]
