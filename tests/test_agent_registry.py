from __future__ import annotations

import pytest

from assistant.orchestration.exceptions import AgentNotFoundError
from assistant.orchestration.registry import MEMORY_AGENT, SUB_AGENT, AgentRegistry


def test_register_lookup_and_kinds_are_separate() -> None:
    registry = AgentRegistry()
    worker, memory = object(), object()

    registry.register(SUB_AGENT, "conv-1:a", worker)
    registry.register(MEMORY_AGENT, "user-1", memory)

    assert registry.lookup(SUB_AGENT, "conv-1:a") is worker
    assert registry.lookup(MEMORY_AGENT, "conv-1:a") is None
    assert registry.keys(MEMORY_AGENT) == ["user-1"]


def test_duplicate_registration_is_rejected() -> None:
    registry = AgentRegistry()
    agent = object()
    registry.register(SUB_AGENT, "conv-1:a", agent)
    registry.register(SUB_AGENT, "conv-1:a", agent)

    with pytest.raises(ValueError):
        registry.register(SUB_AGENT, "conv-1:a", object())


def test_unregister_only_removes_the_given_agent() -> None:
    registry = AgentRegistry()
    agent = object()
    registry.register(SUB_AGENT, "conv-1:a", agent)

    registry.unregister(SUB_AGENT, "conv-1:a", object())
    assert registry.lookup(SUB_AGENT, "conv-1:a") is agent

    registry.unregister(SUB_AGENT, "conv-1:a", agent)
    with pytest.raises(AgentNotFoundError):
        registry.require(SUB_AGENT, "conv-1:a")
