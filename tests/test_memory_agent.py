from __future__ import annotations

import asyncio
from typing import Any

import pytest

from assistant.core.config import SubAgentSettings
from assistant.memory.agent import WRITE_REJECTED, MemoryAgent
from assistant.orchestration.enums import AgentStatus, MemoryAgentStatus
from assistant.orchestration.exceptions import AgentBusyError
from assistant.orchestration.limits import SkillCallLedger
from assistant.orchestration.registry import MEMORY_AGENT, AgentRegistry
from assistant.resilience.circuit_breaker import SkillFuseRegistry
from assistant.schemas.agents import AgentUpdate
from assistant.skills.models import SkillContext, SkillResult
from assistant.skills.registry import SkillRegistry
from tests.helpers.stubs import ScriptedLLM, reply, tool_call, tool_messages, wait_until


class MemoryBackend:
    def __init__(self) -> None:
        self.saved: list[dict[str, Any]] = []

    def registry(self) -> SkillRegistry:
        skills = SkillRegistry()

        async def search(args: dict[str, Any], context: SkillContext) -> SkillResult:
            return SkillResult.ok("no matching memories")

        async def save(args: dict[str, Any], context: SkillContext) -> SkillResult:
            self.saved.append(args)
            return SkillResult.ok("saved")

        skills.register_handler("memory.search_memories", search)
        skills.register_handler("memory.save_memory", save)
        skills.register_handler("tasks.search", search)
        return skills


def _use(skill: str, **arguments: Any):
    return tool_call("use_skill", skill=skill, arguments=arguments)


def _agent(llm: ScriptedLLM, backend: MemoryBackend, **kwargs: Any) -> MemoryAgent:
    return MemoryAgent(
        user_id="user-1",
        llm=llm,
        skills=backend.registry(),
        ledger=SkillCallLedger(fuses=SkillFuseRegistry()),
        loop_settings=SubAgentSettings(llm_retry_max_backoff_seconds=0.0),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_write_before_search_is_rejected_then_allowed_after_search() -> None:
    backend = MemoryBackend()
    llm = ScriptedLLM(
        [
            reply(None, _use("memory.save_memory", content="likes tea")),
            reply(None, _use("memory.search_memories", query="tea")),
            reply(None, _use("memory.save_memory", content="likes tea")),
            reply(None, _use("memory.save_memory", content="likes green tea")),
            reply("Saved two memories"),
        ]
    )
    agent = _agent(llm, backend)

    agent.dispatch("Remember that the user likes tea", {"conversation_id": "conv-1"})
    result = await agent.wait_idle(timeout=1)

    assert result is not None and result.status is AgentStatus.COMPLETED
    assert result.result == "Saved two memories"
    messages = tool_messages(llm.requests[-1]["messages"])
    assert messages[0].startswith(WRITE_REJECTED)
    assert "Hint: Call memory.search_memories" in messages[0]
    assert messages[1:] == ["no matching memories", "saved", "saved"]
    assert [item["content"] for item in backend.saved] == ["likes tea", "likes green tea"]
    assert agent.status is MemoryAgentStatus.IDLE
    assert agent.missions_completed == 1


@pytest.mark.asyncio
async def test_each_mission_starts_unsearched() -> None:
    backend = MemoryBackend()
    llm = ScriptedLLM(
        [
            reply(None, _use("memory.search_memories", query="x")),
            reply(None, _use("memory.save_memory", content="x")),
            reply("first done"),
            reply(None, _use("memory.save_memory", content="y")),
            reply("second done"),
        ]
    )
    agent = _agent(llm, backend)

    agent.dispatch("first")
    await agent.wait_idle(timeout=1)
    agent.dispatch("second")
    await agent.wait_idle(timeout=1)

    assert [item["content"] for item in backend.saved] == ["x"]
    assert tool_messages(llm.requests[-1]["messages"])[0].startswith(WRITE_REJECTED)


@pytest.mark.asyncio
async def test_dispatch_while_running_raises_busy() -> None:
    release = asyncio.Event()

    async def slow(messages: list[dict[str, Any]]):
        await release.wait()
        return reply("done")

    agent = _agent(ScriptedLLM([slow]), MemoryBackend())
    agent.dispatch("long mission")

    assert agent.status is MemoryAgentStatus.RUNNING
    with pytest.raises(AgentBusyError):
        agent.dispatch("another mission")

    release.set()
    result = await agent.wait_idle(timeout=1)
    assert result is not None and result.result == "done"
    assert agent.status is MemoryAgentStatus.IDLE


@pytest.mark.asyncio
async def test_only_memory_skills_are_offered() -> None:
    llm = ScriptedLLM([reply(None, _use("tasks.search", query="x")), reply("ok")])
    agent = _agent(llm, MemoryBackend())

    assert agent.memory_skills == ["memory.save_memory", "memory.search_memories"]
    agent.dispatch("try a task skill")
    await agent.wait_idle(timeout=1)

    assert tool_messages(llm.requests[1]["messages"])[0].startswith('Error: Skill "tasks.search" is not available')


@pytest.mark.asyncio
async def test_registered_per_user_and_unregistered_on_close() -> None:
    registry = AgentRegistry()
    agent = _agent(ScriptedLLM(), MemoryBackend(), registry=registry)

    assert registry.lookup(MEMORY_AGENT, "user-1") is agent
    await agent.close()
    assert registry.lookup(MEMORY_AGENT, "user-1") is None


@pytest.mark.asyncio
async def test_status_reports_progress_and_last_result() -> None:
    agent = _agent(ScriptedLLM([reply("nothing to do")]), MemoryBackend())

    before = agent.get_status()
    agent.dispatch("noop", {"conversation_id": "conv-9"})
    await agent.wait_idle(timeout=1)
    after = agent.get_status()

    assert before["status"] == "idle"
    assert before["last_result"] is None
    assert after["status"] == "idle"
    assert after["last_result"] == "nothing to do"
    assert after["missions_completed"] == 1
    assert after["skills"] == ["memory.save_memory", "memory.search_memories"]


@pytest.mark.asyncio
async def test_help_request_pauses_until_resume() -> None:
    llm = ScriptedLLM([reply(None, tool_call("request_help", reason="which conversation?")), reply("compacted")])
    agent = _agent(llm, MemoryBackend())

    agent.dispatch("compact")
    await wait_until(lambda: agent.status is MemoryAgentStatus.AWAITING_ORCHESTRATOR)
    assert agent.get_status()["awaiting_reason"] == "which conversation?"

    await agent.resume(AgentUpdate(message="conv-1"))
    result = await agent.wait_idle(timeout=1)

    assert result is not None and result.result == "compacted"
    assert agent.status is MemoryAgentStatus.IDLE


@pytest.mark.asyncio
async def test_close_cancels_mission_and_returns_to_idle() -> None:
    entered = asyncio.Event()

    async def stalled(messages: list[dict[str, Any]]):
        entered.set()
        await asyncio.Event().wait()

    agent = _agent(ScriptedLLM([stalled]), MemoryBackend())
    task = agent.dispatch("never finishes")
    await asyncio.wait_for(entered.wait(), timeout=1)

    await agent.close()

    assert task.cancelled()
    assert agent.status is MemoryAgentStatus.IDLE
    assert agent.current_mission is None
    assert agent.get_status()["awaiting_reason"] is None


@pytest.mark.asyncio
async def test_close_before_mission_starts_returns_to_idle() -> None:
    agent = _agent(ScriptedLLM([reply("unused")]), MemoryBackend())
    agent.dispatch("cancelled early")

    await agent.close()

    assert agent.status is MemoryAgentStatus.IDLE
    assert agent.current_mission is None
