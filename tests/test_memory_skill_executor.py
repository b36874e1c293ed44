from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from assistant.memory import skill_executor
from assistant.memory.skill_executor import Executed, Rejected, SearchSession, SkillKind
from assistant.skills.exceptions import SkillFailedError
from assistant.skills.models import SkillContext, SkillResult


def _context() -> SkillContext:
    return SkillContext(conversation_id="conv-1", user_id="user-1", agent_id="memory_agent:user-1")


class RecordingHandler:
    def __init__(self, result: SkillResult | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self._result = result or SkillResult.ok("done")

    async def __call__(self, args: dict[str, Any], context: SkillContext) -> SkillResult:
        self.calls.append(args)
        return self._result


def test_classification() -> None:
    assert skill_executor.classify("memory.search_memories") is SkillKind.READ
    assert skill_executor.classify("memory.query_entity_graph") is SkillKind.READ
    assert skill_executor.classify("memory.save_memory") is SkillKind.WRITE
    assert skill_executor.classify("memory.compact_conversation") is SkillKind.WRITE
    assert skill_executor.classify("email.send") is SkillKind.PASSTHROUGH
    assert skill_executor.is_memory_skill("memory.anything") is True
    assert skill_executor.is_memory_skill("tasks.search") is False


@pytest.mark.asyncio
async def test_write_before_search_is_rejected_without_calling_handler() -> None:
    handler = RecordingHandler()
    session = skill_executor.new_session()

    outcome = await skill_executor.execute("memory.save_memory", handler, {}, _context(), session)

    assert isinstance(outcome, Rejected)
    assert outcome.reason == skill_executor.MEMORY_WRITE_WITHOUT_SEARCH
    assert outcome.session.has_searched is False
    assert handler.calls == []


@pytest.mark.asyncio
async def test_read_unlocks_any_number_of_writes() -> None:
    read = RecordingHandler(SkillResult.ok("[]"))
    write = RecordingHandler()
    session = skill_executor.new_session()

    searched = await skill_executor.execute("memory.search_memories", read, {"query": "x"}, _context(), session)
    assert isinstance(searched, Executed)
    assert searched.session.has_searched is True
    assert session.has_searched is False

    current = searched.session
    for index in range(3):
        outcome = await skill_executor.execute(
            "memory.save_memory", write, {"content": f"fact {index}"}, _context(), current
        )
        assert isinstance(outcome, Executed)
        assert outcome.session.has_searched is True
        current = outcome.session

    assert len(write.calls) == 3


@pytest.mark.asyncio
async def test_failed_read_does_not_flip_session() -> None:
    async def failing(args: dict[str, Any], context: SkillContext) -> SkillResult:
        raise SkillFailedError("store unavailable")

    outcome = await skill_executor.execute(
        "memory.search_memories", failing, {}, _context(), skill_executor.new_session()
    )

    assert isinstance(outcome, Rejected)
    assert outcome.reason == "skill_failed"
    assert outcome.session.has_searched is False
    assert isinstance(outcome.error, SkillFailedError)


@pytest.mark.asyncio
async def test_passthrough_runs_and_leaves_session_unchanged() -> None:
    handler = RecordingHandler()
    session = SearchSession(has_searched=False)

    outcome = await skill_executor.execute("tasks.search", handler, {}, _context(), session)

    assert isinstance(outcome, Executed)
    assert outcome.session is session
    assert len(handler.calls) == 1


@pytest.mark.asyncio
async def test_missing_handler_returns_stub() -> None:
    outcome = await skill_executor.execute(
        "memory.query_entity_graph", None, {}, _context(), skill_executor.new_session()
    )

    assert isinstance(outcome, Executed)
    assert json.loads(outcome.result.content) == skill_executor.STUB_PAYLOAD
    assert outcome.session.has_searched is True


@pytest.mark.asyncio
async def test_timeout_and_crash_are_reported_as_rejections() -> None:
    async def slow(args: dict[str, Any], context: SkillContext) -> SkillResult:
        await asyncio.sleep(1)
        return SkillResult.ok("late")

    async def broken(args: dict[str, Any], context: SkillContext) -> SkillResult:
        raise KeyError("boom")

    searched = SearchSession(has_searched=True)
    timed_out = await skill_executor.execute(
        "memory.save_memory", slow, {}, _context(), searched, timeout_ms=10
    )
    crashed = await skill_executor.execute("memory.save_memory", broken, {}, _context(), searched)

    assert isinstance(timed_out, Rejected) and timed_out.reason == "skill_timeout"
    assert isinstance(crashed, Rejected) and crashed.reason == "skill_crash"
    assert crashed.session is searched
