from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from assistant.skills.exceptions import SkillCrashError, SkillFailedError, SkillNotFoundError, SkillTimeoutError
from assistant.skills.executor import STUB_PAYLOAD, run_skill, stub_result
from assistant.skills.models import SkillContext, SkillResult
from assistant.skills.registry import SkillRegistry, normalize_skill_name

CONTEXT = SkillContext(conversation_id="conv-1", user_id="user-1", agent_id="a")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("Tasks.Search", "tasks.search"), (" tasks/search ", "tasks.search"), ("tasks..search.", "tasks.search")],
)
def test_names_are_normalized(raw: str, expected: str) -> None:
    assert normalize_skill_name(raw) == expected


def test_lookup_is_case_insensitive_and_require_raises() -> None:
    registry = SkillRegistry()
    registry.register_handler("Tasks.Search", None, description="Search tasks")

    assert "tasks.search" in registry
    assert registry.get("TASKS.SEARCH").name == "tasks.search"
    assert registry.unknown(["tasks.search", "notes.read"]) == ["notes.read"]
    with pytest.raises(SkillNotFoundError):
        registry.require("notes.read")


def test_describe_unknown_and_empty() -> None:
    registry = SkillRegistry()
    assert registry.describe() == "No skills are registered."

    registry.register_handler("tasks.search", None)
    assert registry.describe("calendar") == 'Unknown skill or domain "calendar". Available domains: tasks'
    assert registry.describe(search="zzz") == 'No skills match "zzz".'


def test_stub_result_is_marked() -> None:
    result = stub_result()

    assert result.succeeded
    assert json.loads(result.content) == STUB_PAYLOAD
    assert result.metadata == {"stub": True}


@pytest.mark.asyncio
async def test_run_skill_returns_handler_result() -> None:
    async def handler(args: dict[str, Any], context: SkillContext) -> SkillResult:
        return SkillResult.ok(f"{context.agent_id}:{args['q']}")

    result = await run_skill("tasks.search", handler, {"q": "milk"}, CONTEXT)

    assert result.content == "a:milk"


@pytest.mark.asyncio
async def test_run_skill_times_out() -> None:
    async def slow(args: dict[str, Any], context: SkillContext) -> SkillResult:
        await asyncio.sleep(1)
        return SkillResult.ok("late")

    with pytest.raises(SkillTimeoutError) as info:
        await run_skill("tasks.search", slow, {}, CONTEXT, timeout_ms=10)

    assert info.value.timeout_ms == 10


@pytest.mark.asyncio
async def test_run_skill_wraps_crashes_but_keeps_skill_errors() -> None:
    async def crash(args: dict[str, Any], context: SkillContext) -> SkillResult:
        raise KeyError("boom")

    async def refuse(args: dict[str, Any], context: SkillContext) -> SkillResult:
        raise SkillFailedError("no such list")

    with pytest.raises(SkillCrashError) as info:
        await run_skill("tasks.search", crash, {}, CONTEXT)
    assert isinstance(info.value.cause, KeyError)

    with pytest.raises(SkillFailedError):
        await run_skill("tasks.search", refuse, {}, CONTEXT)
