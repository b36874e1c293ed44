from __future__ import annotations

import asyncio
from typing import Any

import pytest

from assistant.core.config import EngineSettings, ResilienceSettings, Settings, SubAgentSettings
from assistant.orchestration.engine import CONVERSATION_LIMIT_REPLY, ITERATION_LIMIT_REPLY, OrchestratorEngine
from assistant.orchestration.registry import AgentRegistry
from assistant.orchestration.scheduler import AgentScheduler
from assistant.services.events import EventBus, TokenUsageUpdated, TurnCompleted
from assistant.services.llm import LLMError
from assistant.skills.models import SkillContext, SkillResult
from assistant.skills.registry import SkillRegistry
from tests.helpers.stubs import ManualClock, RoutingLLM, ScriptedLLM, reply, tool_call, tool_messages


def _settings(**sections: Any) -> Settings:
    sections.setdefault("sub_agent", SubAgentSettings(llm_retry_max_backoff_seconds=0.0))
    return Settings(**sections)


def _skills() -> SkillRegistry:
    skills = SkillRegistry()

    async def search(args: dict[str, Any], context: SkillContext) -> SkillResult:
        return SkillResult.ok(f"tasks matching {args.get('query')}")

    skills.register_handler("tasks.search", search)
    return skills


def _dispatch(agent_id: str, mission: str, *, depends_on: list[str] | None = None, skills: list[str] | None = None):
    arguments: dict[str, Any] = {"agent_id": agent_id, "mission": mission, "skills": skills or ["tasks.search"]}
    if depends_on is not None:
        arguments["depends_on"] = depends_on
    return tool_call("dispatch_agent", call_id=f"dispatch_{agent_id}", **arguments)


def _engine(llm: Any, *, settings: Settings | None = None, **kwargs: Any) -> OrchestratorEngine:
    return OrchestratorEngine(
        "conv-1",
        "user-1",
        llm,
        skills=_skills(),
        settings=settings or _settings(),
        registry=AgentRegistry(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_plain_reply_publishes_usage_and_turn_events() -> None:
    bus = EventBus()
    seen: list[object] = []

    async def record(event: object) -> None:
        seen.append(event)

    bus.subscribe(TokenUsageUpdated, record)
    bus.subscribe(TurnCompleted, record)
    engine = _engine(ScriptedLLM([reply("Hello!", prompt_tokens=1500)]), bus=bus)

    answer = await engine.send_message("hi")

    assert answer == "Hello!"
    usage, turn = seen
    assert isinstance(usage, TokenUsageUpdated)
    assert usage.prompt_tokens == 1500
    assert usage.max_context_tokens == 200_000
    assert turn == TurnCompleted(
        conversation_id="conv-1", user_id="user-1", user_message="hi", assistant_response="Hello!"
    )
    state = engine.get_state()
    assert state["message_count"] == 3
    assert state["iteration_count"] == 1
    assert state["total_usage"] == {"prompt_tokens": 1500, "completion_tokens": 5}
    await engine.aclose()


@pytest.mark.asyncio
async def test_dependent_agents_receive_upstream_results() -> None:
    async def summarize(messages: list[dict[str, Any]]):
        upstream = messages[1]["content"].split("- a (completed): ", 1)[1].split("\n", 1)[0]
        return reply(f"summary of {upstream}")

    orchestrator = ScriptedLLM(
        [
            reply(None, _dispatch("a", "fetch tasks"), _dispatch("b", "summarize tasks", depends_on=["a"])),
            reply("Here is your summary."),
        ]
    )
    fetch = ScriptedLLM(
        [reply(None, tool_call("use_skill", skill="tasks.search", arguments={"query": "q"})), reply("from_a")]
    )
    llm = RoutingLLM(
        {"Mission: fetch": fetch, "Mission: summarize": ScriptedLLM([summarize])},
        default=orchestrator,
    )
    engine = _engine(llm)

    answer = await engine.send_message("summarize my tasks")

    assert answer == "Here is your summary."
    a_message, b_message = tool_messages(orchestrator.requests[1]["messages"])
    assert a_message == (
        'Agent "a" dispatched and completed. Use get_agent_results to inspect full results.\n\nSummary: from_a'
    )
    assert b_message.startswith('Agent "b" dispatched and completed.')
    assert b_message.endswith("Summary: summary of from_a")
    assert engine.get_state()["dispatched_agents"] == ["a", "b"]
    await engine.aclose()


@pytest.mark.asyncio
async def test_failed_agent_skips_its_dependents() -> None:
    orchestrator = ScriptedLLM(
        [
            reply(None, _dispatch("a", "fetch tasks"), _dispatch("b", "summarize tasks", depends_on=["a"])),
            reply("Something went wrong."),
        ]
    )
    summarize = ScriptedLLM()
    llm = RoutingLLM(
        {"Mission: fetch": ScriptedLLM([LLMError("down")]), "Mission: summarize": summarize},
        default=orchestrator,
    )
    engine = _engine(llm)

    await engine.send_message("summarize my tasks")

    a_message, b_message = tool_messages(orchestrator.requests[1]["messages"])
    assert a_message.startswith('Agent "a" dispatched and failed.')
    assert a_message.endswith("Summary: LLM call failed: down")
    assert b_message.endswith("Summary: Skipped because dependency failed: a")
    assert summarize.requests == []
    await engine.aclose()


@pytest.mark.asyncio
async def test_cycle_is_reported_to_every_dispatch_in_the_batch() -> None:
    orchestrator = ScriptedLLM(
        [
            reply(None, _dispatch("a", "one", depends_on=["b"]), _dispatch("b", "two", depends_on=["a"])),
            reply("I could not plan that."),
        ]
    )
    engine = _engine(orchestrator)

    await engine.send_message("do it")

    messages = tool_messages(orchestrator.requests[1]["messages"])
    assert len(messages) == 2
    for message in messages:
        assert message.startswith("Error: Dependency cycle detected among agents: a, b")
        assert "Hint: Remove the circular depends_on references" in message
    assert engine.get_state()["dispatched_agents"] == []
    await engine.aclose()


@pytest.mark.asyncio
async def test_invalid_dispatch_gets_validation_error() -> None:
    orchestrator = ScriptedLLM([reply(None, _dispatch("a", "one", skills=["calendar.create"])), reply("ok")])
    engine = _engine(orchestrator)

    await engine.send_message("do it")

    assert tool_messages(orchestrator.requests[1]["messages"]) == [
        "Error: Unknown skills: calendar.create. Call get_skill to discover available skills."
    ]
    await engine.aclose()


@pytest.mark.asyncio
async def test_turn_agent_limit_rejects_whole_batch() -> None:
    orchestrator = ScriptedLLM([reply(None, _dispatch("a", "one"), _dispatch("b", "two")), reply("ok")])
    engine = _engine(orchestrator, settings=_settings(resilience=ResilienceSettings(turn_max_agents=1)))

    await engine.send_message("do it")

    for message in tool_messages(orchestrator.requests[1]["messages"]):
        assert message.startswith("Error: Cannot dispatch 2 agents, turn limit reached (0/1).")
        assert "Hint: Budget used: 0/1." in message
    await engine.aclose()


@pytest.mark.asyncio
async def test_conversation_window_limits_iterations() -> None:
    clock = ManualClock()
    llm = ScriptedLLM([reply("first")])
    engine = _engine(
        llm,
        settings=_settings(resilience=ResilienceSettings(conversation_max_calls=1, conversation_window_ms=60_000)),
        clock=clock,
    )

    assert await engine.send_message("one") == "first"
    assert await engine.send_message("two") == CONVERSATION_LIMIT_REPLY
    assert len(llm.requests) == 1

    clock.advance(60_000)
    llm.push(reply("third"))
    assert await engine.send_message("three") == "third"
    await engine.aclose()


@pytest.mark.asyncio
async def test_iteration_limit_ends_the_turn() -> None:
    llm = ScriptedLLM(fallback=reply(None, tool_call("get_skill")))
    engine = _engine(llm, settings=_settings(engine=EngineSettings(max_iterations=2)))

    answer = await engine.send_message("loop forever")

    assert answer == ITERATION_LIMIT_REPLY
    assert len(llm.requests) == 2
    assert engine.get_state()["iteration_count"] == 2
    await engine.aclose()


@pytest.mark.asyncio
async def test_paused_agent_is_answered_and_collected() -> None:
    orchestrator = ScriptedLLM(
        [
            reply(None, _dispatch("a", "fetch tasks")),
            reply(None, tool_call("send_agent_update", agent_id="a", message="use list 2024")),
            reply(None, tool_call("get_agent_results", agent_ids=["a"], mode="wait_all", wait_ms=2_000)),
            reply("Done."),
        ]
    )
    worker = ScriptedLLM([reply(None, tool_call("request_help", reason="which list?")), reply("read list 2024")])
    engine = _engine(RoutingLLM({"Mission: fetch": worker}, default=orchestrator))

    answer = await engine.send_message("read my list")

    assert answer == "Done."
    [dispatched] = tool_messages(orchestrator.requests[1]["messages"])
    assert dispatched.startswith('Agent "a" dispatched and awaiting_orchestrator.')
    assert dispatched.endswith("Summary: which list?")
    [update] = tool_messages(orchestrator.requests[2]["messages"])[1:]
    assert update.startswith('Update sent to agent "a".')
    results = tool_messages(orchestrator.requests[3]["messages"])[-1]
    assert results.startswith("[OK] a [completed")
    assert "read list 2024" in results
    assert results.endswith("All agents have completed.")
    assert "Orchestrator response: use list 2024" in tool_messages(worker.requests[1]["messages"])
    await engine.aclose()


@pytest.mark.asyncio
async def test_get_skill_and_unknown_tools_answer_inline() -> None:
    orchestrator = ScriptedLLM(
        [reply(None, tool_call("get_skill", skill_or_domain="tasks"), tool_call("teleport")), reply("ok")]
    )
    engine = _engine(orchestrator)

    await engine.send_message("what can you do")

    assert tool_messages(orchestrator.requests[1]["messages"]) == [
        "Skills in tasks:\n- tasks.search",
        'Error: Unknown tool "teleport".',
    ]
    await engine.aclose()


@pytest.mark.asyncio
async def test_finished_batch_releases_supervised_tasks() -> None:
    orchestrator = ScriptedLLM([reply(None, _dispatch("a", "fetch tasks")), reply("Done.")])
    llm = RoutingLLM({"Mission: fetch": ScriptedLLM([reply("from_a")])}, default=orchestrator)
    scheduler = AgentScheduler()
    engine = _engine(llm, scheduler=scheduler)

    await engine.send_message("fetch my tasks")
    await asyncio.sleep(0)

    assert scheduler.supervisor.tasks == {}
    assert tool_messages(orchestrator.requests[1]["messages"])[0].endswith("Summary: from_a")
    await engine.aclose()
