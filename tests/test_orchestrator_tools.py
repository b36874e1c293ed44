from __future__ import annotations

import pytest

from assistant.orchestration import tools
from assistant.orchestration.enums import AgentStatus, WaitMode
from assistant.orchestration.exceptions import AgentNotAwaitingError
from assistant.orchestration.registry import SUB_AGENT, AgentRegistry
from assistant.schemas.agents import AgentExecutionResult, AgentUpdate, DispatchSpec
from assistant.skills.registry import SkillRegistry


def _skills() -> SkillRegistry:
    skills = SkillRegistry()
    skills.register_handler("tasks.search", None, description="Search tasks by keyword")
    skills.register_handler("tasks.create", None, description="Create a task")
    skills.register_handler("email.send", None, description="Send an email", tags=["mail"])
    return skills


def test_dispatch_lists_missing_fields() -> None:
    assert tools.validate_dispatch({}, _skills()) == "Missing required fields: agent_id, mission, skills"
    assert tools.validate_dispatch({"agent_id": "a", "skills": []}, _skills()) == (
        "Missing required fields: mission, skills"
    )


def test_dispatch_rejects_unknown_skills() -> None:
    outcome = tools.validate_dispatch(
        {"agent_id": "a", "mission": "m", "skills": ["tasks.search", "calendar.create"]}, _skills()
    )

    assert outcome == "Unknown skills: calendar.create. Call get_skill to discover available skills."


def test_dispatch_builds_spec() -> None:
    outcome = tools.validate_dispatch(
        {
            "agent_id": "b",
            "mission": "follow up",
            "skills": ["email.send"],
            "depends_on": ["a"],
            "max_tool_calls": 3,
            "ignored": True,
        },
        _skills(),
    )

    assert isinstance(outcome, DispatchSpec)
    assert outcome.depends_on == ["a"]
    assert outcome.max_tool_calls == 3


def test_dispatch_reports_invalid_values() -> None:
    outcome = tools.validate_dispatch(
        {"agent_id": "a", "mission": "m", "skills": ["tasks.search"], "max_tool_calls": -1}, _skills()
    )

    assert isinstance(outcome, str)
    assert outcome.startswith("Invalid dispatch: max_tool_calls")


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, 5_000), (250, 250), (120_000, 60_000), (-5, 0), (True, 5_000), ("10", 5_000)],
)
def test_wait_is_clamped(value: object, expected: int) -> None:
    assert tools.clamp_wait_ms(value) == expected


def test_unknown_mode_falls_back_to_non_blocking() -> None:
    assert tools.parse_mode("wait_all") is WaitMode.WAIT_ALL
    assert tools.parse_mode("eventually") is WaitMode.NON_BLOCKING
    assert tools.parse_mode(None) is WaitMode.NON_BLOCKING


def test_results_render_icons_and_completion_trailer() -> None:
    text = tools.format_agent_results(
        [
            ("a", AgentExecutionResult.completed("3 tasks", tool_calls_used=2, duration_ms=12)),
            ("b", AgentExecutionResult(status=AgentStatus.SKIPPED, result="Skipped because dependency failed: a")),
        ]
    )

    assert text == (
        "[OK] a [completed (12ms), 2 tool calls]\n3 tasks\n\n"
        "[SKIPPED] b [skipped]\nSkipped because dependency failed: a\n\n"
        "All agents have completed."
    )


def test_results_flag_awaiting_agents() -> None:
    text = tools.format_agent_results(
        [
            ("a", AgentExecutionResult(status=AgentStatus.AWAITING_ORCHESTRATOR, reason="which list?")),
            ("b", AgentExecutionResult(status=AgentStatus.RUNNING)),
        ]
    )

    assert "[AWAITING] a [awaiting_orchestrator]\n(no result yet)\nNeeds help: which list?" in text
    assert "[RUNNING] b [running]" in text
    assert text.endswith("then call get_agent_results again.")
    assert "awaiting orchestrator input" in text


def test_unknown_ids_render_as_unknown() -> None:
    text = tools.format_agent_results([("ghost", None)])

    assert text.startswith('[?] ghost [unknown]\nNo agent found with ID "ghost".')
    assert text.endswith("Call get_agent_results again to check progress.")


def test_requested_ids_default_to_all_dispatched() -> None:
    assert tools.requested_ids({}, ["a", "b"]) == ["a", "b"]
    assert tools.requested_ids({"agent_ids": ["b", 3]}, ["a", "b"]) == ["b"]


def test_get_skill_describes_domains_skills_and_searches() -> None:
    skills = _skills()

    overview = tools.get_skill({}, skills)
    domain = tools.get_skill({"skill_or_domain": "tasks"}, skills)
    single = tools.get_skill({"skill_or_domain": "Email.Send"}, skills)
    search = tools.get_skill({"search": "mail"}, skills)

    assert overview.splitlines()[:3] == ["Available skill domains:", "- email (1 skills)", "- tasks (2 skills)"]
    assert domain == "Skills in tasks:\n- tasks.create: Create a task\n- tasks.search: Search tasks by keyword"
    assert single == "Skill: email.send\nSend an email\nTags: mail"
    assert search == "- email.send: Send an email"


class FakeAgent:
    def __init__(self, *, awaiting: bool) -> None:
        self.awaiting = awaiting
        self.updates: list[AgentUpdate] = []

    async def resume(self, update: AgentUpdate) -> None:
        if not self.awaiting:
            raise AgentNotAwaitingError("not awaiting")
        self.updates.append(update)


@pytest.mark.asyncio
async def test_send_agent_update_validates_and_resumes() -> None:
    registry = AgentRegistry()
    waiting = FakeAgent(awaiting=True)
    registry.register(SUB_AGENT, "conv-1:a", waiting)
    registry.register(SUB_AGENT, "conv-1:b", FakeAgent(awaiting=False))

    async def send(**params: object) -> str:
        return await tools.send_agent_update(params, conversation_id="conv-1", registry=registry)

    assert await send() == "Missing required field: agent_id"
    assert (await send(agent_id="a")).startswith("At least one of message, skills, or context_files")
    assert (await send(agent_id="zzz", message="hi")).startswith('Agent "zzz" not found.')
    assert (await send(agent_id="b", message="hi")).startswith('Agent "b" is not awaiting orchestrator input.')
    assert await send(agent_id="a", message="use list 2", skills=["tasks.create"]) == (
        'Update sent to agent "a". The agent is resuming. Use get_agent_results to check progress.'
    )
    assert waiting.updates == [AgentUpdate(message="use list 2", skills=["tasks.create"])]


def test_tool_definitions_cover_all_orchestrator_tools() -> None:
    names = [definition["function"]["name"] for definition in tools.tool_definitions()]

    assert names == ["dispatch_agent", "get_agent_results", "get_skill", "send_agent_update"]
