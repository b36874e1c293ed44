"""Tools exposed to the orchestrator LLM.

Each tool is a JSON-schema definition plus a function turning the decoded
arguments into the text returned to the model. Validation failures are
returned as text, never raised, so the model can correct itself.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Sequence

from pydantic import ValidationError

from ..core.config import SchedulerSettings
from ..core.logging import get_logger
from ..schemas.agents import AgentExecutionResult, AgentUpdate, DispatchSpec
from ..services.llm import function_tool
from ..skills.registry import SkillRegistry
from .enums import AgentStatus, WaitMode
from .exceptions import AgentNotAwaitingError
from .registry import SUB_AGENT, AgentRegistry

logger = get_logger(name=__name__)

DISPATCH_AGENT = "dispatch_agent"
GET_AGENT_RESULTS = "get_agent_results"
GET_SKILL = "get_skill"
SEND_AGENT_UPDATE = "send_agent_update"

STATUS_ICONS = {
    AgentStatus.COMPLETED.value: "[OK]",
    AgentStatus.FAILED.value: "[FAIL]",
    AgentStatus.TIMEOUT.value: "[TIMEOUT]",
    AgentStatus.SKIPPED.value: "[SKIPPED]",
    AgentStatus.RUNNING.value: "[RUNNING]",
    AgentStatus.PENDING.value: "[PENDING]",
    AgentStatus.AWAITING_ORCHESTRATOR.value: "[AWAITING]",
}


def tool_definitions(settings: SchedulerSettings | None = None) -> list[dict[str, Any]]:
    settings = settings or SchedulerSettings()
    return [
        function_tool(
            DISPATCH_AGENT,
            "Dispatch a focused sub-agent with a mission and the skills it may use. Agents dispatched in the "
            "same response run concurrently unless depends_on orders them.",
            {
                "type": "object",
                "properties": {
                    "agent_id": {"type": "string", "description": "Unique id, used by depends_on and results."},
                    "mission": {"type": "string", "description": "Specific instructions and success criteria."},
                    "skills": {"type": "array", "items": {"type": "string"}},
                    "context": {"type": "string"},
                    "depends_on": {"type": "array", "items": {"type": "string"}},
                    "max_tool_calls": {"type": "integer", "minimum": 0},
                    "timeout_ms": {"type": "integer", "minimum": 1},
                    "model_override": {"type": "string"},
                },
                "required": ["agent_id", "mission", "skills"],
            },
        ),
        function_tool(
            GET_AGENT_RESULTS,
            "Check the status and results of dispatched agents.",
            {
                "type": "object",
                "properties": {
                    "agent_ids": {"type": "array", "items": {"type": "string"}},
                    "mode": {"type": "string", "enum": [mode.value for mode in WaitMode]},
                    "wait_ms": {
                        "type": "integer",
                        "description": (
                            f"Maximum wait for wait_any/wait_all. Default: {settings.default_wait_ms}. "
                            f"Maximum: {settings.max_wait_ms}."
                        ),
                    },
                },
                "required": [],
            },
        ),
        function_tool(
            GET_SKILL,
            "Discover skills: omit arguments for the domain overview, pass a domain or skill name for details, "
            "or search by keyword.",
            {
                "type": "object",
                "properties": {
                    "skill_or_domain": {"type": "string"},
                    "search": {"type": "string"},
                },
                "required": [],
            },
        ),
        function_tool(
            SEND_AGENT_UPDATE,
            "Answer an agent that is awaiting orchestrator input. Provide a message, extra skills or context files.",
            {
                "type": "object",
                "properties": {
                    "agent_id": {"type": "string"},
                    "message": {"type": "string"},
                    "skills": {"type": "array", "items": {"type": "string"}},
                    "context_files": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["agent_id"],
            },
        ),
    ]


def validate_dispatch(params: Mapping[str, Any], skills: SkillRegistry) -> DispatchSpec | str:
    """Return the dispatch spec, or the error text for the model."""
    missing = [field for field in ("agent_id", "mission", "skills") if params.get(field) in (None, "", [])]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"

    requested = params.get("skills")
    if not isinstance(requested, list) or not all(isinstance(name, str) for name in requested):
        return "Invalid dispatch: skills must be a list of skill names."
    unknown = skills.unknown(requested)
    if unknown:
        return f"Unknown skills: {', '.join(unknown)}. Call get_skill to discover available skills."

    try:
        return DispatchSpec.model_validate(
            {key: params[key] for key in DispatchSpec.model_fields if key in params}
        )
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        return f"Invalid dispatch: {problems}"


def parse_mode(value: Any) -> WaitMode:
    try:
        return WaitMode(value)
    except ValueError:
        return WaitMode.NON_BLOCKING


def clamp_wait_ms(value: Any, settings: SchedulerSettings | None = None) -> int:
    settings = settings or SchedulerSettings()
    if isinstance(value, bool) or not isinstance(value, int):
        return settings.default_wait_ms
    return max(0, min(value, settings.max_wait_ms))


def format_agent_results(entries: Sequence[tuple[str, AgentExecutionResult | None]]) -> str:
    """Render one block per agent followed by a progress trailer.

    ``None`` marks an id with no dispatched agent.
    """
    if not entries:
        return "No agents have been dispatched in this turn."

    sections: list[str] = []
    all_done = True
    any_awaiting = False
    for agent_id, result in entries:
        if result is None:
            sections.append(f'[?] {agent_id} [unknown]\nNo agent found with ID "{agent_id}".')
            all_done = False
            continue

        all_done = all_done and result.is_terminal
        any_awaiting = any_awaiting or result.status is AgentStatus.AWAITING_ORCHESTRATOR
        status = result.status.value
        duration = f" ({result.duration_ms}ms)" if result.duration_ms is not None else ""
        calls = f", {result.tool_calls_used} tool calls" if result.tool_calls_used > 0 else ""
        block = f"{STATUS_ICONS.get(status, '[?]')} {agent_id} [{status}{duration}{calls}]\n{result.result or '(no result yet)'}"
        if result.status is AgentStatus.AWAITING_ORCHESTRATOR and result.reason:
            block += f"\nNeeds help: {result.reason}"
        sections.append(block)

    if all_done:
        trailer = "All agents have completed."
    elif any_awaiting:
        trailer = (
            "One or more agents are awaiting orchestrator input. "
            "Use send_agent_update to provide what they need, then call get_agent_results again."
        )
    else:
        trailer = "Some agents are still running. Call get_agent_results again to check progress."
    return "\n\n".join(sections) + "\n\n" + trailer


def get_skill(params: Mapping[str, Any], skills: SkillRegistry) -> str:
    return skills.describe(params.get("skill_or_domain") or None, search=params.get("search") or None)


async def send_agent_update(
    params: Mapping[str, Any],
    *,
    conversation_id: str,
    registry: AgentRegistry,
) -> str:
    agent_id = params.get("agent_id")
    if not isinstance(agent_id, str) or not agent_id:
        return "Missing required field: agent_id"

    try:
        update = AgentUpdate(
            message=params.get("message") or None,
            skills=_string_list(params.get("skills")),
            context_files=_string_list(params.get("context_files")),
        )
    except ValidationError:
        return (
            "At least one of message, skills, or context_files must be provided. "
            "The agent needs something to continue with."
        )

    agent = registry.lookup(SUB_AGENT, f"{conversation_id}:{agent_id}")
    if agent is None:
        return (
            f'Agent "{agent_id}" not found. It may have already completed or was never dispatched. '
            "Check agent_ids with get_agent_results."
        )
    try:
        await agent.resume(update)
    except AgentNotAwaitingError:
        return (
            f'Agent "{agent_id}" is not awaiting orchestrator input. Only agents that called request_help '
            "can receive updates. Check the agent's status with get_agent_results."
        )

    logger.info(
        "agent_update_sent",
        agent_id=agent_id,
        has_message=update.message is not None,
        new_skills=update.skills,
        new_context_files=len(update.context_files),
    )
    return f'Update sent to agent "{agent_id}". The agent is resuming. Use get_agent_results to check progress.'


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str) and item]


def requested_ids(params: Mapping[str, Any], dispatched: Iterable[str]) -> list[str]:
    ids = params.get("agent_ids")
    if isinstance(ids, list) and ids:
        return [agent_id for agent_id in ids if isinstance(agent_id, str)]
    return list(dispatched)


__all__ = [
    "DISPATCH_AGENT",
    "GET_AGENT_RESULTS",
    "GET_SKILL",
    "SEND_AGENT_UPDATE",
    "STATUS_ICONS",
    "clamp_wait_ms",
    "format_agent_results",
    "get_skill",
    "parse_mode",
    "requested_ids",
    "send_agent_update",
    "tool_definitions",
    "validate_dispatch",
]
