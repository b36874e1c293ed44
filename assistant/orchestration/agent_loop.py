"""LLM tool-call loop shared by sub-agents and the memory agent.

The agent sees two tools: ``use_skill`` (scoped to its allowed skills) and
``request_help``. Each iteration asks the LLM for the next step; a reply with no
tool calls ends the mission. ``request_help`` suspends the loop on the agent's
inbox until the orchestrator sends an :class:`AgentUpdate`.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from ..core.config import SubAgentSettings
from ..core.logging import get_logger
from ..resilience import circuit_breaker as cb
from ..resilience.circuit_breaker import AgentState, CircuitOpen, LimitExceeded
from ..schemas.agents import AgentUpdate
from ..services.llm import (
    ChatResponse,
    LLMClient,
    LLMError,
    Message,
    ToolCall,
    Usage,
    assistant_tool_call_message,
    complete_with_retry,
    function_tool,
    tool_result_message,
)
from ..skills.models import SkillContext, SkillDefinition
from ..skills.registry import SkillRegistry, normalize_skill_name
from .enums import AgentStatus
from .exceptions import AgentNotAwaitingError
from .limits import SkillCallLedger
from .nudger import Nudger, nudger as default_nudger
from .sentinel import ApproveAllSentinel, ProposedAction, Sentinel

logger = get_logger(name=__name__)

USE_SKILL = "use_skill"
REQUEST_HELP = "request_help"


@dataclass(frozen=True, slots=True)
class LoopOutcome:
    status: AgentStatus
    text: str
    tool_calls_used: int
    duration_ms: int
    usage: Usage


class SkillLoopAgent:
    """Base class holding the LLM loop, the skill gate and the pause/resume inbox."""

    system_prompt = (
        "You are a focused assistant agent. Complete the mission using only the skills you were given. "
        "Call use_skill to act and request_help when you are blocked on information only the orchestrator has. "
        "Reply with plain text once the mission is done."
    )

    def __init__(
        self,
        *,
        agent_id: str,
        llm: LLMClient,
        skills: SkillRegistry,
        ledger: SkillCallLedger,
        conversation_id: str,
        user_id: str,
        settings: SubAgentSettings | None = None,
        sentinel: Sentinel | None = None,
        nudger: Nudger | None = None,
        model: str | None = None,
        on_paused: Callable[["SkillLoopAgent"], None] | None = None,
    ) -> None:
        self.agent_id = agent_id
        self._llm = llm
        self._skills = skills
        self._ledger = ledger
        self.conversation_id = conversation_id
        self.user_id = user_id
        self._settings = settings or SubAgentSettings()
        self._sentinel = sentinel or ApproveAllSentinel()
        self._nudger = nudger or default_nudger
        self._model = model
        self._on_paused = on_paused
        self._inbox: asyncio.Queue[AgentUpdate] = asyncio.Queue(maxsize=1)
        self.awaiting_reason: str | None = None
        self.tool_calls_used = 0

    @property
    def is_awaiting(self) -> bool:
        return self.awaiting_reason is not None

    async def resume(self, update: AgentUpdate) -> None:
        if not self.is_awaiting or self._inbox.full():
            raise AgentNotAwaitingError(f"Agent '{self.agent_id}' is not awaiting orchestrator input")
        self._inbox.put_nowait(update)
        self.awaiting_reason = None
        self._on_resume()
        logger.info(
            "agent_resume_requested",
            agent_id=self.agent_id,
            has_message=update.message is not None,
            new_skills=update.skills,
        )

    def _tool_definitions(self, allowed: Iterable[str]) -> list[dict[str, Any]]:
        return [
            function_tool(
                USE_SKILL,
                "Invoke one of your skills with JSON arguments.",
                {
                    "type": "object",
                    "properties": {
                        "skill": {"type": "string", "enum": sorted(allowed)},
                        "arguments": {"type": "object"},
                    },
                    "required": ["skill"],
                },
            ),
            function_tool(
                REQUEST_HELP,
                "Pause and ask the orchestrator for missing information or additional skills.",
                {
                    "type": "object",
                    "properties": {"reason": {"type": "string"}},
                    "required": ["reason"],
                },
            ),
        ]

    async def _run_loop(
        self,
        messages: list[Message],
        agent_state: AgentState,
        *,
        allowed: set[str],
        mission: str,
        original_request: str | None = None,
    ) -> LoopOutcome:
        started = time.monotonic()
        usage = Usage()
        last_text: str | None = None

        def finish(status: AgentStatus, text: str) -> LoopOutcome:
            return LoopOutcome(
                status=status,
                text=text,
                tool_calls_used=self.tool_calls_used,
                duration_ms=int((time.monotonic() - started) * 1000),
                usage=usage,
            )

        while True:
            try:
                response: ChatResponse = await complete_with_retry(
                    self._llm,
                    messages,
                    tools=self._tool_definitions(allowed),
                    model=self._model,
                    attempts=self._settings.llm_retry_attempts,
                    max_backoff_seconds=self._settings.llm_retry_max_backoff_seconds,
                )
            except LLMError as exc:
                logger.warning("agent_llm_failed", agent_id=self.agent_id, error=str(exc))
                return finish(AgentStatus.FAILED, f"LLM call failed: {exc}")

            usage = usage + response.usage
            if not response.tool_calls:
                return finish(AgentStatus.COMPLETED, response.content or last_text or "Agent completed with no output.")
            if response.content:
                last_text = response.content

            skill_calls = sum(1 for call in response.tool_calls if call.name == USE_SKILL)
            if skill_calls and isinstance(cb.check_agent(agent_state, skill_calls), LimitExceeded):
                logger.info(
                    "agent_tool_budget_exhausted",
                    agent_id=self.agent_id,
                    used=agent_state.skill_calls,
                    max=agent_state.max_skill_calls,
                )
                return finish(
                    AgentStatus.COMPLETED,
                    last_text
                    or (
                        f"Tool call limit reached ({agent_state.skill_calls}/{agent_state.max_skill_calls}). "
                        "Partial work completed."
                    ),
                )

            messages.append(assistant_tool_call_message(response.tool_calls, response.content))
            help_call: ToolCall | None = None
            for call in response.tool_calls:
                if call.name == USE_SKILL:
                    content, agent_state = await self._use_skill(
                        call, agent_state, allowed=allowed, mission=mission, original_request=original_request
                    )
                elif call.name == REQUEST_HELP and help_call is None:
                    help_call = call
                    continue
                elif call.name == REQUEST_HELP:
                    content = "Only one help request is handled per step."
                else:
                    content = f'Error: Unknown tool "{call.name}". Only use_skill and request_help are available.'
                messages.append(tool_result_message(call.id, content))

            if help_call is None:
                continue

            reason = str(help_call.arguments.get("reason") or "Agent requests assistance")
            update = await self._await_update(reason)
            if update is None:
                return finish(
                    AgentStatus.FAILED,
                    f"No orchestrator response within {self._settings.resume_timeout_ms // 1000}s "
                    f"after requesting help: {reason}",
                )
            allowed.update(self._skills_to_add(update.skills))
            messages.append(tool_result_message(help_call.id, update.render()))

    async def _await_update(self, reason: str) -> AgentUpdate | None:
        self.awaiting_reason = reason
        self._on_pause(reason)
        logger.info("agent_awaiting_orchestrator", agent_id=self.agent_id, reason=reason)
        if self._on_paused is not None:
            self._on_paused(self)
        try:
            return await asyncio.wait_for(self._inbox.get(), timeout=self._settings.resume_timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning("agent_resume_timeout", agent_id=self.agent_id)
            return None
        finally:
            self.awaiting_reason = None
            self._on_resume()

    def _on_pause(self, reason: str) -> None:
        """Hook for subclasses to reflect the paused state."""

    def _on_resume(self) -> None:
        """Hook for subclasses to reflect the running state."""

    def _skills_to_add(self, names: Iterable[str]) -> list[str]:
        names = list(names)
        known = [normalize_skill_name(name) for name in names if name in self._skills]
        dropped = sorted(name for name in names if name not in self._skills)
        if dropped:
            logger.warning("agent_update_unknown_skills", agent_id=self.agent_id, skills=dropped)
        return known

    async def _use_skill(
        self,
        call: ToolCall,
        agent_state: AgentState,
        *,
        allowed: set[str],
        mission: str,
        original_request: str | None,
    ) -> tuple[str, AgentState]:
        skill = call.arguments.get("skill")
        args = call.arguments.get("arguments") or {}
        if not isinstance(args, dict):
            args = {}

        if isinstance(skill, str):
            skill = normalize_skill_name(skill)
        if not isinstance(skill, str) or skill not in allowed:
            return (
                f'Error: Skill "{skill}" is not available to this agent. '
                f"Available skills: {', '.join(sorted(allowed))}",
                agent_state,
            )

        decision = await self._sentinel.check(
            original_request, mission, ProposedAction(agent_id=self.agent_id, skill_name=skill, arguments=args)
        )
        if not decision.approved:
            return f"Error: Action rejected: {decision.reason or 'not permitted'}", agent_state

        definition = self._skills.get(skill)
        if definition is None:
            return self._nudger.format_error(f'Error: Skill "{skill}" is not registered.', "skill_not_found"), agent_state

        admission = self._ledger.admit_skill(definition.name, agent_state)
        if isinstance(admission, CircuitOpen):
            logger.warning("skill_circuit_open", agent_id=self.agent_id, skill=definition.name)
            return (
                self._nudger.format_exception(
                    f'Error: Skill "{definition.name}" is temporarily unavailable (circuit open).', admission
                ),
                agent_state,
            )
        if isinstance(admission, LimitExceeded):
            logger.warning(
                "skill_call_rejected",
                agent_id=self.agent_id,
                skill=definition.name,
                level=admission.level,
                scope=admission.scope,
            )
            return (
                self._nudger.format_exception(
                    f"Error: Skill call rejected, {admission.scope} limit reached ({admission.used}/{admission.max}).",
                    admission,
                ),
                agent_state,
            )

        agent_state = admission.agent
        self.tool_calls_used = agent_state.skill_calls
        context = SkillContext(conversation_id=self.conversation_id, user_id=self.user_id, agent_id=self.agent_id)
        return await self._execute_skill(definition, args, context), agent_state

    async def _execute_skill(self, definition: SkillDefinition, args: dict[str, Any], context: SkillContext) -> str:
        raise NotImplementedError


__all__ = ["LoopOutcome", "REQUEST_HELP", "SkillLoopAgent", "USE_SKILL"]
