"""Persistent per-user memory agent.

One instance lives for each user for the lifetime of the process. It runs one
mission at a time through the shared skill loop, routing every skill call
through the search-first gate with a session created fresh for each mission.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Mapping

from ..core.config import MemorySettings, ResilienceSettings, SubAgentSettings
from ..core.logging import get_logger
from ..orchestration.agent_loop import SkillLoopAgent
from ..orchestration.enums import AgentStatus, MemoryAgentStatus
from ..orchestration.exceptions import AgentBusyError
from ..orchestration.limits import SkillCallLedger
from ..orchestration.registry import MEMORY_AGENT, AgentRegistry
from ..resilience.circuit_breaker import SkillFuseRegistry
from ..schemas.agents import AgentExecutionResult
from ..services.llm import LLMClient, Message
from ..skills.models import SkillContext, SkillDefinition
from ..skills.registry import SkillRegistry
from . import skill_executor
from .skill_executor import MEMORY_WRITE_WITHOUT_SEARCH, Executed, SearchSession

logger = get_logger(name=__name__)

WRITE_REJECTED = "Error: Write rejected - you must search before writing."


class MemoryAgent(SkillLoopAgent):
    system_prompt = (
        "You are the user's memory agent. You maintain long-term memories and the entity graph. "
        "Always search existing memories before saving, extracting or compacting, so you never store duplicates. "
        "Reply with a short plain-text report when the mission is done."
    )

    def __init__(
        self,
        *,
        user_id: str,
        llm: LLMClient,
        skills: SkillRegistry,
        registry: AgentRegistry | None = None,
        settings: MemorySettings | None = None,
        resilience: ResilienceSettings | None = None,
        loop_settings: SubAgentSettings | None = None,
        ledger: SkillCallLedger | None = None,
        fuses: SkillFuseRegistry | None = None,
    ) -> None:
        super().__init__(
            agent_id=f"memory:{user_id}",
            llm=llm,
            skills=skills,
            ledger=ledger or SkillCallLedger(resilience, fuses=fuses),
            conversation_id="",
            user_id=user_id,
            settings=loop_settings,
        )
        self._memory_settings = settings or MemorySettings()
        self._registry = registry
        self.status = MemoryAgentStatus.IDLE
        self.last_result: AgentExecutionResult | None = None
        self.missions_completed = 0
        self.current_mission: str | None = None
        self._session: SearchSession = skill_executor.new_session()
        self._task: asyncio.Task | None = None
        if registry is not None:
            registry.register(MEMORY_AGENT, user_id, self)

    @property
    def memory_skills(self) -> list[str]:
        return [name for name in self._skills.list() if skill_executor.is_memory_skill(name)]

    def dispatch(self, mission: str, params: Mapping[str, Any] | None = None) -> asyncio.Task:
        """Start ``mission`` in the background.

        Raises :class:`AgentBusyError` unless the agent is idle.
        """
        if self.status is not MemoryAgentStatus.IDLE:
            raise AgentBusyError(f"Memory agent for user '{self.user_id}' is {self.status.value}")
        params = dict(params or {})
        self.status = MemoryAgentStatus.RUNNING
        self.current_mission = mission
        self.conversation_id = str(params.get("conversation_id") or "")
        self._session = skill_executor.new_session()
        self.tool_calls_used = 0
        logger.info(
            "memory_agent_dispatched",
            user_id=self.user_id,
            conversation_id=self.conversation_id or None,
            mission_preview=mission[:100],
        )
        self._task = asyncio.create_task(self._run_mission(mission, params), name=f"memory:{self.user_id}")
        return self._task

    def get_status(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "current_mission": self.current_mission,
            "awaiting_reason": self.awaiting_reason,
            "last_result": self.last_result.result if self.last_result else None,
            "missions_completed": self.missions_completed,
            "skills": self.memory_skills,
        }

    async def wait_idle(self, timeout: float | None = None) -> AgentExecutionResult | None:
        if self._task is not None:
            await asyncio.wait({self._task}, timeout=timeout)
        return self.last_result

    async def close(self) -> None:
        if self._registry is not None:
            self._registry.unregister(MEMORY_AGENT, self.user_id, self)
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.wait({self._task})
            self._settle()

    async def _run_mission(self, mission: str, params: dict[str, Any]) -> AgentExecutionResult:
        started = time.monotonic()
        self._ledger.start_turn()
        max_calls = params.get("max_tool_calls") or self._memory_settings.max_tool_calls
        try:
            try:
                outcome = await self._run_loop(
                    self._initial_messages(mission, params),
                    self._ledger.new_agent_state(max_calls),
                    allowed=set(self.memory_skills),
                    mission=mission,
                    original_request=params.get("original_request"),
                )
                result = AgentExecutionResult(
                    status=outcome.status,
                    result=outcome.text,
                    tool_calls_used=outcome.tool_calls_used,
                    duration_ms=outcome.duration_ms,
                )
            except Exception as exc:
                logger.exception("memory_agent_mission_crashed", user_id=self.user_id)
                result = AgentExecutionResult.failed(
                    f"Mission failed: {type(exc).__name__}: {exc}",
                    tool_calls_used=self.tool_calls_used,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            if result.status is AgentStatus.COMPLETED:
                self.missions_completed += 1
            self.last_result = result
        finally:
            self._settle()

        logger.info(
            "memory_agent_mission_finished",
            user_id=self.user_id,
            status=result.status.value,
            duration_ms=result.duration_ms,
            tool_calls_used=result.tool_calls_used,
        )
        return result

    def _settle(self) -> None:
        self.status = MemoryAgentStatus.IDLE
        self.current_mission = None
        self.awaiting_reason = None

    def _on_pause(self, reason: str) -> None:
        self.status = MemoryAgentStatus.AWAITING_ORCHESTRATOR

    def _on_resume(self) -> None:
        self.status = MemoryAgentStatus.RUNNING

    def _initial_messages(self, mission: str, params: Mapping[str, Any]) -> list[Message]:
        parts = [f"Mission: {mission}"]
        details = {key: value for key, value in params.items() if key not in {"max_tool_calls", "original_request"}}
        if details:
            parts.append(f"Parameters:\n{json.dumps(details, default=str, sort_keys=True)}")
        parts.append(f"Available skills: {', '.join(self.memory_skills) or 'none'}")
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": "\n\n".join(parts)},
        ]

    async def _execute_skill(self, definition: SkillDefinition, args: dict[str, Any], context: SkillContext) -> str:
        outcome = await skill_executor.execute(
            definition.name,
            definition.handler,
            args,
            context,
            self._session,
            timeout_ms=self._settings.skill_timeout_ms,
        )
        self._session = outcome.session

        if isinstance(outcome, Executed):
            if not outcome.result.succeeded:
                self._ledger.record_skill_failure(definition.name)
                return f"Skill returned an error: {outcome.result.content}"
            self._ledger.record_skill_success(definition.name)
            return outcome.result.content

        if outcome.reason == MEMORY_WRITE_WITHOUT_SEARCH:
            return self._nudger.format_exception(WRITE_REJECTED, outcome)
        self._ledger.record_skill_failure(definition.name)
        return self._nudger.format_exception(f"Skill execution failed: {outcome.error}", outcome)


__all__ = ["MemoryAgent", "WRITE_REJECTED"]
