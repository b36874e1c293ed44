from __future__ import annotations

import time
from typing import Any, Callable, Mapping

from ..core.config import SubAgentSettings
from ..core.logging import get_logger
from ..schemas.agents import AgentExecutionResult, DispatchSpec
from ..services.llm import LLMClient, Message
from ..skills.exceptions import SkillError
from ..skills.executor import run_skill, stub_result
from ..skills.models import SkillContext, SkillDefinition
from ..skills.registry import SkillRegistry, normalize_skill_name
from .agent_loop import SkillLoopAgent
from .enums import AgentStatus
from .limits import SkillCallLedger
from .nudger import Nudger
from .registry import SUB_AGENT, AgentRegistry
from .sentinel import Sentinel

logger = get_logger(name=__name__)


class SubAgent(SkillLoopAgent):
    """Ephemeral agent running one dispatched mission.

    Lifecycle: ``running -> awaiting_orchestrator -> running -> completed | failed``.
    The agent is registered under ``("sub_agent", "<conversation>:<agent_id>")``
    for the duration of :meth:`run` so the orchestrator can resume it.
    """

    def __init__(
        self,
        spec: DispatchSpec,
        *,
        llm: LLMClient,
        skills: SkillRegistry,
        ledger: SkillCallLedger,
        conversation_id: str,
        user_id: str,
        dep_results: Mapping[str, AgentExecutionResult] | None = None,
        original_request: str | None = None,
        registry: AgentRegistry | None = None,
        settings: SubAgentSettings | None = None,
        sentinel: Sentinel | None = None,
        nudger: Nudger | None = None,
        on_paused: Callable[[SkillLoopAgent], None] | None = None,
    ) -> None:
        super().__init__(
            agent_id=spec.agent_id,
            llm=llm,
            skills=skills,
            ledger=ledger,
            conversation_id=conversation_id,
            user_id=user_id,
            settings=settings,
            sentinel=sentinel,
            nudger=nudger,
            model=spec.model_override,
            on_paused=on_paused,
        )
        self.spec = spec
        self._dep_results = dict(dep_results or {})
        self._original_request = original_request
        self._registry = registry
        self.status = AgentStatus.PENDING
        self._started: float | None = None

    @property
    def registry_key(self) -> str:
        return f"{self.conversation_id}:{self.agent_id}"

    def snapshot(self) -> AgentExecutionResult:
        """Point-in-time view of an agent that has not produced its result yet."""
        elapsed = None if self._started is None else int((time.monotonic() - self._started) * 1000)
        return AgentExecutionResult(
            status=self.status,
            tool_calls_used=self.tool_calls_used,
            duration_ms=elapsed,
            reason=self.awaiting_reason,
        )

    async def run(self) -> AgentExecutionResult:
        self._started = time.monotonic()
        self.status = AgentStatus.RUNNING
        if self._registry is not None:
            self._registry.register(SUB_AGENT, self.registry_key, self)
        logger.info("sub_agent_started", agent_id=self.agent_id, skills=self.spec.skills)
        try:
            max_calls = self.spec.max_tool_calls
            if max_calls is None:
                max_calls = self._settings.max_tool_calls
            outcome = await self._run_loop(
                self._initial_messages(),
                self._ledger.new_agent_state(max_calls),
                allowed={normalize_skill_name(name) for name in self.spec.skills},
                mission=self.spec.mission,
                original_request=self._original_request,
            )
        finally:
            if self._registry is not None:
                self._registry.unregister(SUB_AGENT, self.registry_key, self)

        self.status = outcome.status
        logger.info(
            "sub_agent_finished",
            agent_id=self.agent_id,
            status=outcome.status.value,
            tool_calls_used=outcome.tool_calls_used,
            duration_ms=outcome.duration_ms,
        )
        return AgentExecutionResult(
            status=outcome.status,
            result=outcome.text,
            tool_calls_used=outcome.tool_calls_used,
            duration_ms=outcome.duration_ms,
        )

    def _on_pause(self, reason: str) -> None:
        self.status = AgentStatus.AWAITING_ORCHESTRATOR

    def _on_resume(self) -> None:
        self.status = AgentStatus.RUNNING

    def _initial_messages(self) -> list[Message]:
        parts = [f"Mission: {self.spec.mission}"]
        if self.spec.context:
            parts.append(f"Context:\n{self.spec.context}")
        if self._dep_results:
            lines = [
                f"- {agent_id} ({result.status.value}): {result.result or ''}"
                for agent_id, result in sorted(self._dep_results.items())
            ]
            parts.append("Results from agents this mission depends on:\n" + "\n".join(lines))
        parts.append(f"Available skills: {', '.join(sorted(self.spec.skills)) or 'none'}")
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": "\n\n".join(parts)},
        ]

    async def _execute_skill(self, definition: SkillDefinition, args: dict[str, Any], context: SkillContext) -> str:
        if definition.handler is None:
            return stub_result().content
        try:
            result = await run_skill(
                definition.name,
                definition.handler,
                args,
                context,
                timeout_ms=self._settings.skill_timeout_ms,
            )
        except SkillError as exc:
            self._ledger.record_skill_failure(definition.name)
            return self._nudger.format_exception(f"Skill execution failed: {exc}", exc)

        if not result.succeeded:
            self._ledger.record_skill_failure(definition.name)
            return f"Skill returned an error: {result.content}"
        self._ledger.record_skill_success(definition.name)
        return result.content


__all__ = ["SubAgent"]
