"""Conversation-level coordinator.

The engine owns one conversation: its message history, its breaker ledger and
its dispatched agents. Every user turn runs an LLM tool loop in which the
orchestrator model dispatches sub-agents, inspects their results, answers
their help requests and finally replies to the user.
"""

from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field
from typing import Any, Mapping

from ..core.config import Settings, get_settings
from ..core.logging import bind_conversation, clear_conversation, get_logger
from ..resilience.circuit_breaker import LimitExceeded, SkillFuseRegistry
from ..resilience.rate_limiter import Clock, monotonic_ms
from ..schemas.agents import AgentExecutionResult, DispatchSpec
from ..services.events import EventBus, TokenUsageUpdated, TurnCompleted
from ..services.llm import (
    LLMClient,
    Message,
    ToolCall,
    Usage,
    assistant_tool_call_message,
    complete_with_retry,
    tool_result_message,
)
from ..skills.registry import SkillRegistry, skill_registry
from . import tools
from .agent_loop import SkillLoopAgent
from .enums import AgentStatus, WaitMode
from .exceptions import SchedulingError
from .limits import SkillCallLedger
from .nudger import Nudger, nudger as default_nudger
from .registry import AgentRegistry, agent_registry
from .scheduler import AgentScheduler, DepResults, plan_waves, wait_for_agents
from .sentinel import Sentinel
from .sub_agent import SubAgent

logger = get_logger(name=__name__)

SYSTEM_PROMPT = (
    "You are a personal assistant orchestrator. Break the user's request into focused missions and dispatch "
    "sub-agents with dispatch_agent, giving each only the skills it needs. Use depends_on when one agent needs "
    "another's result. Use get_skill to discover skills, get_agent_results to inspect agents and "
    "send_agent_update to answer agents that ask for help. Reply to the user in plain text when done."
)
CONVERSATION_LIMIT_REPLY = (
    "I've reached the processing limit for this conversation window. "
    "Please wait a moment before sending another message."
)
ITERATION_LIMIT_REPLY = "I reached my processing limit for this turn. Here's what I have so far."


@dataclass(slots=True)
class DispatchedAgent:
    spec: DispatchSpec
    agent: SubAgent | None = None
    result: AgentExecutionResult | None = None
    task: asyncio.Task | None = None
    batch: asyncio.Task | None = None

    @property
    def join_target(self) -> asyncio.Task | None:
        """The agent's own task once spawned, otherwise the batch it belongs to."""
        return self.task or self.batch

    def current(self) -> AgentExecutionResult:
        if self.result is not None:
            return self.result
        if self.task is not None and self.task.done() and not self.task.cancelled() and self.task.exception() is None:
            return self.task.result()
        if self.agent is not None:
            return self.agent.snapshot()
        return AgentExecutionResult(status=AgentStatus.PENDING)


@dataclass(slots=True)
class TurnState:
    iterations: int = 0
    usage: Usage = field(default_factory=Usage)
    last_prompt_tokens: int = 0
    user_message: str = ""


class OrchestratorEngine:
    def __init__(
        self,
        conversation_id: str,
        user_id: str,
        llm: LLMClient,
        *,
        skills: SkillRegistry | None = None,
        settings: Settings | None = None,
        registry: AgentRegistry | None = None,
        bus: EventBus | None = None,
        sentinel: Sentinel | None = None,
        nudger: Nudger | None = None,
        scheduler: AgentScheduler | None = None,
        fuses: SkillFuseRegistry | None = None,
        clock: Clock = monotonic_ms,
    ) -> None:
        self.conversation_id = conversation_id
        self.user_id = user_id
        self._llm = llm
        self._skills = skills or skill_registry
        self._settings = settings or get_settings()
        self._registry = registry or agent_registry
        self._bus = bus
        self._sentinel = sentinel
        self._nudger = nudger or default_nudger
        self._scheduler = scheduler or AgentScheduler(settings=self._settings.scheduler)
        self._ledger = SkillCallLedger(self._settings.resilience, fuses=fuses, clock=clock)
        self._messages: list[Message] = [{"role": "system", "content": SYSTEM_PROMPT}]
        self._dispatched: dict[str, DispatchedAgent] = {}
        self._batches: set[asyncio.Task] = set()
        self._help_requested = asyncio.Event()
        self._turn = TurnState()
        self._total_usage = Usage()

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    async def send_message(self, text: str) -> str:
        """Run one user turn and return the assistant reply.

        :class:`~assistant.services.llm.LLMError` from the orchestrator model
        propagates to the caller.
        """
        bind_conversation(self.conversation_id, user_id=self.user_id)
        try:
            return await self._run_turn(text)
        finally:
            clear_conversation()

    async def _run_turn(self, text: str) -> str:
        self._ledger.start_turn()
        self._dispatched = {}
        self._turn = TurnState(user_message=text)
        self._messages.append({"role": "user", "content": text})
        logger.info("turn_started", message_count=len(self._messages))

        reply = ITERATION_LIMIT_REPLY
        while self._turn.iterations < self._settings.engine.max_iterations:
            self._turn.iterations += 1
            admitted = self._ledger.admit_iteration()
            if isinstance(admitted, LimitExceeded):
                logger.warning("conversation_rate_limited", used=admitted.used, max=admitted.max)
                reply = CONVERSATION_LIMIT_REPLY
                break

            response = await complete_with_retry(
                self._llm,
                self._messages,
                tools=tools.tool_definitions(self._settings.scheduler),
                model=self._settings.engine.orchestrator_model,
                attempts=self._settings.sub_agent.llm_retry_attempts,
                max_backoff_seconds=self._settings.sub_agent.llm_retry_max_backoff_seconds,
            )
            self._turn.usage = self._turn.usage + response.usage
            self._turn.last_prompt_tokens = response.usage.prompt_tokens

            if not response.tool_calls:
                reply = response.content or ""
                break
            self._messages.append(assistant_tool_call_message(response.tool_calls, response.content))
            await self._handle_tool_calls(response.tool_calls)
        else:
            logger.warning("turn_iteration_limit", iterations=self._turn.iterations)

        self._messages.append({"role": "assistant", "content": reply})
        self._total_usage = self._total_usage + self._turn.usage
        logger.info(
            "turn_completed",
            iterations=self._turn.iterations,
            agents=len(self._dispatched),
            prompt_tokens=self._turn.usage.prompt_tokens,
            completion_tokens=self._turn.usage.completion_tokens,
        )
        await self._publish_turn(text, reply)
        return reply

    async def _handle_tool_calls(self, calls: list[ToolCall]) -> None:
        outputs: dict[str, str] = {}
        dispatches = [call for call in calls if call.name == tools.DISPATCH_AGENT]
        if dispatches:
            outputs.update(await self._dispatch_batch(dispatches))

        for call in calls:
            if call.name == tools.DISPATCH_AGENT:
                continue
            if call.name == tools.GET_AGENT_RESULTS:
                outputs[call.id] = await self._get_agent_results(call.arguments)
            elif call.name == tools.GET_SKILL:
                outputs[call.id] = tools.get_skill(call.arguments, self._skills)
            elif call.name == tools.SEND_AGENT_UPDATE:
                outputs[call.id] = await tools.send_agent_update(
                    call.arguments, conversation_id=self.conversation_id, registry=self._registry
                )
            else:
                outputs[call.id] = f'Error: Unknown tool "{call.name}".'

        for call in calls:
            self._messages.append(tool_result_message(call.id, outputs[call.id]))

    async def _dispatch_batch(self, calls: list[ToolCall]) -> dict[str, str]:
        outputs: dict[str, str] = {}
        batch: dict[str, DispatchSpec] = {}
        owners: dict[str, str] = {}
        for call in calls:
            spec = tools.validate_dispatch(call.arguments, self._skills)
            if isinstance(spec, str):
                outputs[call.id] = f"Error: {spec}"
            elif spec.agent_id in batch or spec.agent_id in self._dispatched:
                outputs[call.id] = f'Error: Agent id "{spec.agent_id}" is already used in this turn.'
            else:
                batch[spec.agent_id] = spec
                owners[spec.agent_id] = call.id
        if not batch:
            return outputs

        try:
            plan_waves(batch)
        except SchedulingError as exc:
            logger.warning("dispatch_batch_rejected", kind=exc.kind, error=str(exc))
            message = self._nudger.format_exception(f"Error: {exc}", exc)
            outputs.update({call_id: message for call_id in owners.values()})
            return outputs

        admitted = self._ledger.admit_agents(len(batch))
        if isinstance(admitted, LimitExceeded):
            logger.warning("turn_agent_limit", requested=len(batch), used=admitted.used, max=admitted.max)
            message = self._nudger.format_exception(
                f"Error: Cannot dispatch {len(batch)} agents, turn limit reached ({admitted.used}/{admitted.max}).",
                admitted,
            )
            outputs.update({call_id: message for call_id in owners.values()})
            return outputs

        records = {agent_id: DispatchedAgent(spec=spec) for agent_id, spec in batch.items()}
        self._dispatched.update(records)
        self._help_requested.clear()
        batch_task = asyncio.create_task(
            self._scheduler.execute(batch, functools.partial(self._run_sub_agent, records))
        )
        for record in records.values():
            record.batch = batch_task
        self._batches.add(batch_task)
        batch_task.add_done_callback(functools.partial(self._batch_finished, records))

        help_waiter = asyncio.create_task(self._help_requested.wait())
        try:
            await asyncio.wait({batch_task, help_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            help_waiter.cancel()

        if batch_task.done() and not batch_task.cancelled() and batch_task.exception() is None:
            for agent_id, result in batch_task.result().items():
                self._dispatched[agent_id].result = result

        for agent_id, call_id in owners.items():
            current = self._dispatched[agent_id].current()
            outputs[call_id] = (
                f'Agent "{agent_id}" dispatched and {current.status.value}. '
                f"Use get_agent_results to inspect full results.\n\nSummary: {current.result or current.reason or ''}"
            )
        return outputs

    def _batch_finished(self, records: dict[str, DispatchedAgent], task: asyncio.Task) -> None:
        self._batches.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("dispatch_batch_failed", error=str(error))
            return
        for agent_id, result in task.result().items():
            records[agent_id].result = result
        for agent_id in records:
            self._scheduler.supervisor.forget(agent_id)

    async def _run_sub_agent(
        self,
        records: dict[str, DispatchedAgent],
        spec: DispatchSpec,
        dep_results: DepResults,
    ) -> AgentExecutionResult:
        agent = SubAgent(
            spec,
            llm=self._llm,
            skills=self._skills,
            ledger=self._ledger,
            conversation_id=self.conversation_id,
            user_id=self.user_id,
            dep_results=dep_results,
            original_request=self._turn.user_message,
            registry=self._registry,
            settings=self._settings.sub_agent,
            sentinel=self._sentinel,
            nudger=self._nudger,
            on_paused=self._agent_paused,
        )
        record = records[spec.agent_id]
        record.agent = agent
        record.task = self._scheduler.supervisor.tasks.get(spec.agent_id)
        return await agent.run()

    def _agent_paused(self, agent: SkillLoopAgent) -> None:
        logger.info("agent_help_requested", agent_id=agent.agent_id, reason=agent.awaiting_reason)
        self._help_requested.set()

    async def _get_agent_results(self, params: Mapping[str, Any]) -> str:
        ids = tools.requested_ids(params, self._dispatched)
        mode = tools.parse_mode(params.get("mode"))
        wait_ms = tools.clamp_wait_ms(params.get("wait_ms"), self._settings.scheduler)

        records = {agent_id: self._dispatched[agent_id] for agent_id in ids if agent_id in self._dispatched}
        pending = {
            agent_id: record.join_target
            for agent_id, record in records.items()
            if not record.current().is_terminal and record.join_target is not None and not record.join_target.done()
        }
        awaiting = any(
            record.current().status is AgentStatus.AWAITING_ORCHESTRATOR for record in records.values()
        )
        if mode is not WaitMode.NON_BLOCKING and pending and not awaiting:
            self._help_requested.clear()
            joiner = asyncio.create_task(wait_for_agents(pending, list(pending), mode, wait_ms))
            help_waiter = asyncio.create_task(self._help_requested.wait())
            try:
                await asyncio.wait({joiner, help_waiter}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                joiner.cancel()
                help_waiter.cancel()

        entries = [
            (agent_id, self._dispatched[agent_id].current() if agent_id in self._dispatched else None)
            for agent_id in ids
        ]
        return tools.format_agent_results(entries)

    async def _publish_turn(self, user_message: str, reply: str) -> None:
        if self._bus is None:
            return
        await self._bus.publish(
            TokenUsageUpdated(
                conversation_id=self.conversation_id,
                user_id=self.user_id,
                prompt_tokens=self._turn.last_prompt_tokens,
                max_context_tokens=self._settings.memory.max_context_tokens,
            )
        )
        await self._bus.publish(
            TurnCompleted(
                conversation_id=self.conversation_id,
                user_id=self.user_id,
                user_message=user_message,
                assistant_response=reply,
            )
        )

    def get_state(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "message_count": len(self._messages),
            "dispatched_agents": sorted(self._dispatched),
            "iteration_count": self._turn.iterations,
            "total_usage": self._total_usage.model_dump(),
        }

    async def aclose(self) -> None:
        await self._scheduler.supervisor.shutdown()
        for task in list(self._batches):
            task.cancel()
        if self._batches:
            await asyncio.wait(set(self._batches))
        logger.info("engine_closed", conversation_id=self.conversation_id)


__all__ = [
    "CONVERSATION_LIMIT_REPLY",
    "DispatchedAgent",
    "ITERATION_LIMIT_REPLY",
    "OrchestratorEngine",
    "SYSTEM_PROMPT",
]
