"""Wave scheduler for batches of dependent agent dispatches.

A batch is planned into waves with Kahn's algorithm: wave ``i`` holds the
agents whose dependencies all sit in waves ``0..i-1``. Waves run one after the
other; agents inside a wave run concurrently. An agent whose ancestor failed,
timed out or was skipped is itself skipped without being started.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Iterable, Mapping

from ..core import metrics
from ..core.config import SchedulerSettings
from ..core.logging import get_logger
from ..schemas.agents import AgentExecutionResult, DispatchSpec
from .enums import AgentStatus, WaitMode
from .exceptions import CycleDetectedError, UnknownDependencyError
from .supervisor import AgentSupervisor

logger = get_logger(name=__name__)

DepResults = Mapping[str, AgentExecutionResult]
ExecuteFn = Callable[[DispatchSpec, DepResults], Awaitable[Any]]


def plan_waves(dispatches: Mapping[str, DispatchSpec]) -> list[list[str]]:
    """Order ``dispatches`` into waves.

    Raises :class:`UnknownDependencyError` for a ``depends_on`` entry outside
    the batch and :class:`CycleDetectedError` when no full ordering exists.
    Agent ids inside a wave are sorted.
    """
    if not dispatches:
        return []

    for agent_id in sorted(dispatches):
        for dependency in dispatches[agent_id].depends_on:
            if dependency not in dispatches:
                raise UnknownDependencyError(dependency, agent_id=agent_id)

    in_degree: dict[str, int] = {}
    dependents: dict[str, list[str]] = {agent_id: [] for agent_id in dispatches}
    for agent_id, spec in dispatches.items():
        unique = set(spec.depends_on)
        in_degree[agent_id] = len(unique)
        for dependency in unique:
            dependents[dependency].append(agent_id)

    waves: list[list[str]] = []
    ready = sorted(agent_id for agent_id, degree in in_degree.items() if degree == 0)
    emitted = 0
    while ready:
        waves.append(ready)
        emitted += len(ready)
        upcoming: list[str] = []
        for agent_id in ready:
            for dependent in dependents[agent_id]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    upcoming.append(dependent)
        ready = sorted(upcoming)

    if emitted != len(dispatches):
        remaining = [agent_id for agent_id, degree in in_degree.items() if degree > 0]
        raise CycleDetectedError(remaining)
    return waves


def ancestors_of(dispatches: Mapping[str, DispatchSpec]) -> dict[str, set[str]]:
    """Transitive dependency closure for every agent in an acyclic batch."""
    closure: dict[str, set[str]] = {}

    def visit(agent_id: str) -> set[str]:
        if agent_id in closure:
            return closure[agent_id]
        found: set[str] = set()
        for dependency in dispatches[agent_id].depends_on:
            found.add(dependency)
            found |= visit(dependency)
        closure[agent_id] = found
        return found

    for agent_id in dispatches:
        visit(agent_id)
    return closure


class AgentScheduler:
    def __init__(
        self,
        supervisor: AgentSupervisor | None = None,
        *,
        settings: SchedulerSettings | None = None,
    ) -> None:
        self._settings = settings or SchedulerSettings()
        self._supervisor = supervisor or AgentSupervisor(max_children=self._settings.max_concurrent_agents)

    @property
    def supervisor(self) -> AgentSupervisor:
        return self._supervisor

    async def execute(
        self,
        dispatches: Mapping[str, DispatchSpec],
        execute_fn: ExecuteFn,
    ) -> dict[str, AgentExecutionResult]:
        """Run every dispatch wave by wave and return one result per agent id.

        Planning errors propagate before anything runs. Per-agent failures,
        crashes and timeouts are contained in that agent's result.
        """
        waves = plan_waves(dispatches)
        metrics.observe_wave_count(waves=len(waves))
        lineage = ancestors_of(dispatches)
        results: dict[str, AgentExecutionResult] = {}

        logger.info("dispatch_batch_planned", agents=len(dispatches), waves=len(waves))

        for index, wave in enumerate(waves):
            launched: dict[str, asyncio.Task] = {}
            for agent_id in wave:
                spec = dispatches[agent_id]
                if any(results[dep].status.blocks_dependents for dep in spec.depends_on):
                    failed_roots = [
                        ancestor
                        for ancestor in lineage[agent_id]
                        if results[ancestor].status.blocks_dependents
                        and results[ancestor].status is not AgentStatus.SKIPPED
                    ]
                    results[agent_id] = self._skipped(agent_id, failed_roots)
                    continue
                dep_results = {ancestor: results[ancestor] for ancestor in lineage[agent_id]}
                launched[agent_id] = self._supervisor.spawn(
                    agent_id,
                    lambda spec=spec, dep_results=dep_results: self._run_one(spec, dep_results, execute_fn),
                )

            if launched:
                await asyncio.gather(*launched.values())
            for agent_id, task in launched.items():
                results[agent_id] = task.result()
            logger.debug("dispatch_wave_completed", wave=index, agents=wave)

        return results

    async def _run_one(
        self,
        spec: DispatchSpec,
        dep_results: DepResults,
        execute_fn: ExecuteFn,
    ) -> AgentExecutionResult:
        timeout_ms = min(spec.timeout_ms or self._settings.agent_timeout_ms, self._settings.max_agent_timeout_ms)
        started = time.monotonic()
        try:
            outcome = await asyncio.wait_for(execute_fn(spec, dep_results), timeout=timeout_ms / 1000)
            result = (
                outcome
                if isinstance(outcome, AgentExecutionResult)
                else AgentExecutionResult.model_validate(outcome)
            )
        except asyncio.TimeoutError:
            logger.warning("agent_timeout", agent_id=spec.agent_id, timeout_ms=timeout_ms)
            result = AgentExecutionResult(
                status=AgentStatus.TIMEOUT,
                result="Agent timed out",
                duration_ms=_elapsed_ms(started),
            )
        except Exception as exc:
            logger.exception("agent_crashed", agent_id=spec.agent_id)
            result = AgentExecutionResult.failed(
                f"Agent crashed: {type(exc).__name__}: {exc}",
                duration_ms=_elapsed_ms(started),
            )

        if result.duration_ms is None:
            result = result.model_copy(update={"duration_ms": _elapsed_ms(started)})
        metrics.record_agent_result(status=result.status.value)
        metrics.observe_agent_duration(seconds=time.monotonic() - started)
        return result

    def _skipped(self, agent_id: str, blocked: Iterable[str]) -> AgentExecutionResult:
        blocked = sorted(blocked)
        logger.info("agent_skipped", agent_id=agent_id, failed_dependencies=blocked)
        metrics.record_agent_result(status=AgentStatus.SKIPPED.value)
        return AgentExecutionResult(
            status=AgentStatus.SKIPPED,
            result=f"Skipped because dependency failed: {', '.join(blocked)}",
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def wait_for_agents(
    agent_tasks: Mapping[str, asyncio.Task],
    agent_ids: Iterable[str],
    mode: WaitMode | str,
    timeout_ms: int,
) -> dict[str, AgentExecutionResult]:
    """Join the named agent tasks without cancelling any of them.

    ``wait_all`` returns once every named task finished or the timeout
    elapsed; ``wait_any`` returns as soon as one of them finished. Ids with no
    task, and tasks still running at return time, are left out of the result.
    """
    mode = WaitMode(mode)
    tasks = {agent_id: agent_tasks[agent_id] for agent_id in agent_ids if agent_id in agent_tasks}
    if not tasks:
        return {}

    already_done = any(task.done() for task in tasks.values())
    if mode is not WaitMode.NON_BLOCKING and not (mode is WaitMode.WAIT_ANY and already_done):
        return_when = asyncio.FIRST_COMPLETED if mode is WaitMode.WAIT_ANY else asyncio.ALL_COMPLETED
        await asyncio.wait(set(tasks.values()), timeout=max(0, timeout_ms) / 1000, return_when=return_when)

    collected: dict[str, AgentExecutionResult] = {}
    for agent_id, task in tasks.items():
        if not task.done() or task.cancelled():
            continue
        error = task.exception()
        if error is not None:
            collected[agent_id] = AgentExecutionResult.failed(f"Agent crashed: {type(error).__name__}: {error}")
            continue
        outcome = task.result()
        if isinstance(outcome, AgentExecutionResult):
            collected[agent_id] = outcome
    return collected


__all__ = ["AgentScheduler", "DepResults", "ExecuteFn", "ancestors_of", "plan_waves", "wait_for_agents"]
