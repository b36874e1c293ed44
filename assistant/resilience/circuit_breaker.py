"""Four-level circuit breaker gating every skill invocation.

Level 1 is a process-wide fuse per skill name. Levels 2-4 are plain values
(agent counter, turn counters, conversation sliding window); each check returns
an updated copy on admission or a :class:`LimitExceeded` value on rejection.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Deque, Mapping

from ..core import metrics
from ..core.logging import get_logger
from . import rate_limiter
from .rate_limiter import Clock, RateLimited, RateLimiterState, monotonic_ms

logger = get_logger(name=__name__)

DEFAULT_MAX_MELTS = 3
DEFAULT_MELT_WINDOW_MS = 60_000
DEFAULT_RESET_MS = 30_000


class FuseState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"


@dataclass(frozen=True, slots=True)
class CircuitOpen:
    skill: str
    level: int = 1
    scope: str = "skill"


@dataclass(frozen=True, slots=True)
class LimitExceeded:
    level: int
    scope: str
    used: int
    max: int
    extra: Mapping[str, Any] = field(default_factory=dict)

    def as_details(self) -> dict[str, Any]:
        details: dict[str, Any] = dict(self.extra)
        details.update(level=self.level, scope=self.scope, used=self.used, max=self.max)
        return details


# ---------------------------------------------------------------------------
# Level 1: per-skill fuse
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class _Fuse:
    melts: Deque[int] = field(default_factory=deque)
    open_until: int | None = None


class SkillFuseRegistry:
    """Thread-safe registry of per-skill fuses using a standard melt policy.

    ``max_melts`` failures inside ``melt_window_ms`` blow the fuse; it closes
    on its own ``reset_ms`` after blowing.
    """

    def __init__(
        self,
        *,
        max_melts: int = DEFAULT_MAX_MELTS,
        melt_window_ms: int = DEFAULT_MELT_WINDOW_MS,
        reset_ms: int = DEFAULT_RESET_MS,
        clock: Clock = monotonic_ms,
    ) -> None:
        self._lock = threading.Lock()
        self._fuses: dict[str, _Fuse] = {}
        self._clock = clock
        self.configure(max_melts=max_melts, melt_window_ms=melt_window_ms, reset_ms=reset_ms)

    def configure(self, *, max_melts: int, melt_window_ms: int, reset_ms: int) -> None:
        with self._lock:
            self._max_melts = max(1, int(max_melts))
            self._melt_window_ms = max(1, int(melt_window_ms))
            self._reset_ms = max(0, int(reset_ms))

    def install(self, skill: str) -> None:
        with self._lock:
            self._fuses.setdefault(skill, _Fuse())

    def is_installed(self, skill: str) -> bool:
        with self._lock:
            return skill in self._fuses

    def check(self, skill: str) -> FuseState:
        with self._lock:
            fuse = self._fuses.setdefault(skill, _Fuse())
            return self._state_locked(fuse, self._clock())

    def record_failure(self, skill: str) -> bool:
        """Register one melt. Returns ``True`` when this melt blew the fuse."""
        with self._lock:
            now = self._clock()
            fuse = self._fuses.setdefault(skill, _Fuse())
            if self._state_locked(fuse, now) is FuseState.OPEN:
                return False
            boundary = now - self._melt_window_ms
            while fuse.melts and fuse.melts[0] <= boundary:
                fuse.melts.popleft()
            fuse.melts.append(now)
            if len(fuse.melts) < self._max_melts:
                return False
            fuse.melts.clear()
            fuse.open_until = now + self._reset_ms
            melts = self._max_melts
            reset_ms = self._reset_ms
        logger.warning("skill_fuse_blown", skill=skill, melts=melts, reset_ms=reset_ms)
        metrics.increment_fuse_blown(skill=skill)
        return True

    def record_success(self, skill: str) -> None:
        # Melts decay with the window; success does not heal the fuse.
        return None

    def reset(self, skill: str) -> None:
        with self._lock:
            fuse = self._fuses.get(skill)
            if fuse is None:
                return
            fuse.melts.clear()
            fuse.open_until = None

    def status(self, skill: str) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            fuse = self._fuses.get(skill)
            if fuse is None:
                return {"state": FuseState.CLOSED.value, "melts": 0, "seconds_until_close": 0.0}
            state = self._state_locked(fuse, now)
            remaining = (fuse.open_until - now) / 1000 if fuse.open_until is not None else 0.0
            return {
                "state": state.value,
                "melts": len(fuse.melts),
                "seconds_until_close": max(0.0, remaining),
            }

    def clear(self) -> None:
        with self._lock:
            self._fuses.clear()

    def _state_locked(self, fuse: _Fuse, now: int) -> FuseState:
        if fuse.open_until is None:
            return FuseState.CLOSED
        if now >= fuse.open_until:
            fuse.open_until = None
            return FuseState.CLOSED
        return FuseState.OPEN


skill_fuses = SkillFuseRegistry()


def install_skill_fuse(skill: str, *, fuses: SkillFuseRegistry | None = None) -> None:
    (fuses or skill_fuses).install(skill)


def check_skill(skill: str, *, fuses: SkillFuseRegistry | None = None) -> FuseState:
    return (fuses or skill_fuses).check(skill)


def record_skill_failure(skill: str, *, fuses: SkillFuseRegistry | None = None) -> bool:
    return (fuses or skill_fuses).record_failure(skill)


def record_skill_success(skill: str, *, fuses: SkillFuseRegistry | None = None) -> None:
    (fuses or skill_fuses).record_success(skill)


def reset_skill_fuse(skill: str, *, fuses: SkillFuseRegistry | None = None) -> None:
    (fuses or skill_fuses).reset(skill)


# ---------------------------------------------------------------------------
# Level 2: per-agent
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AgentState:
    max_skill_calls: int
    skill_calls: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.max_skill_calls - self.skill_calls)


def _require_positive(count: int) -> None:
    if count < 1:
        raise ValueError("count must be at least 1")


def new_agent_state(max_skill_calls: int = 5) -> AgentState:
    return AgentState(max_skill_calls=max_skill_calls)


def check_agent(state: AgentState, call_count: int = 1) -> AgentState | LimitExceeded:
    _require_positive(call_count)
    if state.skill_calls + call_count > state.max_skill_calls:
        return _reject(LimitExceeded(level=2, scope="agent", used=state.skill_calls, max=state.max_skill_calls))
    return replace(state, skill_calls=state.skill_calls + call_count)


# ---------------------------------------------------------------------------
# Level 3: per-turn
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TurnState:
    max_agents: int
    max_skill_calls: int
    agents_dispatched: int = 0
    skill_calls: int = 0


def new_turn_state(max_agents: int = 8, max_skill_calls: int = 30) -> TurnState:
    return TurnState(max_agents=max_agents, max_skill_calls=max_skill_calls)


def check_turn_agents(state: TurnState, agent_count: int = 1) -> TurnState | LimitExceeded:
    _require_positive(agent_count)
    if state.agents_dispatched + agent_count > state.max_agents:
        return _reject(
            LimitExceeded(level=3, scope="turn_agents", used=state.agents_dispatched, max=state.max_agents)
        )
    return replace(state, agents_dispatched=state.agents_dispatched + agent_count)


def check_turn_skill_calls(state: TurnState, call_count: int = 1) -> TurnState | LimitExceeded:
    _require_positive(call_count)
    if state.skill_calls + call_count > state.max_skill_calls:
        return _reject(
            LimitExceeded(level=3, scope="turn_skill_calls", used=state.skill_calls, max=state.max_skill_calls)
        )
    return replace(state, skill_calls=state.skill_calls + call_count)


# ---------------------------------------------------------------------------
# Level 4: per-conversation
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ConversationState:
    limiter: RateLimiterState


def new_conversation_state(max_calls: int = 50, window_ms: int = 300_000) -> ConversationState:
    return ConversationState(limiter=rate_limiter.new(max_calls, window_ms))


def check_conversation(
    state: ConversationState,
    call_count: int = 1,
    *,
    clock: Clock = monotonic_ms,
) -> ConversationState | LimitExceeded:
    outcome = rate_limiter.check(state.limiter, call_count, clock=clock)
    if isinstance(outcome, RateLimited):
        return _reject(
            LimitExceeded(
                level=4,
                scope="conversation",
                used=outcome.current_count,
                max=outcome.max_calls,
                extra=outcome.as_details(),
            )
        )
    return ConversationState(limiter=outcome)


# ---------------------------------------------------------------------------
# Composite
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Admission:
    agent: AgentState
    turn: TurnState
    conversation: ConversationState


def check_all(
    skill: str,
    agent_state: AgentState,
    turn_state: TurnState,
    conversation_state: ConversationState,
    *,
    fuses: SkillFuseRegistry | None = None,
    clock: Clock = monotonic_ms,
) -> Admission | CircuitOpen | LimitExceeded:
    """Run levels 1 to 4 in order for one skill call, stopping at the first rejection."""
    if check_skill(skill, fuses=fuses) is FuseState.OPEN:
        metrics.increment_limit_rejection(level=1, scope="skill")
        return CircuitOpen(skill=skill)

    agent = check_agent(agent_state)
    if isinstance(agent, LimitExceeded):
        return agent

    turn = check_turn_skill_calls(turn_state)
    if isinstance(turn, LimitExceeded):
        return turn

    conversation = check_conversation(conversation_state, clock=clock)
    if isinstance(conversation, LimitExceeded):
        return conversation

    return Admission(agent=agent, turn=turn, conversation=conversation)


def _reject(rejection: LimitExceeded) -> LimitExceeded:
    metrics.increment_limit_rejection(level=rejection.level, scope=rejection.scope)
    return rejection


__all__ = [
    "Admission",
    "AgentState",
    "CircuitOpen",
    "ConversationState",
    "FuseState",
    "LimitExceeded",
    "SkillFuseRegistry",
    "TurnState",
    "check_agent",
    "check_all",
    "check_conversation",
    "check_skill",
    "check_turn_agents",
    "check_turn_skill_calls",
    "install_skill_fuse",
    "new_agent_state",
    "new_conversation_state",
    "new_turn_state",
    "record_skill_failure",
    "record_skill_success",
    "reset_skill_fuse",
    "skill_fuses",
]
