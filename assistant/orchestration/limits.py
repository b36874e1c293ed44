from __future__ import annotations

from ..core.config import ResilienceSettings
from ..resilience import circuit_breaker as cb
from ..resilience.circuit_breaker import (
    Admission,
    AgentState,
    CircuitOpen,
    ConversationState,
    LimitExceeded,
    SkillFuseRegistry,
    TurnState,
)
from ..resilience.rate_limiter import Clock, monotonic_ms


class SkillCallLedger:
    """Single owner of one conversation's turn and conversation breaker states.

    Agents running concurrently in a turn share the ledger; each method reads
    the current values, runs the pure check and stores the returned copy. None
    of them await, so a check-and-store cannot interleave with another one.
    """

    def __init__(
        self,
        settings: ResilienceSettings | None = None,
        *,
        fuses: SkillFuseRegistry | None = None,
        clock: Clock = monotonic_ms,
    ) -> None:
        self._settings = settings or ResilienceSettings()
        self._fuses = fuses
        self._clock = clock
        self._turn = self._fresh_turn()
        self._conversation = cb.new_conversation_state(
            max_calls=self._settings.conversation_max_calls,
            window_ms=self._settings.conversation_window_ms,
        )

    @property
    def turn(self) -> TurnState:
        return self._turn

    @property
    def conversation(self) -> ConversationState:
        return self._conversation

    def new_agent_state(self, max_skill_calls: int | None = None) -> AgentState:
        limit = self._settings.agent_max_skill_calls if max_skill_calls is None else max_skill_calls
        return cb.new_agent_state(limit)

    def start_turn(self) -> TurnState:
        self._turn = self._fresh_turn()
        return self._turn

    def admit_agents(self, count: int) -> TurnState | LimitExceeded:
        outcome = cb.check_turn_agents(self._turn, count)
        if isinstance(outcome, TurnState):
            self._turn = outcome
        return outcome

    def admit_iteration(self) -> ConversationState | LimitExceeded:
        outcome = cb.check_conversation(self._conversation, clock=self._clock)
        if isinstance(outcome, ConversationState):
            self._conversation = outcome
        return outcome

    def admit_skill(self, skill: str, agent_state: AgentState) -> Admission | CircuitOpen | LimitExceeded:
        outcome = cb.check_all(
            skill,
            agent_state,
            self._turn,
            self._conversation,
            fuses=self._fuses,
            clock=self._clock,
        )
        if isinstance(outcome, Admission):
            self._turn = outcome.turn
            self._conversation = outcome.conversation
        return outcome

    def record_skill_failure(self, skill: str) -> bool:
        return cb.record_skill_failure(skill, fuses=self._fuses)

    def record_skill_success(self, skill: str) -> None:
        cb.record_skill_success(skill, fuses=self._fuses)

    def _fresh_turn(self) -> TurnState:
        return cb.new_turn_state(
            max_agents=self._settings.turn_max_agents,
            max_skill_calls=self._settings.turn_max_skill_calls,
        )


__all__ = ["SkillCallLedger"]
