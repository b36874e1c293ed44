from __future__ import annotations

from ..core.config import MemorySettings
from ..core.logging import get_logger
from ..orchestration.exceptions import AgentBusyError
from ..orchestration.registry import MEMORY_AGENT, AgentRegistry, agent_registry
from ..resilience.rate_limiter import Clock, monotonic_ms
from ..services.events import EventBus, TokenUsageUpdated

logger = get_logger(name=__name__)

COMPACTION_MISSION = (
    "Compact conversation {conversation_id}: context utilization reached {utilization:.0%}. "
    "Search existing memories for this conversation first, then call memory.compact_conversation "
    "with the conversation_id."
)


class ContextMonitor:
    """Dispatches compaction to the user's memory agent when a conversation nears its context limit.

    A conversation is compacted at most once per cooldown; the cooldown starts
    when a dispatch is attempted, whether or not an agent picked it up.
    """

    def __init__(
        self,
        *,
        registry: AgentRegistry | None = None,
        settings: MemorySettings | None = None,
        clock: Clock = monotonic_ms,
    ) -> None:
        self._registry = registry or agent_registry
        self._settings = settings or MemorySettings()
        self._clock = clock
        self._last_compaction_at: dict[str, int] = {}

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(TokenUsageUpdated, self.handle_token_usage)

    def detach(self, bus: EventBus) -> None:
        bus.unsubscribe(TokenUsageUpdated, self.handle_token_usage)

    async def handle_token_usage(self, event: TokenUsageUpdated) -> bool:
        """Return ``True`` when a compaction mission was dispatched."""
        utilization = event.utilization
        if utilization < self._settings.compaction_trigger_threshold:
            return False

        now = self._clock()
        last = self._last_compaction_at.get(event.conversation_id)
        if last is not None and now - last < self._settings.compaction_cooldown_ms:
            logger.debug(
                "compaction_cooldown_active",
                conversation_id=event.conversation_id,
                cooldown_remaining_ms=self._settings.compaction_cooldown_ms - (now - last),
            )
            return False
        self._last_compaction_at[event.conversation_id] = now

        agent = self._registry.lookup(MEMORY_AGENT, event.user_id)
        if agent is None:
            logger.warning(
                "compaction_memory_agent_missing",
                user_id=event.user_id,
                conversation_id=event.conversation_id,
            )
            return False

        mission = COMPACTION_MISSION.format(conversation_id=event.conversation_id, utilization=utilization)
        try:
            agent.dispatch(
                mission,
                {
                    "conversation_id": event.conversation_id,
                    "user_id": event.user_id,
                    "trigger": "context_utilization",
                    "utilization": round(utilization, 3),
                },
            )
        except AgentBusyError:
            logger.info("compaction_memory_agent_busy", user_id=event.user_id, conversation_id=event.conversation_id)
            return False

        logger.info(
            "compaction_dispatched",
            user_id=event.user_id,
            conversation_id=event.conversation_id,
            utilization=round(utilization, 3),
        )
        return True


__all__ = ["COMPACTION_MISSION", "ContextMonitor"]
