from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from .core.config import Settings, get_settings
from .core.logging import configure_logging, get_logger
from .memory.agent import MemoryAgent
from .memory.compaction import Compactor, ConversationStore, compaction_skill
from .memory.context_monitor import ContextMonitor
from .memory.skill_executor import READ_SKILLS, WRITE_SKILLS
from .orchestration.engine import OrchestratorEngine
from .orchestration.registry import MEMORY_AGENT, AgentRegistry
from .resilience.circuit_breaker import SkillFuseRegistry, skill_fuses
from .services.events import EventBus
from .services.llm import LLMClient
from .skills.registry import SkillRegistry

logger = get_logger(name=__name__)

COMPACT_CONVERSATION = "memory.compact_conversation"


class Assistant:
    """Process-level wiring: skills, fuses, agent registry, event bus and memory agents."""

    def __init__(
        self,
        llm: LLMClient,
        *,
        settings: Settings | None = None,
        skills: SkillRegistry | None = None,
        store: ConversationStore | None = None,
        registry: AgentRegistry | None = None,
        fuses: SkillFuseRegistry | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.llm = llm
        self.skills = skills or SkillRegistry()
        self.registry = registry or AgentRegistry()
        self.bus = EventBus()
        self.fuses = fuses or skill_fuses
        resilience = self.settings.resilience
        self.fuses.configure(
            max_melts=resilience.skill_max_melts,
            melt_window_ms=resilience.skill_melt_window_ms,
            reset_ms=resilience.skill_reset_ms,
        )
        self._engines: dict[str, OrchestratorEngine] = {}
        self._memory_agents: dict[str, MemoryAgent] = {}
        self.monitor = ContextMonitor(registry=self.registry, settings=self.settings.memory)
        self.monitor.attach(self.bus)

        for name in sorted(READ_SKILLS | WRITE_SKILLS):
            if name not in self.skills:
                self.skills.register_handler(name, None, description="Memory skill (no backend configured).")
        if store is not None:
            self.skills.register_handler(
                COMPACT_CONVERSATION,
                compaction_skill(Compactor(store, llm, settings=self.settings.memory)),
                description="Fold messages since the last compaction into the conversation summary.",
                tags=["memory", "summary"],
            )

    @classmethod
    def from_settings(cls, settings: Settings, llm: LLMClient, **kwargs) -> "Assistant":
        configure_logging(settings.observability.log_level, json_output=settings.observability.json_logs)
        return cls(llm, settings=settings, **kwargs)

    def conversation(self, conversation_id: str, user_id: str) -> OrchestratorEngine:
        engine = self._engines.get(conversation_id)
        if engine is None:
            self.memory_agent(user_id)
            engine = OrchestratorEngine(
                conversation_id,
                user_id,
                self.llm,
                skills=self.skills,
                settings=self.settings,
                registry=self.registry,
                bus=self.bus,
                fuses=self.fuses,
            )
            self._engines[conversation_id] = engine
        return engine

    def memory_agent(self, user_id: str) -> MemoryAgent:
        agent = self.registry.lookup(MEMORY_AGENT, user_id)
        if agent is None:
            agent = MemoryAgent(
                user_id=user_id,
                llm=self.llm,
                skills=self.skills,
                registry=self.registry,
                settings=self.settings.memory,
                resilience=self.settings.resilience,
                loop_settings=self.settings.sub_agent,
                fuses=self.fuses,
            )
            self._memory_agents[user_id] = agent
            logger.info("memory_agent_started", user_id=user_id, skills=len(agent.memory_skills))
        return agent

    async def aclose(self) -> None:
        for engine in self._engines.values():
            await engine.aclose()
        for agent in self._memory_agents.values():
            await agent.close()
        self.monitor.detach(self.bus)
        self._engines.clear()
        self._memory_agents.clear()
        logger.info("assistant_stopped")

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["Assistant"]:
        try:
            yield self
        finally:
            await self.aclose()


__all__ = ["Assistant", "COMPACT_CONVERSATION"]
