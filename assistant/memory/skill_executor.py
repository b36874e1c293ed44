"""Search-first wrapper around skill execution for the memory agent.

Every memory mission starts with a fresh :class:`SearchSession`. Write skills
are refused until a read skill has succeeded at least once in that session;
once searched, the session stays searched for the rest of the mission.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..core import metrics
from ..core.logging import get_logger
from ..skills.exceptions import SkillCrashError, SkillError, SkillTimeoutError
from ..skills.executor import DEFAULT_SKILL_TIMEOUT_MS, STUB_PAYLOAD, run_skill, stub_result
from ..skills.models import SkillContext, SkillHandler, SkillResult

logger = get_logger(name=__name__)

MEMORY_WRITE_WITHOUT_SEARCH = "memory_write_without_search"

READ_SKILLS = frozenset({"memory.search_memories", "memory.query_entity_graph"})
WRITE_SKILLS = frozenset(
    {
        "memory.save_memory",
        "memory.extract_entities",
        "memory.close_relation",
        "memory.compact_conversation",
    }
)


class SkillKind(str, Enum):
    READ = "read"
    WRITE = "write"
    PASSTHROUGH = "passthrough"


def classify(skill_name: str) -> SkillKind:
    if skill_name in READ_SKILLS:
        return SkillKind.READ
    if skill_name in WRITE_SKILLS:
        return SkillKind.WRITE
    return SkillKind.PASSTHROUGH


def is_memory_skill(skill_name: str) -> bool:
    return skill_name.startswith("memory.")


def is_read_skill(skill_name: str) -> bool:
    return skill_name in READ_SKILLS


def is_write_skill(skill_name: str) -> bool:
    return skill_name in WRITE_SKILLS


@dataclass(frozen=True, slots=True)
class SearchSession:
    has_searched: bool = False


def new_session() -> SearchSession:
    return SearchSession()


@dataclass(frozen=True, slots=True)
class Executed:
    result: SkillResult
    session: SearchSession


@dataclass(frozen=True, slots=True)
class Rejected:
    """A skill call that did not produce a result.

    ``reason`` is ``memory_write_without_search`` for the policy rejection, or
    ``skill_timeout`` / ``skill_crash`` / ``skill_failed`` for execution errors.
    """

    reason: str
    session: SearchSession
    error: SkillError | None = None


async def execute(
    skill_name: str,
    handler: SkillHandler | None,
    args: dict[str, Any],
    context: SkillContext,
    session: SearchSession,
    *,
    timeout_ms: int = DEFAULT_SKILL_TIMEOUT_MS,
) -> Executed | Rejected:
    kind = classify(skill_name)

    if kind is SkillKind.WRITE and not session.has_searched:
        logger.warning(MEMORY_WRITE_WITHOUT_SEARCH, skill=skill_name, agent_id=context.agent_id)
        metrics.increment_search_first_rejection()
        return Rejected(reason=MEMORY_WRITE_WITHOUT_SEARCH, session=session)

    try:
        result = await _invoke(skill_name, handler, args, context, timeout_ms)
    except SkillError as exc:
        return Rejected(reason=_reason_for(exc), session=session, error=exc)

    if kind is SkillKind.READ and not session.has_searched:
        return Executed(result=result, session=SearchSession(has_searched=True))
    return Executed(result=result, session=session)


async def _invoke(
    skill_name: str,
    handler: SkillHandler | None,
    args: dict[str, Any],
    context: SkillContext,
    timeout_ms: int,
) -> SkillResult:
    if handler is None:
        return stub_result()
    return await run_skill(skill_name, handler, args, context, timeout_ms=timeout_ms)


def _reason_for(exc: SkillError) -> str:
    if isinstance(exc, SkillTimeoutError):
        return "skill_timeout"
    if isinstance(exc, SkillCrashError):
        return "skill_crash"
    return "skill_failed"


__all__ = [
    "Executed",
    "MEMORY_WRITE_WITHOUT_SEARCH",
    "READ_SKILLS",
    "Rejected",
    "STUB_PAYLOAD",
    "SearchSession",
    "SkillKind",
    "WRITE_SKILLS",
    "classify",
    "execute",
    "is_memory_skill",
    "is_read_skill",
    "is_write_skill",
    "new_session",
]
