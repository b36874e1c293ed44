"""Recovery hints appended to error text shown to an LLM."""

from __future__ import annotations

from typing import Any, Mapping

from ..memory.skill_executor import MEMORY_WRITE_WITHOUT_SEARCH, Rejected
from ..resilience.circuit_breaker import CircuitOpen, LimitExceeded
from ..skills.exceptions import SkillCrashError, SkillNotFoundError, SkillTimeoutError
from .exceptions import SchedulingError, UnknownDependencyError

DEFAULT_HINTS: dict[str, str] = {
    "circuit_open": (
        "This skill failed repeatedly and is paused for a short cooldown. "
        "Try a different skill or report partial results instead of retrying."
    ),
    "limit_exceeded": (
        "Budget used: {used}/{max}. Stop issuing new calls and summarize what you have, "
        "or split the remaining work into a later turn."
    ),
    MEMORY_WRITE_WITHOUT_SEARCH: (
        "Call memory.search_memories (or memory.query_entity_graph) first to check for existing "
        "entries, then retry the write."
    ),
    "cycle_detected": "Remove the circular depends_on references and dispatch again.",
    "unknown_dependency": (
        "'{dependency}' is not part of this dispatch. Dispatch it in the same batch or drop it from depends_on."
    ),
    "skill_not_found": "Call get_skill to discover the exact skill names before dispatching.",
    "skill_timeout": "The skill took too long. Narrow the request (fewer items, smaller range) and retry once.",
    "skill_crash": "The skill hit an internal error. Do not retry with the same arguments.",
    "context_budget_exceeded": (
        "Drop or summarize context files to save about {overage_tokens} tokens, then dispatch again."
    ),
}


class Nudger:
    def __init__(self, hints: Mapping[str, str] | None = None) -> None:
        self._hints = dict(DEFAULT_HINTS if hints is None else hints)

    def lookup(self, error_type: str | None, details: Mapping[str, Any] | None = None) -> str | None:
        if error_type is None:
            return None
        template = self._hints.get(error_type)
        if template is None:
            return None
        try:
            return template.format_map(dict(details or {})).strip()
        except (KeyError, IndexError, ValueError):
            return None

    def format_error(
        self,
        base_message: str,
        error_type: str | None,
        details: Mapping[str, Any] | None = None,
    ) -> str:
        hint = self.lookup(error_type, details)
        if not hint:
            return base_message
        return f"{base_message}\n\nHint: {hint}"

    def format_exception(self, base_message: str, error: object) -> str:
        return self.format_error(base_message, error_type(error), error_details(error))


def error_type(error: object) -> str | None:
    if isinstance(error, str):
        return error
    if isinstance(error, CircuitOpen):
        return "circuit_open"
    if isinstance(error, LimitExceeded):
        return "limit_exceeded"
    if isinstance(error, Rejected):
        return error.reason
    if isinstance(error, SchedulingError):
        return error.kind
    if isinstance(error, SkillNotFoundError):
        return "skill_not_found"
    if isinstance(error, SkillTimeoutError):
        return "skill_timeout"
    if isinstance(error, SkillCrashError):
        return "skill_crash"
    return None


def error_details(error: object) -> dict[str, Any]:
    if isinstance(error, LimitExceeded):
        return error.as_details()
    if isinstance(error, CircuitOpen):
        return {"skill": error.skill}
    if isinstance(error, UnknownDependencyError):
        return {"dependency": error.dependency, "agent_id": error.agent_id}
    if isinstance(error, SkillTimeoutError):
        return {"skill": error.name, "timeout_ms": error.timeout_ms}
    return {}


nudger = Nudger()

__all__ = ["DEFAULT_HINTS", "Nudger", "error_details", "error_type", "nudger"]
