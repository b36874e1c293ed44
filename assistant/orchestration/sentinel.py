from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from ..core.logging import get_logger

logger = get_logger(name=__name__)


@dataclass(frozen=True, slots=True)
class ProposedAction:
    agent_id: str
    skill_name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SentinelDecision:
    approved: bool
    reason: str | None = None


class Sentinel(Protocol):
    """Security gate consulted before every sub-agent skill call."""

    async def check(self, original_request: str | None, mission: str, action: ProposedAction) -> SentinelDecision:
        ...


class ApproveAllSentinel:
    """Approves every action and leaves an audit line per check."""

    async def check(self, original_request: str | None, mission: str, action: ProposedAction) -> SentinelDecision:
        logger.info(
            "sentinel_check",
            agent_id=action.agent_id,
            skill=action.skill_name,
            mission_prefix=_truncate(mission, 80),
            request_prefix=_truncate(original_request, 80),
            decision="approved",
        )
        return SentinelDecision(approved=True)


def _truncate(text: str | None, limit: int) -> str | None:
    if text is None or len(text) <= limit:
        return text
    return text[:limit] + "..."


__all__ = ["ApproveAllSentinel", "ProposedAction", "Sentinel", "SentinelDecision"]
