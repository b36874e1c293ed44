from __future__ import annotations

import asyncio
import json
import time
from typing import Any

from ..core import metrics
from ..core.logging import get_logger
from .exceptions import SkillCrashError, SkillError, SkillTimeoutError
from .models import SkillContext, SkillHandler, SkillResult

logger = get_logger(name=__name__)

DEFAULT_SKILL_TIMEOUT_MS = 30_000

STUB_PAYLOAD = {"result": "stub", "message": "Skill handler not yet implemented."}


def stub_result() -> SkillResult:
    """Result returned for skills registered without a handler."""
    return SkillResult.ok(json.dumps(STUB_PAYLOAD), stub=True)


async def run_skill(
    name: str,
    handler: SkillHandler,
    args: dict[str, Any],
    context: SkillContext,
    *,
    timeout_ms: int = DEFAULT_SKILL_TIMEOUT_MS,
) -> SkillResult:
    """Await ``handler`` under a timeout.

    Raises :class:`SkillTimeoutError` when the handler overruns and
    :class:`SkillCrashError` when it raises anything that is not a
    :class:`SkillError`. Handler-raised ``SkillError`` subclasses propagate as-is.
    """
    started = time.monotonic()
    try:
        result = await asyncio.wait_for(handler(args, context), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as exc:
        logger.warning("skill_timeout", skill=name, timeout_ms=timeout_ms, agent_id=context.agent_id)
        metrics.record_skill_invocation(skill=name, outcome="timeout")
        raise SkillTimeoutError(name, timeout_ms) from exc
    except SkillError:
        metrics.record_skill_invocation(skill=name, outcome="error")
        raise
    except Exception as exc:
        logger.exception("skill_crashed", skill=name, agent_id=context.agent_id)
        metrics.record_skill_invocation(skill=name, outcome="crash")
        raise SkillCrashError(name, exc) from exc

    metrics.record_skill_invocation(skill=name, outcome=result.status)
    logger.debug(
        "skill_completed",
        skill=name,
        status=result.status,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    return result


__all__ = ["DEFAULT_SKILL_TIMEOUT_MS", "STUB_PAYLOAD", "run_skill", "stub_result"]
