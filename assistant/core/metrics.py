from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

AGENT_RUNS_TOTAL = Counter(
    "assistant_agent_runs_total",
    "Sub-agent executions grouped by terminal status",
    labelnames=("status",),
)

AGENT_DURATION_SECONDS = Histogram(
    "assistant_agent_duration_seconds",
    "Wall-clock duration of a single sub-agent execution",
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
)

SCHEDULER_WAVES = Histogram(
    "assistant_scheduler_waves",
    "Number of waves planned per dispatch batch",
    buckets=(0, 1, 2, 3, 4, 5, 8, 13),
)

SKILL_FUSE_BLOWN_TOTAL = Counter(
    "assistant_skill_fuse_blown_total",
    "Times a per-skill fuse transitioned to open",
    labelnames=("skill",),
)

LIMIT_REJECTIONS_TOTAL = Counter(
    "assistant_limit_rejections_total",
    "Circuit breaker rejections grouped by level and scope",
    labelnames=("level", "scope"),
)

SKILL_INVOCATIONS_TOTAL = Counter(
    "assistant_skill_invocations_total",
    "Skill invocations grouped by outcome",
    labelnames=("skill", "outcome"),
)

SEARCH_FIRST_REJECTIONS_TOTAL = Counter(
    "assistant_search_first_rejections_total",
    "Memory writes rejected because no search happened earlier in the mission",
)

COMPACTIONS_TOTAL = Counter(
    "assistant_compactions_total",
    "Conversation compaction attempts grouped by outcome",
    labelnames=("outcome",),
)


def record_agent_result(*, status: str) -> None:
    AGENT_RUNS_TOTAL.labels(status=status).inc()


def observe_agent_duration(*, seconds: float) -> None:
    AGENT_DURATION_SECONDS.observe(max(0.0, seconds))


def observe_wave_count(*, waves: int) -> None:
    SCHEDULER_WAVES.observe(waves)


def increment_fuse_blown(*, skill: str) -> None:
    SKILL_FUSE_BLOWN_TOTAL.labels(skill=skill).inc()


def increment_limit_rejection(*, level: int, scope: str) -> None:
    LIMIT_REJECTIONS_TOTAL.labels(level=str(level), scope=scope).inc()


def record_skill_invocation(*, skill: str, outcome: str) -> None:
    SKILL_INVOCATIONS_TOTAL.labels(skill=skill, outcome=outcome).inc()


def increment_search_first_rejection() -> None:
    SEARCH_FIRST_REJECTIONS_TOTAL.inc()


def record_compaction(*, outcome: str) -> None:
    COMPACTIONS_TOTAL.labels(outcome=outcome).inc()


def render_latest() -> tuple[bytes, str]:
    """Exposition payload and content type for a metrics endpoint."""
    return generate_latest(), CONTENT_TYPE_LATEST
