"""Sliding-window call counter.

The limiter is a value: every operation returns a new :class:`RateLimiterState`
and leaves the input untouched, so callers thread the returned state forward.
Timestamps are monotonic milliseconds; a call recorded at ``t`` stops counting
once ``now - window_ms >= t``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable

Clock = Callable[[], int]


def monotonic_ms() -> int:
    return time.monotonic_ns() // 1_000_000


@dataclass(frozen=True, slots=True)
class RateLimiterState:
    max_calls: int
    window_ms: int
    timestamps: tuple[int, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class RateLimited:
    current_count: int
    requested: int
    max_calls: int
    window_ms: int

    def as_details(self) -> dict[str, Any]:
        return {
            "current_count": self.current_count,
            "requested": self.requested,
            "max_calls": self.max_calls,
            "window_ms": self.window_ms,
        }


def new(max_calls: int, window_ms: int) -> RateLimiterState:
    if max_calls < 0:
        raise ValueError("max_calls must be non-negative")
    if window_ms <= 0:
        raise ValueError("window_ms must be positive")
    return RateLimiterState(max_calls=max_calls, window_ms=window_ms)


def _live(state: RateLimiterState, now: int) -> tuple[int, ...]:
    boundary = now - state.window_ms
    return tuple(ts for ts in state.timestamps if ts > boundary)


def check(
    state: RateLimiterState,
    count: int = 1,
    *,
    clock: Clock = monotonic_ms,
) -> RateLimiterState | RateLimited:
    """Admit ``count`` calls at the current instant or report the window as full.

    Returns the updated state on admission. On rejection a :class:`RateLimited`
    value is returned and the caller keeps its previous state.
    """
    if count < 1:
        raise ValueError("count must be at least 1")
    now = clock()
    live = _live(state, now)
    if len(live) + count > state.max_calls:
        return RateLimited(
            current_count=len(live),
            requested=count,
            max_calls=state.max_calls,
            window_ms=state.window_ms,
        )
    return replace(state, timestamps=live + (now,) * count)


def current_count(state: RateLimiterState, *, clock: Clock = monotonic_ms) -> int:
    return len(_live(state, clock()))


def prune(state: RateLimiterState, *, clock: Clock = monotonic_ms) -> RateLimiterState:
    return replace(state, timestamps=_live(state, clock()))


def reset(state: RateLimiterState) -> RateLimiterState:
    return replace(state, timestamps=())


__all__ = [
    "Clock",
    "RateLimited",
    "RateLimiterState",
    "check",
    "current_count",
    "monotonic_ms",
    "new",
    "prune",
    "reset",
]
