from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from ..core.logging import get_logger

logger = get_logger(name=__name__)


@dataclass(frozen=True, slots=True)
class TokenUsageUpdated:
    conversation_id: str
    user_id: str
    prompt_tokens: int
    max_context_tokens: int

    @property
    def utilization(self) -> float:
        if self.max_context_tokens <= 0:
            return 0.0
        return self.prompt_tokens / self.max_context_tokens


@dataclass(frozen=True, slots=True)
class TurnCompleted:
    conversation_id: str
    user_id: str
    user_message: str
    assistant_response: str


E = TypeVar("E")
Subscriber = Callable[[Any], Awaitable[None]]


class EventBus:
    """In-process publish/subscribe keyed by event type."""

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Subscriber]] = {}

    def subscribe(self, event_type: type[E], subscriber: Callable[[E], Awaitable[None]]) -> None:
        handlers = self._subscribers.setdefault(event_type, [])
        if subscriber not in handlers:
            handlers.append(subscriber)

    def unsubscribe(self, event_type: type, subscriber: Subscriber) -> None:
        handlers = self._subscribers.get(event_type)
        if handlers and subscriber in handlers:
            handlers.remove(subscriber)

    def subscriber_count(self, event_type: type) -> int:
        return len(self._subscribers.get(event_type, ()))

    async def publish(self, event: object) -> None:
        handlers = list(self._subscribers.get(type(event), ()))
        if not handlers:
            logger.debug("event_without_subscribers", event_type=type(event).__name__)
            return
        results = await asyncio.gather(
            *(self._safe_invoke(handler, event) for handler in handlers),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning("event_delivery_error", event_type=type(event).__name__, error=str(result))

    async def _safe_invoke(self, subscriber: Subscriber, event: object) -> None:
        try:
            await subscriber(event)
        except Exception as exc:
            logger.warning(
                "event_subscriber_failed",
                subscriber=getattr(subscriber, "__qualname__", repr(subscriber)),
                event_type=type(event).__name__,
                error=str(exc),
            )


__all__ = ["EventBus", "TokenUsageUpdated", "TurnCompleted"]
