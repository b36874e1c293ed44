"""Incremental conversation summary fold.

``summary(n) = LLM(summary(n-1), messages after compacted_through)``. The
conversation records the position of the last message folded into its summary,
so every message is summarized exactly once.
"""

from __future__ import annotations

from typing import Any, Protocol, Sequence

from pydantic import BaseModel, Field

from ..core import metrics
from ..core.config import MemorySettings
from ..core.logging import get_logger
from ..services.llm import LLMClient, LLMError, Message, complete_with_retry
from ..skills.exceptions import SkillFailedError
from ..skills.models import SkillContext, SkillHandler, SkillResult

logger = get_logger(name=__name__)

MAX_MESSAGE_CHARS = 2000


class ConversationMessage(BaseModel):
    position: int = Field(..., ge=1)
    role: str
    content: str | None = None


class Conversation(BaseModel):
    id: str
    user_id: str
    summary: str | None = None
    summary_version: int = Field(0, ge=0)
    compacted_through: int = Field(0, ge=0, description="Position of the last message folded into the summary.")


class ConversationStore(Protocol):
    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        ...

    async def list_messages(self, conversation_id: str, *, after: int, limit: int) -> Sequence[ConversationMessage]:
        """Messages with ``position > after`` in ascending order, at most ``limit``."""
        ...

    async def save_summary(
        self,
        conversation_id: str,
        *,
        summary: str,
        summary_version: int,
        compacted_through: int,
    ) -> Conversation:
        ...


class CompactionError(RuntimeError):
    """Base class for compaction failures."""


class ConversationNotFoundError(CompactionError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation '{conversation_id}' not found")
        self.conversation_id = conversation_id


class NoNewMessagesError(CompactionError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation '{conversation_id}' has no messages past its last compaction")
        self.conversation_id = conversation_id


class Compactor:
    def __init__(
        self,
        store: ConversationStore,
        llm: LLMClient,
        *,
        settings: MemorySettings | None = None,
        model: str | None = None,
    ) -> None:
        self._store = store
        self._llm = llm
        self._settings = settings or MemorySettings()
        self._model = model

    async def compact(self, conversation_id: str) -> Conversation:
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            metrics.record_compaction(outcome="not_found")
            raise ConversationNotFoundError(conversation_id)

        messages = list(
            await self._store.list_messages(
                conversation_id,
                after=conversation.compacted_through,
                limit=self._settings.compaction_message_limit,
            )
        )
        if not messages:
            metrics.record_compaction(outcome="no_new_messages")
            raise NoNewMessagesError(conversation_id)

        try:
            response = await complete_with_retry(self._llm, self._prompt(conversation, messages), model=self._model)
        except LLMError:
            metrics.record_compaction(outcome="error")
            logger.warning("compaction_llm_failed", conversation_id=conversation_id)
            raise
        summary = (response.content or "").strip()
        if not summary:
            metrics.record_compaction(outcome="error")
            raise CompactionError(f"Compaction of '{conversation_id}' produced an empty summary")

        updated = await self._store.save_summary(
            conversation_id,
            summary=summary,
            summary_version=conversation.summary_version + 1,
            compacted_through=messages[-1].position,
        )
        metrics.record_compaction(outcome="ok")
        logger.info(
            "conversation_compacted",
            conversation_id=conversation_id,
            messages=len(messages),
            compacted_through=updated.compacted_through,
            summary_version=updated.summary_version,
            prompt_tokens=response.usage.prompt_tokens,
        )
        return updated

    def _prompt(self, conversation: Conversation, messages: Sequence[ConversationMessage]) -> list[Message]:
        system = (
            "You are a conversation compactor. Summarize the conversation history into a concise context block "
            "preserving key facts, decisions, tasks, preferences, names, dates and identifiers. Discard redundant "
            f"exchanges and verbose tool outputs. Target approximately {self._settings.compaction_token_budget} tokens."
        )
        if conversation.summary:
            prior = f"## Prior Summary (version {conversation.summary_version})\n\n{conversation.summary}"
        else:
            prior = "No prior summary exists. This is the first compaction."
        transcript = "\n".join(_format_message(message) for message in messages)
        user = (
            f"{prior}\n\n## New Messages to Incorporate\n\n{transcript}\n\n"
            "Please produce an updated summary that incorporates the new messages above with the prior summary "
            "(if any). Preserve all key information."
        )
        return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def _format_message(message: ConversationMessage) -> str:
    content = message.content or "[no content]"
    if len(content) > MAX_MESSAGE_CHARS:
        content = content[:MAX_MESSAGE_CHARS] + "... [truncated]"
    return f"[{message.role.upper()}]: {content}"


def compaction_skill(compactor: Compactor) -> SkillHandler:
    """Skill handler for ``memory.compact_conversation``."""

    async def handler(args: dict[str, Any], context: SkillContext) -> SkillResult:
        conversation_id = args.get("conversation_id") or context.conversation_id
        if not conversation_id:
            raise SkillFailedError("conversation_id is required")
        try:
            conversation = await compactor.compact(conversation_id)
        except NoNewMessagesError:
            return SkillResult.ok("Nothing to compact: no new messages since the last summary.", skipped=True)
        except CompactionError as exc:
            raise SkillFailedError(str(exc)) from exc
        return SkillResult.ok(
            f"Compacted conversation {conversation.id} through message {conversation.compacted_through} "
            f"(summary version {conversation.summary_version}).",
            summary_version=conversation.summary_version,
            compacted_through=conversation.compacted_through,
        )

    return handler


__all__ = [
    "CompactionError",
    "Compactor",
    "Conversation",
    "ConversationMessage",
    "ConversationNotFoundError",
    "ConversationStore",
    "NoNewMessagesError",
    "compaction_skill",
]
