"""
Conversation history and question reformulation.

Each conversation id maps to one ConversationHistory stored as JSON in the
injected CacheStore.  Every mutation is a read-modify-write that trims the
history to the last `message_limit` turns and restarts the sliding
expiration.  Concurrent requests for the same conversation are not
serialised: the last writer wins, which is fine for a single user chatting.
"""
from __future__ import annotations

import uuid
from typing import Union

from loguru import logger

from vectorsearch.conversation.cache import CacheStore
from vectorsearch.generation.generator import CompletionProvider
from vectorsearch.generation.prompts import REFORMULATION_PROMPT
from vectorsearch.schemas import ConversationHistory, TokenUsage
from vectorsearch.settings import AppSettings

ConversationId = Union[uuid.UUID, str]


class ChatService:
    def __init__(
        self,
        cache: CacheStore,
        completion: CompletionProvider,
        settings: AppSettings,
    ) -> None:
        self.cache = cache
        self.completion = completion
        self.settings = settings

    async def get_or_create(self, conversation_id: ConversationId) -> ConversationHistory:
        """Load the history of a conversation, creating an empty one on first use."""
        history, found = await self._load(conversation_id)
        if not found:
            await self._save(conversation_id, history)
        return history

    async def append(
        self,
        conversation_id: ConversationId,
        user_text: str,
        assistant_text: str,
    ) -> None:
        """Record a question/answer pair."""
        history, _ = await self._load(conversation_id)
        history.add_user_message(user_text)
        history.add_assistant_message(assistant_text)
        await self._save(conversation_id, history)

    async def reformulate(
        self,
        conversation_id: ConversationId,
        question: str,
    ) -> tuple[str, TokenUsage]:
        """
        Rewrite a follow-up question into a self-contained search query.

        The reformulation request and its result are kept in the history so
        later questions can be reformulated against them too.

        Returns:
            (reformulated_question, token_usage)
        """
        history, _ = await self._load(conversation_id)
        history.add_user_message(REFORMULATION_PROMPT.format(question=question))

        completion = await self.completion.complete(
            history.turns, max_tokens=self.settings.max_output_tokens
        )
        reformulated = completion.text.strip() or question
        history.add_assistant_message(reformulated)
        await self._save(conversation_id, history)

        logger.info(f"[ChatService] Reformulated {question[:60]!r} -> {reformulated[:60]!r}")
        return reformulated, completion.usage

    async def _load(self, conversation_id: ConversationId) -> tuple[ConversationHistory, bool]:
        raw = await self.cache.get(str(conversation_id))
        if raw is None:
            return ConversationHistory(), False
        return ConversationHistory.model_validate_json(raw), True

    async def _save(self, conversation_id: ConversationId, history: ConversationHistory) -> None:
        history.trim(self.settings.message_limit)
        await self.cache.set(
            str(conversation_id),
            history.model_dump_json(),
            self.settings.message_expiration_delta,
        )
