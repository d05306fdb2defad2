"""
Chat Completion Providers
--------------------------
Two provider implementations with an identical interface:

  OpenAICompletion    -- OpenAI chat models (gpt-4o-mini, gpt-4o)
  AnthropicCompletion -- Anthropic (claude-haiku-4-5, claude-sonnet-4-6)

Both take a list of ConversationTurn messages and expose

  complete(messages, max_tokens)            -> Completion(text, usage)
  complete_streaming(messages, max_tokens)  -> async stream of CompletionDelta

A CompletionDelta carries either a token fragment or the final usage.  The
streaming generators own the upstream HTTP stream: closing the generator
(e.g. on cancellation) closes the connection.

Provider errors are not caught here; they reach the orchestrator's caller
unchanged.  Transient retries are left to the SDK clients (`max_retries`).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Sequence

from langsmith import traceable
from loguru import logger

from vectorsearch.schemas import ConversationTurn, TokenUsage


@dataclass
class Completion:
    text: str
    usage: TokenUsage


@dataclass
class CompletionDelta:
    """One item of a completion stream: a token fragment or the final usage."""

    text: Optional[str] = None
    usage: Optional[TokenUsage] = None


class CompletionProvider(ABC):
    model: str

    @abstractmethod
    async def complete(self, messages: Sequence[ConversationTurn], max_tokens: int) -> Completion:
        ...

    @abstractmethod
    def complete_streaming(
        self, messages: Sequence[ConversationTurn], max_tokens: int
    ) -> AsyncIterator[CompletionDelta]:
        ...


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

class OpenAICompletion(CompletionProvider):
    """Chat completions using OpenAI models."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        temperature: float = 0.1,
        max_retries: int = 3,
        client: Any = None,
    ) -> None:
        from openai import AsyncOpenAI  # lazy import keeps import graph clean
        self.model = model
        self.temperature = temperature
        self._client = client or AsyncOpenAI(max_retries=max_retries)

    @staticmethod
    def _to_messages(messages: Sequence[ConversationTurn]) -> list[dict]:
        return [{"role": m.role, "content": m.content} for m in messages]

    @traceable(name="complete_openai", run_type="llm")
    async def complete(self, messages: Sequence[ConversationTurn], max_tokens: int) -> Completion:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=self._to_messages(messages),
            max_tokens=max_tokens,
            temperature=self.temperature,
        )

        text = response.choices[0].message.content or ""
        usage = TokenUsage(
            input_token_count=response.usage.prompt_tokens,
            output_token_count=response.usage.completion_tokens,
        )
        logger.info(
            f"[OpenAICompletion] {self.model} | prompt={usage.input_token_count} "
            f"completion={usage.output_token_count}"
        )
        return Completion(text=text, usage=usage)

    async def complete_streaming(
        self, messages: Sequence[ConversationTurn], max_tokens: int
    ) -> AsyncIterator[CompletionDelta]:
        stream = await self._client.chat.completions.create(
            model=self.model,
            messages=self._to_messages(messages),
            max_tokens=max_tokens,
            temperature=self.temperature,
            stream=True,
            stream_options={"include_usage": True},
        )
        async with stream:
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield CompletionDelta(text=chunk.choices[0].delta.content)
                if chunk.usage is not None:
                    usage = TokenUsage(
                        input_token_count=chunk.usage.prompt_tokens,
                        output_token_count=chunk.usage.completion_tokens,
                    )
                    logger.info(
                        f"[OpenAICompletion] {self.model} stream done | "
                        f"prompt={usage.input_token_count} completion={usage.output_token_count}"
                    )
                    yield CompletionDelta(usage=usage)


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

class AnthropicCompletion(CompletionProvider):
    """
    Chat completions using Anthropic Claude models.

    The Anthropic SDK passes the system prompt as a separate `system`
    parameter (not inside the messages list) -- handled here transparently.
    """

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        temperature: float = 0.1,
        max_retries: int = 3,
        client: Any = None,
    ) -> None:
        from anthropic import AsyncAnthropic  # lazy import
        self.model = model
        self.temperature = temperature
        self._client = client or AsyncAnthropic(max_retries=max_retries)

    def _request(self, messages: Sequence[ConversationTurn], max_tokens: int) -> dict:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        turns = [{"role": m.role, "content": m.content} for m in messages if m.role != "system"]
        # A trimmed history may start with an assistant turn; Claude requires a user turn first
        while turns and turns[0]["role"] != "user":
            turns.pop(0)
        request: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": self.temperature,
            "messages": turns,
        }
        if system:
            request["system"] = system
        return request

    @traceable(name="complete_anthropic", run_type="llm")
    async def complete(self, messages: Sequence[ConversationTurn], max_tokens: int) -> Completion:
        response = await self._client.messages.create(**self._request(messages, max_tokens))

        text = "".join(block.text for block in response.content if block.type == "text")
        usage = TokenUsage(
            input_token_count=response.usage.input_tokens,
            output_token_count=response.usage.output_tokens,
        )
        logger.info(
            f"[AnthropicCompletion] {self.model} | input={usage.input_token_count} "
            f"output={usage.output_token_count}"
        )
        return Completion(text=text, usage=usage)

    async def complete_streaming(
        self, messages: Sequence[ConversationTurn], max_tokens: int
    ) -> AsyncIterator[CompletionDelta]:
        async with self._client.messages.stream(**self._request(messages, max_tokens)) as stream:
            async for text in stream.text_stream:
                yield CompletionDelta(text=text)
            final = await stream.get_final_message()

        usage = TokenUsage(
            input_token_count=final.usage.input_tokens,
            output_token_count=final.usage.output_tokens,
        )
        logger.info(
            f"[AnthropicCompletion] {self.model} stream done | "
            f"input={usage.input_token_count} output={usage.output_token_count}"
        )
        yield CompletionDelta(usage=usage)


def create_completion_provider(provider: str, model: str, temperature: float) -> CompletionProvider:
    """Instantiate the completion provider named in the config."""
    if provider == "anthropic":
        return AnthropicCompletion(model=model, temperature=temperature)
    return OpenAICompletion(model=model, temperature=temperature)
