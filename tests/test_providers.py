"""Tests for the tokenizer, embedding and completion adapters with mocked SDK clients."""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest
import tiktoken

from vectorsearch.embedding.embedder import Embedder, normalize
from vectorsearch.generation.generator import AnthropicCompletion, OpenAICompletion
from vectorsearch.schemas import ConversationTurn
from vectorsearch.tokenizer import FALLBACK_ENCODING, TokenizerService

MESSAGES = [
    ConversationTurn(role="system", content="Be brief."),
    ConversationTurn(role="assistant", content="Orphan reply."),
    ConversationTurn(role="user", content="Capital of Italy?"),
]


class _WordEncoding:
    def __init__(self, name: str) -> None:
        self.name = name

    def encode(self, text, disallowed_special=()):
        return text.split()


class _AsyncIterable:
    def __init__(self, items) -> None:
        self._items = list(items)

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for item in self._items:
            yield item

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class TestTokenizer:
    def test_unknown_model_falls_back(self, monkeypatch):
        def encoding_for_model(model):
            raise KeyError(model)

        monkeypatch.setattr(tiktoken, "encoding_for_model", encoding_for_model)
        monkeypatch.setattr(tiktoken, "get_encoding", _WordEncoding)

        tokenizer = TokenizerService("brand-new-chat", "brand-new-embedding")

        assert tokenizer.count_chat_completion_tokens("one two three") == 3
        assert tokenizer.count_embedding_tokens("one two") == 2
        assert tokenizer._chat_encoding.name == FALLBACK_ENCODING


class TestEmbedder:
    def _client(self, dimensions: int = 3):
        async def create(model, input, **kwargs):
            return SimpleNamespace(
                data=[
                    SimpleNamespace(index=i, embedding=[float(i + 1)] + [0.0] * (dimensions - 1))
                    for i in reversed(range(len(input)))
                ],
                usage=SimpleNamespace(total_tokens=len(input) * 2),
            )

        client = MagicMock()
        client.embeddings.create = AsyncMock(side_effect=create)
        return client

    @pytest.mark.asyncio
    async def test_batches_and_normalises(self):
        client = self._client()
        embedder = Embedder(model="text-embedding-3-small", dimensions=3, batch_size=2, client=client)

        matrix = await embedder.embed_texts(["a", "b", "c", ""])

        assert matrix.shape == (4, 3)
        assert np.allclose(np.linalg.norm(matrix, axis=1), 1.0)
        assert client.embeddings.create.await_count == 2
        assert embedder.total_tokens_used == 8
        first_call = client.embeddings.create.await_args_list[0].kwargs
        assert first_call["dimensions"] == 3
        assert client.embeddings.create.await_args_list[1].kwargs["input"] == ["c", " "]

    @pytest.mark.asyncio
    async def test_dimensions_only_sent_to_v3_models(self):
        client = self._client()
        embedder = Embedder(model="text-embedding-ada-002", dimensions=3, client=client)

        vector = await embedder.embed_query("hello")

        assert vector.shape == (3,)
        assert "dimensions" not in client.embeddings.create.await_args.kwargs

    @pytest.mark.asyncio
    async def test_empty_input(self):
        client = self._client()
        embedder = Embedder(dimensions=3, client=client)
        assert (await embedder.embed_texts([])).shape == (0, 3)
        client.embeddings.create.assert_not_awaited()

    def test_normalize_keeps_zero_rows(self):
        result = normalize(np.array([[3.0, 4.0], [0.0, 0.0]]))
        assert np.allclose(result, [[0.6, 0.8], [0.0, 0.0]])


class TestOpenAICompletion:
    @pytest.mark.asyncio
    async def test_complete(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(
                choices=[SimpleNamespace(message=SimpleNamespace(content="Rome."))],
                usage=SimpleNamespace(prompt_tokens=12, completion_tokens=2),
            )
        )
        provider = OpenAICompletion(model="gpt-4o-mini", client=client)

        completion = await provider.complete(MESSAGES, max_tokens=50)

        assert completion.text == "Rome."
        assert completion.usage.total_token_count == 14
        sent = client.chat.completions.create.await_args.kwargs
        assert sent["max_tokens"] == 50
        assert [m["role"] for m in sent["messages"]] == ["system", "assistant", "user"]

    @pytest.mark.asyncio
    async def test_streaming_yields_tokens_then_usage(self):
        def chunk(content=None, usage=None):
            choices = [SimpleNamespace(delta=SimpleNamespace(content=content))] if content else []
            return SimpleNamespace(choices=choices, usage=usage)

        client = MagicMock()
        client.chat.completions.create = AsyncMock(
            return_value=_AsyncIterable(
                [
                    chunk("Ro"),
                    chunk("me."),
                    chunk(usage=SimpleNamespace(prompt_tokens=9, completion_tokens=2)),
                ]
            )
        )
        provider = OpenAICompletion(client=client)

        deltas = [d async for d in provider.complete_streaming(MESSAGES, max_tokens=20)]

        assert [d.text for d in deltas if d.text] == ["Ro", "me."]
        assert deltas[-1].usage.output_token_count == 2
        assert client.chat.completions.create.await_args.kwargs["stream"] is True


class TestAnthropicCompletion:
    def test_request_moves_system_prompt(self):
        provider = AnthropicCompletion(model="claude-haiku-4-5", client=MagicMock())

        request = provider._request(MESSAGES, max_tokens=30)

        assert request["system"] == "Be brief."
        assert request["messages"] == [{"role": "user", "content": "Capital of Italy?"}]
        assert request["max_tokens"] == 30

    @pytest.mark.asyncio
    async def test_complete(self):
        client = MagicMock()
        client.messages.create = AsyncMock(
            return_value=SimpleNamespace(
                content=[SimpleNamespace(type="text", text="Rome.")],
                usage=SimpleNamespace(input_tokens=11, output_tokens=3),
            )
        )
        provider = AnthropicCompletion(client=client)

        completion = await provider.complete(MESSAGES, max_tokens=30)

        assert completion.text == "Rome."
        assert completion.usage.input_token_count == 11

    @pytest.mark.asyncio
    async def test_streaming(self):
        stream = _AsyncIterable([])
        stream.text_stream = _AsyncIterable(["Ro", "me."])
        stream.get_final_message = AsyncMock(
            return_value=SimpleNamespace(usage=SimpleNamespace(input_tokens=11, output_tokens=2))
        )
        client = MagicMock()
        client.messages.stream = MagicMock(return_value=stream)
        provider = AnthropicCompletion(client=client)

        deltas = [d async for d in provider.complete_streaming(MESSAGES, max_tokens=30)]

        assert [d.text for d in deltas[:-1]] == ["Ro", "me."]
        assert deltas[-1].usage.output_token_count == 2
