"""
Vector Search Service
----------------------
Orchestrates document import and the question lifecycle:

    import:   decode -> chunk -> embed (batches) -> replace in store

    question: conversation history
                  |
                  v
              reformulate (optional, one completion call)
                  |
                  v
              embed question -> similarity search (+ optional BM25 union)
                  |
                  v
              ContextAssembler (token budget, rank order)
                  |
                  v
              completion (sync) / streaming completion
                  |
                  v
              citation extraction -> history update

Streaming yields QuestionResponse messages in the order START, APPEND...,
END.  The history is written only once the whole answer is known, so a
stream that is closed early leaves the conversation untouched.
"""
from __future__ import annotations

import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Sequence

import numpy as np
from langsmith import traceable
from loguru import logger

from vectorsearch.chunking.schemas import DocumentChunk
from vectorsearch.conversation.cache import CacheStore, MemoryCacheStore, RedisCacheStore
from vectorsearch.conversation.chat_service import ChatService
from vectorsearch.decoding.decoders import DocumentDecoder, Source
from vectorsearch.embedding.embedder import Embedder
from vectorsearch.embedding.vector_store import VectorStore
from vectorsearch.generation.citations import CitationStreamFilter, extract_citations
from vectorsearch.generation.context import AssembledPrompt, ContextAssembler
from vectorsearch.generation.generator import CompletionProvider, create_completion_provider
from vectorsearch.generation.prompts import SYSTEM_PROMPT
from vectorsearch.schemas import (
    Document,
    ImportResult,
    Question,
    QuestionResponse,
    StreamState,
    TokenUsage,
    TokenUsageResponse,
)
from vectorsearch.settings import Settings
from vectorsearch.tokenizer import TokenizerService


@dataclass
class _QuestionContext:
    """Everything known about a question before the answer is generated."""

    question: Question
    reformulated_question: str
    reformulation_usage: TokenUsage
    embedding_token_count: int
    prompt: AssembledPrompt


class VectorSearchService:
    """
    Entry point for importing documents and asking questions.

    Usage:
        service = VectorSearchService.from_settings(load_settings())
        result = await service.import_document(open("italy.pdf", "rb"), "italy.pdf", "application/pdf")
        response = await service.ask_question(Question(conversation_id=cid, text="Capital of Italy?"))
    """

    def __init__(
        self,
        settings: Settings,
        tokenizer: TokenizerService,
        embedder: Embedder,
        completion: CompletionProvider,
        store: VectorStore,
        chat_service: ChatService,
        decoder: DocumentDecoder,
    ) -> None:
        self.settings = settings
        self.tokenizer = tokenizer
        self.embedder = embedder
        self.completion = completion
        self.store = store
        self.chat_service = chat_service
        self.decoder = decoder
        self.assembler = ContextAssembler(
            tokenizer.count_chat_completion_tokens,
            max_input_tokens=settings.app.max_input_tokens,
            max_output_tokens=settings.app.max_output_tokens,
        )

    @classmethod
    def from_settings(cls, settings: Settings, cache: Optional[CacheStore] = None) -> "VectorSearchService":
        """Build the service and its providers from configuration."""
        app_cfg, ai_cfg = settings.app, settings.ai
        tokenizer = TokenizerService(ai_cfg.chat_model, ai_cfg.embedding_model)

        if cache is None:
            if settings.cache.backend == "redis":
                cache = RedisCacheStore(
                    app_cfg.message_expiration_delta,
                    url=settings.cache.redis_url,
                    key_prefix=settings.cache.key_prefix,
                )
            else:
                cache = MemoryCacheStore()

        completion = create_completion_provider(ai_cfg.provider, ai_cfg.chat_model, ai_cfg.temperature)
        index_dir = settings.storage.index_dir
        store = (
            VectorStore.load(Path(index_dir), dimensions=ai_cfg.embedding_dimensions)
            if index_dir
            else VectorStore(dimensions=ai_cfg.embedding_dimensions)
        )

        logger.info(
            f"[VectorSearchService] Ready | provider={ai_cfg.provider} model={ai_cfg.chat_model} | "
            f"embeddings={ai_cfg.embedding_model} | cache={settings.cache.backend} | "
            f"{store.vector_count} vectors"
        )
        return cls(
            settings=settings,
            tokenizer=tokenizer,
            embedder=Embedder(
                model=ai_cfg.embedding_model,
                dimensions=ai_cfg.embedding_dimensions,
                batch_size=app_cfg.embedding_batch_size,
            ),
            completion=completion,
            store=store,
            chat_service=ChatService(cache, completion, app_cfg),
            decoder=DocumentDecoder.from_settings(app_cfg, tokenizer.count_embedding_tokens),
        )

    # --- Documents ------------------------------------------------------------

    async def import_document(
        self,
        source: Source,
        name: str,
        content_type: str,
        document_id: Optional[uuid.UUID] = None,
    ) -> ImportResult:
        """
        Decode, chunk, embed and store a document.

        Passing the id of an existing document replaces it: the old chunks
        are dropped in the same swap that adds the new ones.
        """
        document_id = document_id or uuid.uuid4()
        t0 = time.perf_counter()

        decoded = self.decoder.decode(source, content_type)
        texts = [chunk.content for chunk in decoded]
        embeddings = await self.embedder.embed_texts(texts)
        token_count = sum(self.tokenizer.count_embedding_tokens(text) for text in texts)

        chunks = [
            DocumentChunk(
                document_id=document_id,
                index=position,
                file_name=name,
                page_number=chunk.page_number,
                index_on_page=chunk.index_on_page,
                content=chunk.content,
                embedding=vector.tolist(),
            )
            for position, (chunk, vector) in enumerate(zip(decoded, embeddings))
        ]
        await self.store.replace_document(Document(id=document_id, name=name), chunks)

        logger.info(
            f"[VectorSearchService] Imported {name!r} | {len(chunks)} chunks | "
            f"{token_count} embedding tokens | {time.perf_counter() - t0:.2f}s"
        )
        return ImportResult(document_id=document_id, embedding_token_count=token_count)

    async def get_documents(self) -> list[Document]:
        return await self.store.get_documents()

    async def get_document_chunks(self, document_id: uuid.UUID) -> list[DocumentChunk]:
        return await self.store.get_chunks(document_id)

    async def get_document_chunk_embedding(
        self, document_id: uuid.UUID, chunk_id: uuid.UUID
    ) -> Optional[list[float]]:
        chunk = await self.store.get_chunk(document_id, chunk_id)
        return chunk.embedding if chunk is not None else None

    async def delete_document(self, document_id: uuid.UUID) -> bool:
        return await self.store.delete_documents([document_id]) > 0

    async def delete_documents(self, document_ids: Sequence[uuid.UUID]) -> int:
        return await self.store.delete_documents(document_ids)

    # --- Questions ------------------------------------------------------------

    async def _retrieve(self, query: str, embedding: np.ndarray) -> list[DocumentChunk]:
        k = self.settings.app.max_relevant_chunks
        chunks = await self.store.similarity_search(embedding, k)
        if not self.settings.app.use_full_text_search:
            return chunks

        seen = {chunk.id for chunk in chunks}
        for chunk in await self.store.full_text_search(query, k):
            if chunk.id not in seen:
                seen.add(chunk.id)
                chunks.append(chunk)
        return chunks

    async def _create_context(self, question: Question, reformulate: bool) -> _QuestionContext:
        if reformulate:
            reformulated, reformulation_usage = await self.chat_service.reformulate(
                question.conversation_id, question.text
            )
        else:
            reformulated, reformulation_usage = question.text, TokenUsage()

        embedding = await self.embedder.embed_query(reformulated)
        embedding_tokens = self.tokenizer.count_embedding_tokens(reformulated)
        chunks = await self._retrieve(reformulated, embedding)
        prompt = self.assembler.assemble(SYSTEM_PROMPT, reformulated, chunks)

        logger.info(
            f"[VectorSearchService] Question {question.text[:80]!r} | "
            f"{len(chunks)} retrieved, {len(prompt.chunks)} in context"
        )
        return _QuestionContext(
            question=question,
            reformulated_question=reformulated,
            reformulation_usage=reformulation_usage,
            embedding_token_count=embedding_tokens,
            prompt=prompt,
        )

    @traceable(name="ask_question", run_type="chain")
    async def ask_question(self, question: Question, reformulate: bool = True) -> QuestionResponse:
        """Answer a question in one round trip."""
        context = await self._create_context(question, reformulate)

        completion = await self.completion.complete(
            context.prompt.messages, max_tokens=self.settings.app.max_output_tokens
        )
        answer, citations = extract_citations(completion.text)

        await self.chat_service.append(question.conversation_id, question.text, answer)

        return QuestionResponse(
            original_question=question.text,
            reformulated_question=context.reformulated_question,
            answer=answer,
            stream_state=None,
            token_usage=TokenUsageResponse(
                reformulation=context.reformulation_usage,
                embedding_token_count=context.embedding_token_count,
                question=completion.usage,
            ),
            citations=citations,
        )

    async def ask_streaming(
        self, question: Question, reformulate: bool = True
    ) -> AsyncIterator[QuestionResponse]:
        """
        Answer a question as a stream of messages.

        The citation block is never sent as APPEND text; its citations are
        parsed from the full answer and sent with the END message.
        """
        context = await self._create_context(question, reformulate)

        yield QuestionResponse(
            original_question=question.text,
            reformulated_question=context.reformulated_question,
            stream_state=StreamState.START,
            token_usage=TokenUsageResponse(
                reformulation=context.reformulation_usage,
                embedding_token_count=context.embedding_token_count,
            ),
        )

        stream_filter = CitationStreamFilter()
        usage: Optional[TokenUsage] = None
        deltas = self.completion.complete_streaming(
            context.prompt.messages, max_tokens=self.settings.app.max_output_tokens
        )
        async with aclosing(deltas):
            async for delta in deltas:
                if delta.usage is not None:
                    usage = delta.usage
                if not delta.text:
                    continue
                visible = stream_filter.feed(delta.text)
                if visible:
                    yield QuestionResponse(answer=visible, stream_state=StreamState.APPEND)

        answer, citations = stream_filter.finish()
        await self.chat_service.append(question.conversation_id, question.text, answer)

        yield QuestionResponse(
            stream_state=StreamState.END,
            token_usage=TokenUsageResponse(question=usage),
            citations=citations,
        )
