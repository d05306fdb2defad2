"""
Context Assembler
------------------
Fits the retrieved chunks into the model's input window.

    available = max_input_tokens
                - tokens(system prompt)
                - tokens(question prompt)
                - max_output_tokens

Chunks are taken strictly in rank order.  Each one is rendered as a
<document ...> block whose attributes (document id, chunk id, file name,
page number, index on page) are exactly what the model must copy into its
citations.  The first block that does not fit ends the context -- smaller
chunks further down the ranking are never tried, so the same ranking always
yields the same prompt.  When not even the top chunk fits, the prompt is
sent without context and the model is expected to say it does not know.
"""
from __future__ import annotations

import html
from dataclasses import dataclass, field
from typing import Sequence

from loguru import logger

from vectorsearch.chunking.schemas import DocumentChunk
from vectorsearch.generation.prompts import CHUNK_TEMPLATE, QUESTION_PROMPT
from vectorsearch.schemas import ConversationTurn
from vectorsearch.tokenizer import TokenCounter


def _attribute(value: object) -> str:
    return html.escape(str(value), quote=True)


def render_chunk(chunk: DocumentChunk) -> str:
    """Format a chunk as the <document> block the citation protocol refers to."""
    return CHUNK_TEMPLATE.format(
        document_id=_attribute(chunk.document_id),
        chunk_id=_attribute(chunk.id),
        file_name=_attribute(chunk.file_name),
        page_number=chunk.page_number if chunk.page_number is not None else "",
        index_on_page=chunk.index_on_page,
        content=chunk.content,
    )


@dataclass
class AssembledPrompt:
    system_prompt: str
    user_prompt: str
    chunks: list[DocumentChunk] = field(default_factory=list)
    token_count: int = 0

    @property
    def messages(self) -> list[ConversationTurn]:
        return [
            ConversationTurn(role="system", content=self.system_prompt),
            ConversationTurn(role="user", content=self.user_prompt),
        ]


class ContextAssembler:
    """
    Greedy, rank-preserving token budgeting.

    Usage:
        assembler = ContextAssembler(tokenizer.count_chat_completion_tokens, 16385, 800)
        prompt = assembler.assemble(SYSTEM_PROMPT, question, ranked_chunks)
    """

    def __init__(
        self,
        token_counter: TokenCounter,
        max_input_tokens: int,
        max_output_tokens: int,
    ) -> None:
        self.token_counter = token_counter
        self.max_input_tokens = max_input_tokens
        self.max_output_tokens = max_output_tokens

    def assemble(
        self,
        system_prompt: str,
        question: str,
        ranked_chunks: Sequence[DocumentChunk],
    ) -> AssembledPrompt:
        question_prompt = QUESTION_PROMPT.format(question=question)
        base_tokens = self.token_counter(system_prompt) + self.token_counter(question_prompt)
        available = self.max_input_tokens - self.max_output_tokens - base_tokens

        parts = [question_prompt]
        included: list[DocumentChunk] = []

        for chunk in ranked_chunks:
            if available <= 0:
                break
            block = render_chunk(chunk)
            block_tokens = self.token_counter(block)
            if block_tokens > available:
                break
            parts.append(block)
            included.append(chunk)
            available -= block_tokens

        if ranked_chunks and not included:
            logger.warning(
                "[ContextAssembler] Top-ranked chunk does not fit the budget; "
                "answering without context"
            )

        token_count = self.max_input_tokens - self.max_output_tokens - available
        logger.debug(
            f"[ContextAssembler] {len(included)}/{len(ranked_chunks)} chunks | "
            f"{token_count} input tokens | {available} left"
        )
        return AssembledPrompt(
            system_prompt=system_prompt,
            user_prompt="".join(parts),
            chunks=included,
            token_count=token_count,
        )
