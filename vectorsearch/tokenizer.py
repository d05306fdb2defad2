"""Model-specific token counting backed by tiktoken."""
from __future__ import annotations

from typing import Callable

import tiktoken
from loguru import logger

TokenCounter = Callable[[str], int]

FALLBACK_ENCODING = "cl100k_base"


def _encoding_for(model: str) -> tiktoken.Encoding:
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        logger.warning(
            f"[Tokenizer] No tiktoken mapping for {model!r}, using {FALLBACK_ENCODING}"
        )
        return tiktoken.get_encoding(FALLBACK_ENCODING)


class TokenizerService:
    """
    Counts tokens with the vocabularies of the chat and embedding models.

    The chat counter drives context budgeting; the embedding counter is used
    for chunking (chunks are what gets embedded) and cost accounting.
    """

    def __init__(self, chat_model: str, embedding_model: str) -> None:
        self._chat_encoding = _encoding_for(chat_model)
        self._embedding_encoding = _encoding_for(embedding_model)

    def count_chat_completion_tokens(self, text: str) -> int:
        return len(self._chat_encoding.encode(text, disallowed_special=()))

    def count_embedding_tokens(self, text: str) -> int:
        return len(self._embedding_encoding.encode(text, disallowed_special=()))
