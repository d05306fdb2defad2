"""
Core Pydantic schemas shared by the import and question-answering paths.

Everything here is either returned to the caller (documents, responses,
citations, token usage) or kept in the conversation cache (turns and
histories).  Chunk models live in vectorsearch.chunking.schemas.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, computed_field


# --- Enumerations ------------------------------------------------------------

class StreamState(str, Enum):
    START = "start"
    APPEND = "append"
    END = "end"


# --- Documents ---------------------------------------------------------------

class Document(BaseModel):
    """A stored document as listed to the caller."""

    id: uuid.UUID
    name: str
    creation_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    chunk_count: int = 0


class ImportResult(BaseModel):
    document_id: uuid.UUID
    embedding_token_count: int


# --- Conversation ------------------------------------------------------------

class ConversationTurn(BaseModel):
    """A single chat message; also the unit of a completion prompt."""

    role: Literal["system", "user", "assistant"]
    content: str


class ConversationHistory(BaseModel):
    """Ordered chat history of one conversation."""

    turns: list[ConversationTurn] = Field(default_factory=list)

    def add_user_message(self, content: str) -> None:
        self.turns.append(ConversationTurn(role="user", content=content))

    def add_assistant_message(self, content: str) -> None:
        self.turns.append(ConversationTurn(role="assistant", content=content))

    def trim(self, limit: int) -> None:
        """Drop the oldest turns so that at most `limit` remain."""
        if len(self.turns) > limit:
            self.turns = self.turns[-limit:]

    def __len__(self) -> int:
        return len(self.turns)


# --- Questions & Answers -----------------------------------------------------

class Question(BaseModel):
    conversation_id: uuid.UUID
    text: str = Field(min_length=1, max_length=4096)


class Citation(BaseModel):
    """A source reference extracted from the model's citation block."""

    document_id: str
    chunk_id: str
    file_name: str
    quote: str
    page_number: Optional[int] = None
    index_on_page: int = 0


class TokenUsage(BaseModel):
    input_token_count: int = 0
    output_token_count: int = 0

    @computed_field
    @property
    def total_token_count(self) -> int:
        return self.input_token_count + self.output_token_count


class TokenUsageResponse(BaseModel):
    """Token usage breakdown of a single question."""

    reformulation: Optional[TokenUsage] = None
    embedding_token_count: Optional[int] = None
    question: Optional[TokenUsage] = None


class QuestionResponse(BaseModel):
    """
    Answer to a question.

    In streaming mode the fields are spread over several messages: the
    START message carries the questions, APPEND messages carry answer
    fragments, and the END message carries usage and citations.
    """

    original_question: Optional[str] = None
    reformulated_question: Optional[str] = None
    answer: Optional[str] = None
    stream_state: Optional[StreamState] = None
    token_usage: Optional[TokenUsageResponse] = None
    citations: Optional[list[Citation]] = None
