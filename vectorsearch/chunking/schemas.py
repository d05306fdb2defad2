"""
Chunk schemas - the atomic units that get embedded and indexed.

A DocumentChunk carries the name of its parent document so a retrieved
chunk can be rendered (and cited) without a second lookup.
"""
from __future__ import annotations

import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class DecodedChunk(BaseModel):
    """A chunk of text produced by a decoder, before embedding."""

    content: str
    page_number: Optional[int] = None    # None for formats without pages
    index_on_page: int = 0


class DocumentChunk(BaseModel):
    """A stored, embedded chunk of a document."""

    model_config = ConfigDict(frozen=True)

    # Identity
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    document_id: uuid.UUID
    index: int                            # Ordinal within the document

    # Provenance (copied from parent doc for zero-join retrieval)
    file_name: str
    page_number: Optional[int] = None
    index_on_page: int = 0

    # Content
    content: str
    embedding: Optional[list[float]] = None

    def without_embedding(self) -> "DocumentChunk":
        return self.model_copy(update={"embedding": None})


class PageText(BaseModel):
    """Raw text of one page; page_number is None for formats without pages."""

    page_number: Optional[int] = None
    text: str
