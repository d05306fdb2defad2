"""
Content Decoders
-----------------
Turn an uploaded file into page texts, then into token-bounded chunks.

    DocumentDecoder.decode(stream, content_type)
        |
        v
    ContentDecoder (by content type)  -> [PageText]
        |
        v
    TextChunker (by content type)     -> [DecodedChunk(content, page, index_on_page)]

Both lookups are plain dictionaries resolved once when the DocumentDecoder
is built, so an unsupported content type fails fast with
UnsupportedContentTypeError before anything is written to the store.

Supports:
  - text/plain     -- UTF-8 text, form feeds are page breaks
  - text/markdown  -- as text, chunked along markdown block structure
  - application/pdf -- PyPDF2, one PageText per PDF page
  - DOCX           -- python-docx, paragraphs and table rows in body order
"""
from __future__ import annotations

import io
import mimetypes
import re
import zipfile
from abc import ABC, abstractmethod
from typing import BinaryIO, Optional, Union

from loguru import logger

from vectorsearch.chunking.chunker import (
    MarkdownTextChunker,
    PlainTextChunker,
    TextChunker,
    split_pages,
)
from vectorsearch.chunking.schemas import DecodedChunk, PageText
from vectorsearch.errors import DecodeError, UnsupportedContentTypeError
from vectorsearch.settings import AppSettings
from vectorsearch.tokenizer import TokenCounter

TEXT_PLAIN = "text/plain"
TEXT_MARKDOWN = "text/markdown"
APPLICATION_PDF = "application/pdf"
APPLICATION_DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

mimetypes.add_type(TEXT_MARKDOWN, ".md")
mimetypes.add_type(TEXT_MARKDOWN, ".markdown")
mimetypes.add_type(APPLICATION_DOCX, ".docx")

Source = Union[bytes, BinaryIO]


def clean_text(text: str, collapse_spaces: bool = True) -> str:
    """Remove control characters (keeping newlines/tabs) and collapse whitespace runs."""
    text = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"\n{3,}", "\n\n", text)
    if collapse_spaces:
        text = re.sub(r"[ \t]{2,}", " ", text)
    return text.strip()


def guess_content_type(file_name: str) -> str:
    """Resolve a content type from the file name (uploaded types are unreliable)."""
    content_type, _ = mimetypes.guess_type(file_name)
    return content_type or "application/octet-stream"


def _read_bytes(source: Source) -> bytes:
    return source if isinstance(source, bytes) else source.read()


class ContentDecoder(ABC):
    """Extracts raw page text from one file format."""

    @abstractmethod
    def extract_pages(self, data: bytes) -> list[PageText]:
        ...


class TextContentDecoder(ContentDecoder):
    def __init__(self, preserve_indentation: bool = False) -> None:
        # Markdown indentation is meaningful (nested lists, code blocks)
        self.preserve_indentation = preserve_indentation

    def extract_pages(self, data: bytes) -> list[PageText]:
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"Text file is not valid UTF-8: {exc}") from exc
        return [
            PageText(
                page_number=page.page_number,
                text=clean_text(page.text, collapse_spaces=not self.preserve_indentation),
            )
            for page in split_pages(text)
        ]


class PdfContentDecoder(ContentDecoder):
    def extract_pages(self, data: bytes) -> list[PageText]:
        import PyPDF2
        from PyPDF2.errors import PdfReadError

        try:
            reader = PyPDF2.PdfReader(io.BytesIO(data))
            pages = []
            for number, page in enumerate(reader.pages, start=1):
                try:
                    text = page.extract_text() or ""
                except Exception as page_error:
                    logger.warning(
                        f"[Decoder] Failed to extract text from PDF page {number}: {page_error}"
                    )
                    text = ""
                pages.append(PageText(page_number=number, text=clean_text(text)))
        except PdfReadError as exc:
            raise DecodeError(f"PDF file is corrupted or invalid: {exc}") from exc
        except Exception as exc:
            raise DecodeError(f"Failed to read PDF: {exc}") from exc

        if not any(page.text for page in pages):
            raise DecodeError(
                "No text could be extracted from PDF. The file may be image-based or corrupted."
            )
        return pages


class DocxContentDecoder(ContentDecoder):
    def extract_pages(self, data: bytes) -> list[PageText]:
        import docx
        from docx.opc.exceptions import PackageNotFoundError
        from docx.table import Table

        try:
            document = docx.Document(io.BytesIO(data))
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as exc:
            raise DecodeError(f"Failed to read DOCX: {exc}") from exc

        # Body paragraphs and tables in document order, one line per table row
        lines = []
        for block in document.iter_inner_content():
            if isinstance(block, Table):
                for row in block.rows:
                    row_text = " | ".join(cell.text.strip() for cell in row.cells if cell.text.strip())
                    if row_text:
                        lines.append(row_text)
            else:
                lines.append(block.text)
        return [PageText(page_number=None, text=clean_text("\n".join(lines)))]


class DocumentDecoder:
    """
    Content-type keyed registry of decoders and chunkers.

    Usage:
        decoder = DocumentDecoder.from_settings(settings.app, tokenizer.count_embedding_tokens)
        chunks = decoder.decode(stream, "application/pdf")
    """

    def __init__(
        self,
        decoders: dict[str, ContentDecoder],
        chunkers: dict[str, TextChunker],
    ) -> None:
        missing = set(decoders) - set(chunkers)
        if missing:
            raise ValueError(f"No chunker registered for: {sorted(missing)}")
        self.decoders = decoders
        self.chunkers = chunkers

    @classmethod
    def from_settings(cls, settings: AppSettings, token_counter: TokenCounter) -> "DocumentDecoder":
        limits = (
            settings.max_tokens_per_line,
            settings.max_tokens_per_paragraph,
            settings.overlap_tokens,
            token_counter,
        )
        plain = PlainTextChunker(*limits)
        markdown = MarkdownTextChunker(*limits)
        return cls(
            decoders={
                TEXT_PLAIN: TextContentDecoder(),
                TEXT_MARKDOWN: TextContentDecoder(preserve_indentation=True),
                APPLICATION_PDF: PdfContentDecoder(),
                APPLICATION_DOCX: DocxContentDecoder(),
            },
            chunkers={
                TEXT_PLAIN: plain,
                TEXT_MARKDOWN: markdown,
                APPLICATION_PDF: plain,
                APPLICATION_DOCX: plain,
            },
        )

    @property
    def supported_content_types(self) -> list[str]:
        return sorted(self.decoders)

    def resolve(self, content_type: str) -> tuple[ContentDecoder, TextChunker]:
        key = content_type.split(";", 1)[0].strip().lower()
        decoder: Optional[ContentDecoder] = self.decoders.get(key)
        if decoder is None:
            raise UnsupportedContentTypeError(content_type, self.supported_content_types)
        return decoder, self.chunkers[key]

    def decode(self, source: Source, content_type: str) -> list[DecodedChunk]:
        """
        Decode a file and split it into chunks tagged with page information.

        Raises:
            UnsupportedContentTypeError: No decoder for the content type.
            DecodeError: The file is corrupt or contains no text.
        """
        decoder, chunker = self.resolve(content_type)
        pages = decoder.extract_pages(_read_bytes(source))
        chunks = chunker.chunk_pages(pages)
        if not chunks:
            raise DecodeError("The document does not contain any text", content_type=content_type)

        logger.info(
            f"[Decoder] {content_type} | {len(pages)} page(s) -> {len(chunks)} chunk(s)"
        )
        return chunks
