"""
Token-aware Text Chunker
-------------------------
Splits decoded document text into overlapping, token-bounded chunks in two
passes:

  1. LINES -- the text is broken into spans of at most `max_tokens_per_line`
     tokens.  Natural boundaries are preferred: source lines first, then
     sentences (NLTK punkt), then the separator closest to the middle of the
     span (`;:` then `,` then closing brackets, spaces, dashes), and only as
     a last resort a hard cut in the middle.

  2. PARAGRAPHS -- consecutive lines are greedily merged while the paragraph
     stays within `max_tokens_per_paragraph`.  Every new paragraph is seeded
     with the trailing `overlap_tokens` worth of words from the previous one
     so that facts straddling a boundary appear in both chunks.

The markdown variant treats fenced code blocks, headings, list items and
blank-line separated blocks as atomic lines, and always starts a new
paragraph at a heading.

Token counts come from a caller-supplied counter (model vocabulary, not
characters).  Limits are soft: a single line that is already larger than a
paragraph is emitted on its own instead of being truncated.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Iterator, Optional, Sequence

import nltk
from loguru import logger

from vectorsearch.chunking.schemas import DecodedChunk, PageText
from vectorsearch.tokenizer import TokenCounter


# ── Constants ─────────────────────────────────────────────────────────────────

PAGE_BREAK = "\f"

# Separator classes tried in order when a span has to be bisected
SEPARATOR_CLASSES: tuple[str, ...] = (";:", ",", ")]}", " ", "-")

_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s")
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+")

_punkt_ready: Optional[bool] = None


def _ensure_punkt() -> bool:
    """Make sure the punkt sentence model is available (downloads once)."""
    global _punkt_ready
    if _punkt_ready is None:
        try:
            nltk.data.find("tokenizers/punkt_tab")
            _punkt_ready = True
        except LookupError:
            _punkt_ready = bool(nltk.download("punkt_tab", quiet=True))
            if not _punkt_ready:
                logger.warning("[Chunker] punkt_tab unavailable, using regex sentence splitting")
    return _punkt_ready


def split_sentences(text: str) -> list[str]:
    """Split text into sentences using NLTK punkt tokenizer."""
    if _ensure_punkt():
        sentences = nltk.sent_tokenize(text)
    else:
        sentences = re.split(r"(?<=[.!?])\s+", text)
    return [s.strip() for s in sentences if s.strip()]


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


# ── Line pass ─────────────────────────────────────────────────────────────────

def _cut_point(text: str, separators: str) -> Optional[int]:
    """Index right after the separator closest to the middle, if any."""
    half = len(text) // 2
    best: Optional[int] = None
    for index, char in enumerate(text[:-1]):
        if char in separators and (best is None or abs(half - index) < abs(half - best)):
            best = index
    return None if best is None else best + 1


def split_span(text: str, max_tokens: int, token_counter: TokenCounter) -> list[str]:
    """Recursively bisect `text` until every piece fits in `max_tokens`."""
    text = text.strip()
    if not text:
        return []
    if len(text) < 2 or token_counter(text) <= max_tokens:
        return [text]

    cut = None
    for separators in SEPARATOR_CLASSES:
        cut = _cut_point(text, separators)
        if cut is not None:
            break
    if cut is None:
        cut = len(text) // 2

    return split_span(text[:cut], max_tokens, token_counter) + split_span(
        text[cut:], max_tokens, token_counter
    )


def split_plain_text_lines(
    text: str,
    max_tokens_per_line: int,
    token_counter: TokenCounter,
) -> list[str]:
    """Break plain text into non-empty lines of at most `max_tokens_per_line` tokens."""
    lines: list[str] = []
    for raw_line in normalize_newlines(text).split("\n"):
        raw_line = raw_line.strip()
        if not raw_line:
            continue
        if token_counter(raw_line) <= max_tokens_per_line:
            lines.append(raw_line)
            continue
        for sentence in split_sentences(raw_line):
            lines.extend(split_span(sentence, max_tokens_per_line, token_counter))
    return lines


def is_markdown_heading(line: str) -> bool:
    return bool(_HEADING_RE.match(line))


def _markdown_blocks(text: str) -> Iterator[tuple[str, bool]]:
    """Yield (block_text, is_code) for each structural markdown block."""
    block: list[str] = []
    in_fence = False

    for line in normalize_newlines(text).split("\n"):
        if in_fence:
            block.append(line)
            if _FENCE_RE.match(line):
                yield "\n".join(block), True
                block, in_fence = [], False
            continue

        if _FENCE_RE.match(line):
            if block:
                yield "\n".join(block), False
            block, in_fence = [line], True
        elif not line.strip():
            if block:
                yield "\n".join(block), False
            block = []
        elif is_markdown_heading(line):
            if block:
                yield "\n".join(block), False
            yield line.strip(), False
            block = []
        elif _LIST_ITEM_RE.match(line):
            if block:
                yield "\n".join(block), False
            block = [line.rstrip()]
        else:
            block.append(line.rstrip())

    # An unterminated fence still counts as code
    if block:
        yield "\n".join(block), in_fence


def _pack_lines(lines: Sequence[str], max_tokens: int, token_counter: TokenCounter) -> list[str]:
    """Greedily pack source lines (kept verbatim) into spans under `max_tokens`."""
    spans: list[str] = []
    current: list[str] = []
    for line in lines:
        if token_counter(line) > max_tokens:
            if current:
                spans.append("\n".join(current))
                current = []
            spans.extend(split_span(line, max_tokens, token_counter))
            continue
        if current and token_counter("\n".join([*current, line])) > max_tokens:
            spans.append("\n".join(current))
            current = []
        current.append(line)
    if current:
        spans.append("\n".join(current))
    return spans


def split_markdown_lines(
    text: str,
    max_tokens_per_line: int,
    token_counter: TokenCounter,
) -> list[str]:
    """Break markdown into lines that follow its block structure."""
    lines: list[str] = []
    for block, is_code in _markdown_blocks(text):
        if not block.strip():
            continue
        if token_counter(block) <= max_tokens_per_line:
            lines.append(block.strip("\n"))
        elif is_code:
            lines.extend(_pack_lines(block.split("\n"), max_tokens_per_line, token_counter))
        else:
            prose = " ".join(part.strip() for part in block.split("\n"))
            for sentence in split_sentences(prose):
                lines.extend(split_span(sentence, max_tokens_per_line, token_counter))
    return lines


# ── Paragraph pass ────────────────────────────────────────────────────────────

def overlap_tail(text: str, overlap_tokens: int, token_counter: TokenCounter) -> str:
    """The shortest run of trailing words of `text` holding >= overlap_tokens tokens."""
    if overlap_tokens <= 0:
        return ""
    words = text.split()
    tail = ""
    for start in range(len(words) - 1, -1, -1):
        tail = " ".join(words[start:])
        if token_counter(tail) >= overlap_tokens:
            break
    return tail


def _seed_overlap(
    previous: str,
    next_line: str,
    max_tokens: int,
    overlap_tokens: int,
    token_counter: TokenCounter,
) -> list[str]:
    tail = overlap_tail(previous, overlap_tokens, token_counter)
    words = tail.split()
    # Shrink the overlap from the front until it fits next to the next line
    while words and token_counter("\n".join([" ".join(words), next_line])) > max_tokens:
        words = words[1:]
    return [" ".join(words)] if words else []


def split_paragraphs(
    lines: Iterable[str],
    max_tokens_per_paragraph: int,
    overlap_tokens: int,
    token_counter: TokenCounter,
    starts_paragraph: Optional[Callable[[str], bool]] = None,
) -> list[str]:
    """
    Merge lines into overlapping paragraphs of at most `max_tokens_per_paragraph`.

    Args:
        lines: Output of one of the line splitters, in document order.
        max_tokens_per_paragraph: Soft ceiling per paragraph.
        overlap_tokens: Trailing tokens of a paragraph repeated at the start
            of the next one.
        token_counter: Model-specific token counter.
        starts_paragraph: Optional predicate forcing a paragraph break before
            a line (used for markdown headings).

    Returns:
        Non-empty paragraphs in document order.
    """
    if max_tokens_per_paragraph <= 0:
        raise ValueError("max_tokens_per_paragraph must be positive")
    if not 0 <= overlap_tokens < max_tokens_per_paragraph:
        raise ValueError("overlap_tokens must be in [0, max_tokens_per_paragraph)")

    paragraphs: list[str] = []
    current: list[str] = []

    for line in lines:
        if not line.strip():
            continue
        if current:
            forced = starts_paragraph is not None and starts_paragraph(line)
            if forced or token_counter("\n".join([*current, line])) > max_tokens_per_paragraph:
                previous = "\n".join(current).strip()
                if previous:
                    paragraphs.append(previous)
                current = _seed_overlap(
                    previous, line, max_tokens_per_paragraph, overlap_tokens, token_counter
                )
        current.append(line)

    if current:
        last = "\n".join(current).strip()
        if last:
            paragraphs.append(last)
    return paragraphs


def split_pages(text: str) -> list[PageText]:
    """Split text on form-feed page breaks; unpaged text has page_number None."""
    pages = text.split(PAGE_BREAK)
    if len(pages) == 1:
        return [PageText(page_number=None, text=text)]
    return [PageText(page_number=number, text=page) for number, page in enumerate(pages, start=1)]


# ── Chunkers ──────────────────────────────────────────────────────────────────

class TextChunker(ABC):
    """
    Base class of the content-type specific chunkers.

    Usage:
        chunker = PlainTextChunker(300, 1000, 100, tokenizer.count_embedding_tokens)
        chunks = chunker.chunk_pages(pages)
    """

    name: str = "text"

    def __init__(
        self,
        max_tokens_per_line: int,
        max_tokens_per_paragraph: int,
        overlap_tokens: int,
        token_counter: TokenCounter,
    ) -> None:
        self.max_tokens_per_line = max_tokens_per_line
        self.max_tokens_per_paragraph = max_tokens_per_paragraph
        self.overlap_tokens = overlap_tokens
        self.token_counter = token_counter

    @abstractmethod
    def split_lines(self, text: str) -> list[str]:
        ...

    def starts_paragraph(self, line: str) -> bool:
        return False

    def split(self, text: str) -> list[str]:
        """Split text into ordered, overlapping, token-bounded paragraphs."""
        lines = self.split_lines(text)
        paragraphs = split_paragraphs(
            lines,
            self.max_tokens_per_paragraph,
            self.overlap_tokens,
            self.token_counter,
            starts_paragraph=self.starts_paragraph,
        )
        logger.debug(f"[Chunker] {self.name} | {len(lines)} lines -> {len(paragraphs)} paragraph(s)")
        return paragraphs

    def chunk_pages(self, pages: Iterable[PageText]) -> list[DecodedChunk]:
        """Split every page and tag each chunk with (page_number, index_on_page)."""
        chunks: list[DecodedChunk] = []
        for page in pages:
            for index, paragraph in enumerate(self.split(page.text)):
                chunks.append(
                    DecodedChunk(
                        content=paragraph,
                        page_number=page.page_number,
                        index_on_page=index,
                    )
                )
        return chunks


class PlainTextChunker(TextChunker):
    name = "plain"

    def split_lines(self, text: str) -> list[str]:
        return split_plain_text_lines(text, self.max_tokens_per_line, self.token_counter)


class MarkdownTextChunker(TextChunker):
    name = "markdown"

    def split_lines(self, text: str) -> list[str]:
        return split_markdown_lines(text, self.max_tokens_per_line, self.token_counter)

    def starts_paragraph(self, line: str) -> bool:
        return is_markdown_heading(line)
