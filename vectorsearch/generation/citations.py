"""
Citation Block Parser
----------------------
The model appends its sources after the answer as a single block:

    The capital of Italy is Rome.【<citation document-id="1" chunk-id="2"
    filename="italy.pdf" page-number="1" index-on-page="1">capital of Italy
    is Rome</citation>】

`extract_citations` removes that block from the answer and turns every
<citation> tag into a Citation.  It is a single left-to-right scan with
str.find -- no regular expressions -- so adversarial model output cannot
trigger backtracking.  Parsing is lenient: a bad page number becomes None,
a bad index becomes 0, and a tag that cannot be parsed at all is skipped.

`CitationStreamFilter` applies the same protocol to a token stream: text is
forwarded until the opening delimiter shows up, everything after it is only
buffered, and the citations are extracted once the stream has ended.
"""
from __future__ import annotations

import html
from typing import Optional

from loguru import logger

from vectorsearch.generation.prompts import CITATION_BLOCK_END, CITATION_BLOCK_START
from vectorsearch.schemas import Citation

_TAG_OPEN = "<citation"
_TAG_CLOSE = "</citation>"


# ---------------------------------------------------------------------------
# Attribute scanner
# ---------------------------------------------------------------------------

def _parse_attributes(text: str) -> dict[str, str]:
    """Parse `name="value"` pairs (single or double quotes) of one start tag."""
    attributes: dict[str, str] = {}
    i, n = 0, len(text)
    while i < n:
        while i < n and text[i].isspace():
            i += 1
        name_start = i
        while i < n and not text[i].isspace() and text[i] != "=":
            i += 1
        name = text[name_start:i]
        while i < n and text[i].isspace():
            i += 1
        if not name or i >= n or text[i] != "=":
            # Valueless or garbled attribute: skip to the next whitespace
            while i < n and not text[i].isspace():
                i += 1
            continue
        i += 1
        while i < n and text[i].isspace():
            i += 1
        if i < n and text[i] in "\"'":
            quote = text[i]
            end = text.find(quote, i + 1)
            if end == -1:
                end = n
            value = text[i + 1:end]
            i = end + 1
        else:
            value_start = i
            while i < n and not text[i].isspace():
                i += 1
            value = text[value_start:i]
        attributes[name.lower()] = html.unescape(value.strip())
    return attributes


def _parse_page_number(value: Optional[str]) -> Optional[int]:
    try:
        number = int(value) if value is not None else 0
    except ValueError:
        return None
    return number if number > 0 else None


def _parse_index(value: Optional[str]) -> int:
    try:
        return int(value) if value is not None else 0
    except ValueError:
        return 0


def _scan_citations(block: str) -> list[Citation]:
    citations: list[Citation] = []
    position = 0
    while True:
        start = block.find(_TAG_OPEN, position)
        if start == -1:
            break
        header_end = block.find(">", start + len(_TAG_OPEN))
        if header_end == -1:
            break
        close = block.find(_TAG_CLOSE, header_end + 1)
        next_open = block.find(_TAG_OPEN, header_end + 1)
        if close == -1 or (next_open != -1 and next_open < close):
            # Unterminated tag: skip it and keep scanning
            position = header_end + 1
            continue

        attributes = _parse_attributes(block[start + len(_TAG_OPEN):header_end].rstrip("/"))
        quote = html.unescape(block[header_end + 1:close]).strip()
        position = close + len(_TAG_CLOSE)

        document_id = attributes.get("document-id")
        chunk_id = attributes.get("chunk-id")
        if not document_id or not chunk_id:
            logger.debug(f"[Citations] Skipping tag without ids: {attributes}")
            continue

        citations.append(
            Citation(
                document_id=document_id,
                chunk_id=chunk_id,
                file_name=attributes.get("filename", ""),
                quote=quote,
                page_number=_parse_page_number(attributes.get("page-number")),
                index_on_page=_parse_index(attributes.get("index-on-page")),
            )
        )
    return citations


def _dedupe(citations: list[Citation]) -> list[Citation]:
    seen: set[tuple[str, str, str]] = set()
    unique: list[Citation] = []
    for citation in citations:
        key = (citation.document_id, citation.chunk_id, citation.quote)
        if key not in seen:
            seen.add(key)
            unique.append(citation)
    return unique


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def extract_citations(raw_answer: str) -> tuple[str, list[Citation]]:
    """
    Split a model answer into clean text and its citations.

    The block runs from the first opening delimiter to the next closing
    delimiter, or to the end of the text when the model was cut off before
    closing it.  Only that block is removed; the answer is right-trimmed.

    Returns:
        (clean_answer, citations sorted by file name then page number)
    """
    start = raw_answer.find(CITATION_BLOCK_START)
    if start == -1:
        return raw_answer, []

    end = raw_answer.find(CITATION_BLOCK_END, start + len(CITATION_BLOCK_START))
    if end == -1:
        block = raw_answer[start + len(CITATION_BLOCK_START):]
        remainder = ""
    else:
        block = raw_answer[start + len(CITATION_BLOCK_START):end]
        remainder = raw_answer[end + len(CITATION_BLOCK_END):]

    answer = (raw_answer[:start] + remainder).rstrip()
    citations = _dedupe(_scan_citations(block))
    citations.sort(key=lambda c: (c.file_name, c.page_number or 0))

    logger.debug(f"[Citations] Extracted {len(citations)} citation(s)")
    return answer, citations


class CitationStreamFilter:
    """
    Hides the citation block from a live token stream.

    Usage:
        stream_filter = CitationStreamFilter()
        async for token in tokens:
            visible = stream_filter.feed(token)
            if visible:
                send(visible)
        answer, citations = stream_filter.finish()
    """

    def __init__(self) -> None:
        self._parts: list[str] = []
        self.suppressing = False

    def feed(self, token: str) -> str:
        """Record a token; return the part that may be shown to the user."""
        self._parts.append(token)
        if self.suppressing:
            return ""
        start = token.find(CITATION_BLOCK_START)
        if start == -1:
            return token
        self.suppressing = True
        return token[:start]

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def finish(self) -> tuple[str, list[Citation]]:
        return extract_citations(self.text)
