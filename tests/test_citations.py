"""Tests for the citation block parser and the streaming filter."""
from vectorsearch.generation.citations import CitationStreamFilter, extract_citations
from vectorsearch.schemas import Citation

ITALY_ANSWER = (
    'The capital of Italy is Rome.【<citation document-id="1" chunk-id="2" '
    'filename="italy.pdf" page-number="1" index-on-page="1">capital of Italy is Rome'
    "</citation>】"
)


class TestExtractCitations:
    def test_single_citation(self):
        answer, citations = extract_citations(ITALY_ANSWER)
        assert answer == "The capital of Italy is Rome."
        assert citations == [
            Citation(
                document_id="1",
                chunk_id="2",
                file_name="italy.pdf",
                quote="capital of Italy is Rome",
                page_number=1,
                index_on_page=1,
            )
        ]

    def test_no_delimiter_returns_text_unchanged(self):
        text = "I don't know.  "
        assert extract_citations(text) == (text, [])

    def test_sorted_by_file_then_page(self):
        raw = (
            "Answer.【"
            '<citation document-id="d2" chunk-id="c3" filename="b.pdf" page-number="2">q3</citation>'
            '<citation document-id="d1" chunk-id="c1" filename="a.pdf" page-number="5">q1</citation>'
            '<citation document-id="d1" chunk-id="c2" filename="a.pdf" page-number="3">q2</citation>'
            "】"
        )
        _, citations = extract_citations(raw)
        assert [(c.file_name, c.page_number) for c in citations] == [
            ("a.pdf", 3),
            ("a.pdf", 5),
            ("b.pdf", 2),
        ]

    def test_lenient_numbers(self):
        raw = (
            'A.【<citation document-id="d" chunk-id="c" filename="f.txt" '
            'page-number="" index-on-page="x">quote</citation>】'
        )
        _, citations = extract_citations(raw)
        assert citations[0].page_number is None
        assert citations[0].index_on_page == 0

    def test_malformed_tags_skipped(self):
        raw = (
            "A.【"
            '<citation chunk-id="c" filename="f.txt">no document id</citation>'
            '<citation document-id="d" chunk-id="c" filename="f.txt">unterminated'
            '<citation document-id="d" chunk-id="c2" filename="f.txt">good</citation>'
            "】"
        )
        _, citations = extract_citations(raw)
        assert [(c.chunk_id, c.quote) for c in citations] == [("c2", "good")]

    def test_duplicates_collapsed(self):
        tag = '<citation document-id="d" chunk-id="c" filename="f.txt">same</citation>'
        _, citations = extract_citations(f"A.【{tag}{tag}】")
        assert len(citations) == 1

    def test_unclosed_block_runs_to_end(self):
        raw = 'Rome.【<citation document-id="d" chunk-id="c" filename="f.txt">Rome</citation>'
        answer, citations = extract_citations(raw)
        assert answer == "Rome."
        assert len(citations) == 1

    def test_escaped_attributes_and_single_quotes(self):
        raw = (
            "A.【<citation document-id='d' chunk-id='c' "
            "filename='Tom &amp; Jerry.pdf'>cats &amp; mice</citation>】"
        )
        _, citations = extract_citations(raw)
        assert citations[0].file_name == "Tom & Jerry.pdf"
        assert citations[0].quote == "cats & mice"


class TestCitationStreamFilter:
    def test_block_suppressed_from_stream(self):
        stream_filter = CitationStreamFilter()
        tokens = [
            "The answer.",
            "【",
            '<citation document-id="1" chunk-id="2" filename="f.txt">answer</citation>',
            "】",
        ]
        forwarded = [stream_filter.feed(token) for token in tokens]

        assert "".join(forwarded) == "The answer."
        assert stream_filter.text == "".join(tokens)
        answer, citations = stream_filter.finish()
        assert answer == "The answer."
        assert [c.quote for c in citations] == ["answer"]

    def test_delimiter_inside_token(self):
        stream_filter = CitationStreamFilter()
        assert stream_filter.feed("Rome.【<cit") == "Rome."
        assert stream_filter.suppressing
        assert stream_filter.feed("ation ...") == ""

    def test_plain_stream_passes_through(self):
        stream_filter = CitationStreamFilter()
        assert [stream_filter.feed(t) for t in ["I ", "don't ", "know."]] == ["I ", "don't ", "know."]
        assert stream_filter.finish() == ("I don't know.", [])
