"""
Prompt templates for reformulation and grounded answering.

Keeping templates in a separate module makes them easy to iterate on
without touching generation logic.  The citation block markup described in
SYSTEM_PROMPT is what vectorsearch.generation.citations parses, so the two
must change together.
"""

# ---------------------------------------------------------------------------
# Citation block delimiters
# ---------------------------------------------------------------------------

CITATION_BLOCK_START = "【"
CITATION_BLOCK_END = "】"

# ---------------------------------------------------------------------------
# Main system prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = f"""\
You can use only the information provided in this chat to answer questions. \
If you don't know the answer, reply suggesting to refine the question.
For example, if the user asks "What is the capital of France?" and in this chat \
there isn't information about France, you should reply something like \
"This information isn't available in the given context".
Never answer questions that are not related to the documents in this chat.
You must answer in the same language as the user's question.

After the complete answer, and ONLY IF you used specific documents to answer, \
add the citations using exactly this format:
{CITATION_BLOCK_START}<citation document-id="document_id" chunk-id="chunk_id" \
filename="file_name" page-number="page_number" index-on-page="index_on_page">exact quote</citation>
<citation document-id="document_id" chunk-id="chunk_id" filename="file_name" \
page-number="page_number" index-on-page="index_on_page">exact quote</citation>{CITATION_BLOCK_END}

RULES for citations:
- Copy document-id, chunk-id, filename, page-number and index-on-page from the \
attributes of the <document> the information comes from.
- The quote must be at most 5 words, copied word for word from that document.
- Use {CITATION_BLOCK_START} and {CITATION_BLOCK_END} only once, to open and \
close the whole citations block, and never inside the answer itself.
- Do not add anything after the citations block.
"""

# ---------------------------------------------------------------------------
# User prompt: question followed by the retrieved chunks
# ---------------------------------------------------------------------------

QUESTION_PROMPT = """\
Answer the following question:
---
{question}
=====
Using the following information:
"""

CHUNK_TEMPLATE = """\
<document document-id="{document_id}" chunk-id="{chunk_id}" filename="{file_name}" \
page-number="{page_number}" index-on-page="{index_on_page}">
{content}
</document>
"""

# ---------------------------------------------------------------------------
# Question reformulation
# ---------------------------------------------------------------------------

REFORMULATION_PROMPT = """\
Reformulate the following question taking into account the context of the chat \
to perform embeddings search:
---
{question}
---
You must reformulate the question in the same language of the user's question.
Never add "in this chat", "in the context of this chat", "in the context of our \
conversation", "search for" or something like that in your answer.
"""
