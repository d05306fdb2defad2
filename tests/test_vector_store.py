"""Tests for the FAISS + BM25 document store."""
import uuid

import numpy as np
import pytest

from tests.fakes import DIMENSIONS, FakeEmbedder
from vectorsearch.chunking.schemas import DocumentChunk
from vectorsearch.embedding import vector_store
from vectorsearch.embedding.vector_store import VectorStore
from vectorsearch.schemas import Document

EMBEDDER = FakeEmbedder()


def _document(name: str = "italy.txt") -> Document:
    return Document(id=uuid.uuid4(), name=name)


def _chunks(document: Document, texts: list[str]) -> list[DocumentChunk]:
    return [
        DocumentChunk(
            document_id=document.id,
            index=i,
            file_name=document.name,
            content=text,
            embedding=EMBEDDER.vector(text).tolist(),
        )
        for i, text in enumerate(texts)
    ]


@pytest.fixture
def store():
    return VectorStore(dimensions=DIMENSIONS)


class TestVectorStore:
    @pytest.mark.asyncio
    async def test_similarity_search_ranks_by_cosine(self, store):
        doc = _document()
        await store.replace_document(
            doc,
            _chunks(doc, ["rome is the capital of italy", "bananas are yellow", "paris is in france"]),
        )

        hits = await store.similarity_search(EMBEDDER.vector("capital of italy"), k=2)

        assert len(hits) == 2
        assert hits[0].content == "rome is the capital of italy"
        assert all(hit.embedding is None for hit in hits)

    @pytest.mark.asyncio
    async def test_search_empty_store(self, store):
        assert await store.similarity_search(np.ones(DIMENSIONS), k=5) == []
        assert await store.full_text_search("anything", k=5) == []

    @pytest.mark.asyncio
    async def test_full_text_search_requires_matching_terms(self, store):
        doc = _document()
        await store.replace_document(
            doc, _chunks(doc, ["invoice overdue for client", "weather is sunny", "lunch menu today"])
        )

        hits = await store.full_text_search("overdue invoice", k=5)

        assert [hit.content for hit in hits] == ["invoice overdue for client"]

    @pytest.mark.asyncio
    async def test_replace_document_drops_old_chunks(self, store):
        doc = _document()
        other = _document("other.txt")
        await store.replace_document(doc, _chunks(doc, ["old one", "old two", "old three"]))
        await store.replace_document(other, _chunks(other, ["unrelated"]))

        await store.replace_document(doc, _chunks(doc, ["new one"]))

        chunks = await store.get_chunks(doc.id)
        assert [c.content for c in chunks] == ["new one"]
        assert store.vector_count == 2
        docs = {d.id: d for d in await store.get_documents()}
        assert docs[doc.id].chunk_count == 1
        assert docs[other.id].chunk_count == 1

    @pytest.mark.asyncio
    async def test_failed_replace_keeps_previous_version(self, store):
        doc = _document()
        await store.replace_document(doc, _chunks(doc, ["kept"]))
        broken = DocumentChunk(document_id=doc.id, index=0, file_name=doc.name, content="x", embedding=[1.0])

        with pytest.raises(ValueError):
            await store.replace_document(doc, [broken])

        assert [c.content for c in await store.get_chunks(doc.id)] == ["kept"]

    @pytest.mark.asyncio
    async def test_delete_documents(self, store):
        first, second = _document("a.txt"), _document("b.txt")
        await store.replace_document(first, _chunks(first, ["alpha"]))
        await store.replace_document(second, _chunks(second, ["beta"]))

        assert await store.delete_documents([first.id, uuid.uuid4()]) == 1
        assert await store.delete_documents([first.id]) == 0
        assert [d.name for d in await store.get_documents()] == ["b.txt"]
        assert await store.get_chunks(first.id) == []

    @pytest.mark.asyncio
    async def test_get_chunk_includes_embedding(self, store):
        doc = _document()
        chunks = _chunks(doc, ["with vector"])
        await store.replace_document(doc, chunks)

        chunk = await store.get_chunk(doc.id, chunks[0].id)

        assert chunk is not None
        assert len(chunk.embedding) == DIMENSIONS
        assert np.isclose(np.linalg.norm(chunk.embedding), 1.0, atol=1e-5)
        assert await store.get_chunk(doc.id, uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path):
        store = VectorStore(dimensions=DIMENSIONS, index_dir=tmp_path)
        doc = _document()
        await store.replace_document(doc, _chunks(doc, ["rome is the capital of italy", "pasta"]))

        loaded = VectorStore.load(tmp_path, dimensions=DIMENSIONS)

        assert [d.id for d in await loaded.get_documents()] == [doc.id]
        assert [c.content for c in await loaded.get_chunks(doc.id)] == [
            "rome is the capital of italy",
            "pasta",
        ]
        hits = await loaded.similarity_search(EMBEDDER.vector("capital of italy"), k=1)
        assert hits[0].content == "rome is the capital of italy"

    def test_load_missing_directory(self, tmp_path):
        store = VectorStore.load(tmp_path / "missing", dimensions=DIMENSIONS)
        assert store.vector_count == 0


class TestPersistence:
    """Disk writes are staged so a failure never leaves a mixed index."""

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_version(self, tmp_path, monkeypatch):
        store = VectorStore(dimensions=DIMENSIONS, index_dir=tmp_path)
        apples, rockets = _document("apples.txt"), _document("rockets.txt")
        await store.replace_document(apples, _chunks(apples, ["apple orchard fruit"]))
        await store.replace_document(rockets, _chunks(rockets, ["rocket launch orbit"]))

        save_json = vector_store._save_json

        def failing_save_json(data, path):
            if path.name.startswith("chunks.json"):
                raise OSError("disk full")
            save_json(data, path)

        monkeypatch.setattr(vector_store, "_save_json", failing_save_json)
        with pytest.raises(OSError):
            await store.replace_document(apples, _chunks(apples, ["apple pie recipe", "baking"]))

        assert [c.content for c in await store.get_chunks(apples.id)] == ["apple orchard fruit"]
        assert sorted(p.name for p in tmp_path.iterdir()) == [
            "chunks.json",
            "documents.json",
            "faiss.index",
        ]

        loaded = VectorStore.load(tmp_path, dimensions=DIMENSIONS)
        hits = await loaded.similarity_search(EMBEDDER.vector("rocket launch orbit"), k=1)
        assert hits[0].content == "rocket launch orbit"
        assert loaded.vector_count == 2

    @pytest.mark.asyncio
    async def test_load_rejects_mismatched_records(self, tmp_path):
        store = VectorStore(dimensions=DIMENSIONS, index_dir=tmp_path)
        doc = _document()
        await store.replace_document(doc, _chunks(doc, ["first", "second"]))
        (tmp_path / "chunks.json").write_bytes(b"[]")

        with pytest.raises(ValueError, match="2 vectors but 0 chunk records"):
            VectorStore.load(tmp_path, dimensions=DIMENSIONS)

    @pytest.mark.asyncio
    async def test_delete_is_persisted(self, tmp_path):
        store = VectorStore(dimensions=DIMENSIONS, index_dir=tmp_path)
        first, second = _document("a.txt"), _document("b.txt")
        await store.replace_document(first, _chunks(first, ["alpha"]))
        await store.replace_document(second, _chunks(second, ["beta"]))

        await store.delete_documents([first.id])

        loaded = VectorStore.load(tmp_path, dimensions=DIMENSIONS)
        assert [d.name for d in await loaded.get_documents()] == ["b.txt"]
        assert loaded.vector_count == 1
