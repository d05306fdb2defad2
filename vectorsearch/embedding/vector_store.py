"""
FAISS Vector Store
-------------------
In-process stand-in for the relational vector store: documents own their
chunks, and chunks are searchable by

  - cosine similarity  -- faiss.IndexFlatIP over L2-normalised vectors
  - keywords           -- BM25Okapi (rank_bm25) over chunk text

Every mutation builds a complete new snapshot (documents, chunks, FAISS
index, BM25 index) and then swaps it in with a single assignment.  A failure
while building leaves the previous snapshot untouched, so re-importing a
document is all-or-nothing: readers see either the old chunk set or the new
one, never a mix.

Persistence (optional, after every mutation when `index_dir` is set):
  - FAISS index   -> <index_dir>/faiss.index
  - Chunk records -> <index_dir>/chunks.json
  - Documents     -> <index_dir>/documents.json

All three files are written to `*.tmp` siblings first and renamed into
place only once every write has succeeded.  The new snapshot becomes
visible in memory after that, so a failed write leaves both the files and
the in-memory store at the previous version.
"""
from __future__ import annotations

import asyncio
import os
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

import faiss
import numpy as np
import orjson
from loguru import logger
from rank_bm25 import BM25Okapi

from vectorsearch.chunking.schemas import DocumentChunk
from vectorsearch.embedding.embedder import normalize
from vectorsearch.schemas import Document


def _bm25_tokens(text: str) -> list[str]:
    """Normalise text for BM25: lowercase, strip punctuation, split on whitespace."""
    normalised = re.sub(r"[^\w\s]", " ", text.lower())
    return [t for t in normalised.split() if len(t) > 1]


def _save_json(data: Any, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(orjson.dumps(data, option=orjson.OPT_INDENT_2))


def _load_json(path: Path) -> Any:
    return orjson.loads(path.read_bytes())


def _write_snapshot(snapshot: "_Snapshot", index_dir: Path) -> None:
    """Stage every file as `<name>.tmp`, then rename them all into place."""
    index_dir.mkdir(parents=True, exist_ok=True)
    staged: list[Path] = []
    try:
        index_tmp = index_dir / "faiss.index.tmp"
        staged.append(index_tmp)
        faiss.write_index(snapshot.faiss_index, str(index_tmp))
        for name, data in (
            ("chunks.json", [c.model_dump(mode="json", exclude={"embedding"}) for c in snapshot.chunks]),
            ("documents.json", [d.model_dump(mode="json") for d in snapshot.documents.values()]),
        ):
            tmp = index_dir / f"{name}.tmp"
            staged.append(tmp)
            _save_json(data, tmp)
    except Exception:
        for tmp in staged:
            tmp.unlink(missing_ok=True)
        raise

    for tmp in staged:
        os.replace(tmp, tmp.with_suffix(""))


@dataclass
class _Snapshot:
    """Immutable-by-convention view of the whole store."""

    dimensions: int
    documents: dict[uuid.UUID, Document] = field(default_factory=dict)
    chunks: list[DocumentChunk] = field(default_factory=list)
    faiss_index: Optional[faiss.IndexFlatIP] = None
    bm25: Optional[BM25Okapi] = None

    @classmethod
    def build(
        cls,
        dimensions: int,
        documents: dict[uuid.UUID, Document],
        chunks: list[DocumentChunk],
    ) -> "_Snapshot":
        faiss_index = faiss.IndexFlatIP(dimensions)
        bm25 = None
        if chunks:
            matrix = np.array([c.embedding for c in chunks], dtype=np.float32)
            faiss_index.add(np.ascontiguousarray(matrix))
            bm25 = BM25Okapi([_bm25_tokens(c.content) for c in chunks])
        return cls(
            dimensions=dimensions,
            documents=documents,
            chunks=chunks,
            faiss_index=faiss_index,
            bm25=bm25,
        )


class VectorStore:
    """
    Document/chunk store with dense and sparse search.

    Usage:
        store = VectorStore(dimensions=1536, index_dir=Path("data/index"))
        await store.replace_document(document, chunks)
        hits = await store.similarity_search(query_vec, k=5)
    """

    def __init__(self, dimensions: int = 1536, index_dir: Optional[Path] = None) -> None:
        self.dimensions = dimensions
        self.index_dir = Path(index_dir) if index_dir else None
        self._snapshot = _Snapshot.build(dimensions, {}, [])
        self._lock = asyncio.Lock()

    # --- Mutations ------------------------------------------------------------

    async def replace_document(self, document: Document, chunks: Sequence[DocumentChunk]) -> None:
        """
        Store a document with its chunks, replacing any previous version.

        The old chunks of `document.id` are dropped and the new ones added
        in one swap, after the new state has been persisted.
        """
        async with self._lock:
            current = self._snapshot
            prepared = [self._prepare(chunk, document) for chunk in chunks]

            documents = dict(current.documents)
            documents[document.id] = document.model_copy(update={"chunk_count": len(prepared)})
            kept = [c for c in current.chunks if c.document_id != document.id]

            snapshot = _Snapshot.build(self.dimensions, documents, kept + prepared)
            await self._persist(snapshot)
            self._snapshot = snapshot

        replaced = len(current.chunks) - len(kept)
        logger.info(
            f"[VectorStore] Stored {document.name!r} ({document.id}) | "
            f"{len(prepared)} chunks added, {replaced} replaced | "
            f"{snapshot.faiss_index.ntotal} vectors total"
        )

    async def delete_documents(self, document_ids: Iterable[uuid.UUID]) -> int:
        """Delete documents and all their chunks. Returns the number of documents removed."""
        ids = set(document_ids)
        async with self._lock:
            current = self._snapshot
            documents = {k: v for k, v in current.documents.items() if k not in ids}
            removed = len(current.documents) - len(documents)
            if removed == 0:
                return 0

            chunks = [c for c in current.chunks if c.document_id not in ids]
            snapshot = _Snapshot.build(self.dimensions, documents, chunks)
            await self._persist(snapshot)
            self._snapshot = snapshot

        logger.info(f"[VectorStore] Deleted {removed} document(s)")
        return removed

    def _prepare(self, chunk: DocumentChunk, document: Document) -> DocumentChunk:
        if chunk.embedding is None or len(chunk.embedding) != self.dimensions:
            raise ValueError(
                f"Chunk {chunk.index} of {document.name!r} needs a "
                f"{self.dimensions}-dimensional embedding"
            )
        if chunk.document_id != document.id:
            raise ValueError(f"Chunk {chunk.index} does not belong to document {document.id}")
        vector = normalize(np.asarray(chunk.embedding, dtype=np.float32))[0]
        return chunk.model_copy(update={"embedding": vector.tolist(), "file_name": document.name})

    # --- Search ---------------------------------------------------------------

    async def similarity_search(self, embedding: np.ndarray, k: int) -> list[DocumentChunk]:
        """
        Dense (semantic) search.

        Returns: up to k chunks, most similar first (ascending cosine distance).
        """
        snapshot = self._snapshot
        if not snapshot.chunks or k <= 0:
            return []
        query = np.ascontiguousarray(normalize(embedding), dtype=np.float32)
        _, indices = snapshot.faiss_index.search(query, min(k, len(snapshot.chunks)))
        return [snapshot.chunks[i].without_embedding() for i in indices[0] if i >= 0]

    async def full_text_search(self, query: str, k: int) -> list[DocumentChunk]:
        """
        Sparse (BM25 keyword) search.

        Returns: up to k chunks with a positive BM25 score, best first.
        """
        snapshot = self._snapshot
        tokens = _bm25_tokens(query)
        if snapshot.bm25 is None or not tokens or k <= 0:
            return []
        scores = snapshot.bm25.get_scores(tokens)
        top = np.argsort(scores)[::-1][:k]
        return [snapshot.chunks[i].without_embedding() for i in top if scores[i] > 0]

    # --- Reads ----------------------------------------------------------------

    async def get_documents(self) -> list[Document]:
        return sorted(self._snapshot.documents.values(), key=lambda d: d.name)

    async def get_chunks(self, document_id: uuid.UUID) -> list[DocumentChunk]:
        """Chunks of a document in order, without embeddings."""
        chunks = [c for c in self._snapshot.chunks if c.document_id == document_id]
        return [c.without_embedding() for c in sorted(chunks, key=lambda c: c.index)]

    async def get_chunk(self, document_id: uuid.UUID, chunk_id: uuid.UUID) -> Optional[DocumentChunk]:
        """A single chunk including its embedding."""
        for chunk in self._snapshot.chunks:
            if chunk.id == chunk_id and chunk.document_id == document_id:
                return chunk
        return None

    @property
    def vector_count(self) -> int:
        return self._snapshot.faiss_index.ntotal

    # --- Persistence ----------------------------------------------------------

    async def _persist(self, snapshot: _Snapshot) -> None:
        if self.index_dir is not None:
            await asyncio.to_thread(_write_snapshot, snapshot, self.index_dir)
            logger.debug(f"[VectorStore] Saved {len(snapshot.chunks)} chunks -> {self.index_dir}")

    def save(self, index_dir: Path) -> None:
        """Persist FAISS index + chunk records + documents to disk."""
        snapshot = self._snapshot
        _write_snapshot(snapshot, Path(index_dir))
        logger.debug(f"[VectorStore] Saved {len(snapshot.chunks)} chunks -> {index_dir}")

    @classmethod
    def load(cls, index_dir: Path, dimensions: int = 1536) -> "VectorStore":
        """Load a persisted store; a missing directory yields an empty store."""
        index_dir = Path(index_dir)
        store = cls(dimensions=dimensions, index_dir=index_dir)
        if not (index_dir / "faiss.index").exists():
            logger.info(f"[VectorStore] No index at {index_dir}, starting empty")
            return store

        faiss_index = faiss.read_index(str(index_dir / "faiss.index"))
        if faiss_index.d != dimensions:
            raise ValueError(
                f"Index at {index_dir} has {faiss_index.d} dimensions, expected {dimensions}"
            )
        records = _load_json(index_dir / "chunks.json")
        if len(records) != faiss_index.ntotal:
            raise ValueError(
                f"Index at {index_dir} has {faiss_index.ntotal} vectors "
                f"but {len(records)} chunk records"
            )
        vectors = (
            faiss_index.reconstruct_n(0, faiss_index.ntotal)
            if faiss_index.ntotal
            else np.empty((0, dimensions), dtype=np.float32)
        )
        chunks = [
            DocumentChunk(**record, embedding=vector.tolist())
            for record, vector in zip(records, vectors, strict=True)
        ]
        documents = {
            d.id: d for d in (Document(**raw) for raw in _load_json(index_dir / "documents.json"))
        }
        store._snapshot = _Snapshot.build(dimensions, documents, chunks)

        logger.info(
            f"[VectorStore] Loaded: {len(documents)} documents, {len(chunks)} chunks from {index_dir}"
        )
        return store
