# core/vector_store.py
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, List, Optional, Sequence
import numpy as np
from core.entities import Document, DocumentMetadata, SearchHit
import logging
from util.timing import timed

logger = logging.getLogger(__name__)

VectorLike = Sequence[float] | np.ndarray


def _as_vector(v: VectorLike) -> np.ndarray:
    return np.asarray(v, dtype=np.float32).reshape(-1)


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """
    dot(a, b) / (|a| * |b|). Returns 0.0 for length-mismatched or
    zero-magnitude inputs, and for non-finite results (inf/nan components)
    which would otherwise break the ranking sort.
    """
    va = np.asarray(a, dtype=np.float64).reshape(1, -1)
    return float(cosine_scores(va, b)[0])


def cosine_scores(matrix: np.ndarray, query: VectorLike) -> np.ndarray:
    """
    Row-wise cosine of an (n, d) float64 matrix against one query, with the
    same 0.0 cases as cosine_similarity.
    """
    n = matrix.shape[0]
    q = np.asarray(query, dtype=np.float64).reshape(-1)
    if n == 0 or matrix.ndim != 2 or matrix.shape[1] != q.size or q.size == 0:
        return np.zeros(n, dtype=np.float64)
    with np.errstate(all="ignore"):
        denom = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
        scores = (matrix @ q) / denom
    scores[(denom == 0.0) | ~np.isfinite(scores)] = 0.0
    return scores


class AsyncRWLock:
    """
    Shared-read / exclusive-write lock for coroutines.
    Waiting writers block new readers so inserts cannot starve behind a
    steady stream of searches.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(
                lambda: not self._writer and self._writers_waiting == 0
            )
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(
                    lambda: not self._writer and self._readers == 0
                )
            finally:
                self._writers_waiting -= 1
                # Wake readers parked behind this writer if the wait was cancelled.
                self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class VectorStore:
    """
    In-memory (text, embedding, metadata) collection with exact cosine search.

    Search is a linear scan over every document. An approximate index can
    replace it later as long as `search`/`search_by_source` keep returning at
    most k hits in non-increasing similarity order. Equal similarities keep
    insertion order; that tie-break is incidental, not part of the contract.
    """

    def __init__(self, dimension: Optional[int] = None) -> None:
        self._docs: List[Document] = []
        self._dimension = dimension
        self._lock = AsyncRWLock()
        # Stacked float64 embeddings, rebuilt lazily after writes.
        self._matrix: Optional[np.ndarray] = None

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def _checked_dimension(self, docs: Sequence[Document]) -> Optional[int]:
        dim = self._dimension
        for doc in docs:
            d = int(doc.embedding.shape[0])
            if dim is None:
                dim = d
            elif d != dim:
                raise ValueError(
                    f"embedding length {d} != store dimension {dim} (doc {doc.id})"
                )
        return dim

    async def insert(
        self,
        id: str,
        text: str,
        embedding: VectorLike,
        metadata: DocumentMetadata,
    ) -> None:
        doc = Document(id=id, text=text, embedding=_as_vector(embedding), metadata=metadata)
        async with self._lock.write():
            self._dimension = self._checked_dimension([doc])
            self._docs.append(doc)
            self._matrix = None

    async def insert_many(self, documents: Iterable[Document]) -> int:
        batch = [
            Document(d.id, d.text, _as_vector(d.embedding), d.metadata)
            for d in documents
        ]
        async with self._lock.write():
            self._dimension = self._checked_dimension(batch)
            self._docs.extend(batch)
            self._matrix = None
        return len(batch)

    async def search(self, query_embedding: VectorLike, top_k: int) -> List[SearchHit]:
        return await self._search(query_embedding, top_k, source_type=None)

    async def search_by_source(
        self, query_embedding: VectorLike, source_type: str, top_k: int
    ) -> List[SearchHit]:
        return await self._search(query_embedding, top_k, source_type=source_type)

    async def _search(
        self, query_embedding: VectorLike, top_k: int, source_type: Optional[str]
    ) -> List[SearchHit]:
        if top_k <= 0:
            return []
        async with self._lock.read():
            with timed(logger, "rag.search", n=len(self._docs), k=top_k, source=source_type):
                scores = cosine_scores(self._stacked(), query_embedding)
                if source_type is None:
                    idx = np.arange(len(self._docs))
                else:
                    idx = np.flatnonzero(
                        [d.metadata.source_type == source_type for d in self._docs]
                    )
                    scores = scores[idx]
                # Stable sort: ties stay in insertion order.
                order = np.argsort(-scores, kind="stable")[:top_k]
                return [
                    SearchHit(
                        text=self._docs[idx[i]].text,
                        similarity=float(scores[i]),
                        metadata=self._docs[idx[i]].metadata,
                    )
                    for i in order
                ]

    def _stacked(self) -> np.ndarray:
        if self._matrix is None:
            if self._docs:
                self._matrix = np.stack([d.embedding for d in self._docs]).astype(np.float64)
            else:
                self._matrix = np.zeros((0, self._dimension or 0), dtype=np.float64)
        return self._matrix

    async def count(self) -> int:
        async with self._lock.read():
            return len(self._docs)

    async def count_by_source(self, source_type: str) -> int:
        async with self._lock.read():
            return sum(1 for d in self._docs if d.metadata.source_type == source_type)

    async def all_documents(self) -> List[Document]:
        async with self._lock.read():
            return list(self._docs)
