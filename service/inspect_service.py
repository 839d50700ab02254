# service/inspect_service.py
from core.embeddings import EmbeddingProvider
from core.metrics import MetricsSink
from core.vector_store import VectorStore
from model.api import InspectHit, InspectRequest, InspectResponse
from util.functions import preview
import logging

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 5
MAX_TOP_K = 25


class InspectService:
    """
    Debug view of raw retrieval: embed the query as-is and return the nearest
    documents, without any model passes.
    """

    def __init__(
        self, store: VectorStore, embedder: EmbeddingProvider, metrics: MetricsSink
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._metrics = metrics

    async def inspect(self, payload: InspectRequest) -> InspectResponse:
        query = payload.query.strip()
        requested = DEFAULT_TOP_K if payload.top_k is None else payload.top_k
        top_k = max(1, min(MAX_TOP_K, requested))
        min_similarity = payload.min_similarity or 0.0

        if not query:
            return InspectResponse(query=query, hits=[])

        self._metrics.record_embedding(f"inspect | query: {preview(query)}")
        try:
            embedding = await self._embedder.embed(query)
        except Exception as e:
            logger.error("inspect.embed.error err=%s", e)
            return InspectResponse(query=query, hits=[])

        try:
            results = await self._store.search(embedding, top_k)
        except Exception as e:
            logger.error("inspect.search.error err=%s", e)
            results = []

        hits = [
            InspectHit(
                text=h.text,
                similarity=h.similarity,
                source_type=h.metadata.source_type,
                source_id=h.metadata.source_id,
                file_name=h.metadata.file_name,
                orpha_code=h.metadata.orpha_code,
            )
            for h in results
            if h.similarity >= min_similarity
        ]
        logger.info("inspect.ok k=%d hits=%d", top_k, len(hits))
        return InspectResponse(query=query, hits=hits)
