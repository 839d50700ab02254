# service/rag_state.py
from dataclasses import dataclass
from typing import Optional
from config.settings import settings
from core.anthropic_client import AnthropicCompletionProvider
from core.completion import CompletionProvider
from core.corpus_loader import load_corpus_from_path
from core.embeddings import EmbeddingProvider, SentenceTransformerEmbeddings
from core.metrics import RequestCounter
from core.rag_pipeline import PipelineConfig, PipelineContext
from core.vector_store import VectorStore
from repository.document_repository import DocumentRepository
import logging
from util.timing import timed

logger = logging.getLogger(__name__)


@dataclass
class RagState:
    """Process-wide collaborators shared by every request (lives on app.state)."""

    store: VectorStore
    embedder: EmbeddingProvider
    completion: CompletionProvider
    metrics: RequestCounter
    config: PipelineConfig
    repository: Optional[DocumentRepository] = None

    def pipeline_context(self) -> PipelineContext:
        return PipelineContext(
            store=self.store,
            embedder=self.embedder,
            completion=self.completion,
            metrics=self.metrics,
            config=self.config,
        )


def build_state() -> RagState:
    config = PipelineConfig.from_settings()
    return RagState(
        store=VectorStore(dimension=config.dimension),
        embedder=SentenceTransformerEmbeddings(),
        completion=AnthropicCompletionProvider(),
        metrics=RequestCounter(),
        config=config,
        repository=DocumentRepository() if settings.PERSIST_DOCUMENTS else None,
    )


async def warm_store(state: RagState) -> int:
    """
    Hydrate from persisted documents, then bulk-load the reference corpus if
    it is still missing. Returns the store size. Never raises: a cold or
    partially loaded store still serves requests.
    """
    with timed(logger, "store.warm"):
        if state.repository is not None:
            try:
                docs = await state.repository.load_all()
                if docs:
                    await state.store.insert_many(docs)
                logger.info("store.hydrate docs=%d", len(docs))
            except Exception as e:
                logger.error("store.hydrate.error err=%s", e)

        if settings.CORPUS_LOAD_ON_STARTUP:
            try:
                await load_corpus_from_path(
                    state.store,
                    state.embedder,
                    settings.CORPUS_DATASET_PATH,
                    limit=settings.CORPUS_LIMIT,
                    batch_size=settings.CORPUS_BATCH_SIZE,
                    repository=state.repository,
                    metrics=state.metrics,
                )
            except Exception as e:
                logger.error("corpus.load.error err=%s", e)

        if state.repository is not None:
            await backfill_mirror(state.store, state.repository)

    return await state.store.count()


async def backfill_mirror(store: VectorStore, repository: DocumentRepository) -> int:
    """
    Re-save every in-memory document when the Redis mirror holds fewer than
    the store (e.g. a corpus batch whose save failed). Returns docs written.
    """
    try:
        persisted = await repository.count()
        in_memory = await store.count()
        if persisted >= in_memory:
            return 0
        saved = await repository.save_many(await store.all_documents())
        logger.info("store.mirror.backfill persisted=%d saved=%d", persisted, saved)
        return saved
    except Exception as e:
        logger.error("store.mirror.error err=%s", e)
        return 0
