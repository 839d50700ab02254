# core/corpus_loader.py
from pathlib import Path
from typing import List, Optional, Sequence
import xml.etree.ElementTree as ET
from core.embeddings import EmbeddingProvider
from core.entities import Disorder, Document, DocumentMetadata, HpoAssociation
from core.metrics import MetricsSink, NullMetrics
from core.vector_store import VectorStore
from repository.document_repository import DocumentRepository
from util.constants import SourceType
import logging
from util.timing import timed

logger = logging.getLogger(__name__)


def _text(elem: Optional[ET.Element]) -> str:
    return (elem.text or "").strip() if elem is not None else ""


def _disorder_from_element(elem: ET.Element) -> Disorder:
    d = Disorder(orpha_code=_text(elem.find("OrphaCode")), name=_text(elem.find("Name")))
    for assoc in elem.iter("HPODisorderAssociation"):
        d.hpo_associations.append(
            HpoAssociation(
                hpo_id=_text(assoc.find("HPO/HPOId")),
                hpo_term=_text(assoc.find("HPO/HPOTerm")),
                frequency=_text(assoc.find("HPOFrequency/Name")),
            )
        )
    return d


def parse_orphanet_xml(path: str | Path, limit: Optional[int] = None) -> List[Disorder]:
    """
    Stream-parse an Orphanet phenotype export (en_product4.xml).

    Only disorders with at least one HPO association are kept. Parsing stops
    after `limit` disorders. A malformed document ends parsing early; what was
    read up to that point is returned.
    """
    disorders: List[Disorder] = []
    with timed(logger, "corpus.parse", path=path):
        try:
            for _, elem in ET.iterparse(str(path), events=("end",)):
                if elem.tag != "Disorder":
                    continue
                d = _disorder_from_element(elem)
                elem.clear()
                if not d.hpo_associations:
                    continue
                disorders.append(d)
                if limit is not None and len(disorders) >= limit:
                    logger.info("corpus.parse.limit n=%d", limit)
                    break
        except ET.ParseError as e:
            logger.error("corpus.parse.error pos=%s err=%s", getattr(e, "position", None), e)
    logger.info("corpus.parse.ok disorders=%d", len(disorders))
    return disorders


def _document_for(disorder: Disorder, text: str, embedding) -> Document:
    return Document(
        id=f"orphanet_{disorder.orpha_code}",
        text=text,
        embedding=embedding,
        metadata=DocumentMetadata(
            source_type=SourceType.REFERENCE_CORPUS,
            source_id=disorder.orpha_code,
            file_name=None,
            orpha_code=disorder.orpha_code,
        ),
    )


async def load_corpus(
    store: VectorStore,
    embedder: EmbeddingProvider,
    disorders: Sequence[Disorder],
    *,
    batch_size: int = 50,
    repository: Optional[DocumentRepository] = None,
    metrics: Optional[MetricsSink] = None,
) -> int:
    """
    Embed and insert reference-corpus disorders. Idempotent: when the store
    already holds reference documents, returns that count and inserts nothing.
    Returns the number of reference documents now in the store.
    """
    existing = await store.count_by_source(SourceType.REFERENCE_CORPUS)
    if existing > 0:
        logger.info("corpus.load.skip existing=%d", existing)
        return existing

    sink = metrics or NullMetrics()
    total_batches = (len(disorders) + batch_size - 1) // batch_size
    added = 0
    with timed(logger, "corpus.load", disorders=len(disorders)):
        for b, start in enumerate(range(0, len(disorders), batch_size), start=1):
            chunk = disorders[start : start + batch_size]
            texts = [d.to_embeddable_text() for d in chunk]
            sink.record_embedding(f"corpus batch {b}/{total_batches}")
            vectors = await embedder.embed_batch(texts)
            docs = [_document_for(d, t, v) for d, t, v in zip(chunk, texts, vectors)]
            added += await store.insert_many(docs)
            if repository is not None:
                try:
                    await repository.save_many(docs)
                except Exception as e:
                    logger.error("corpus.persist.error batch=%d err=%s", b, e)
            logger.info(
                "corpus.load.batch %d/%d processed=%d/%d",
                b,
                total_batches,
                added,
                len(disorders),
            )
    logger.info("corpus.load.ok added=%d", added)
    return added


async def load_corpus_from_path(
    store: VectorStore,
    embedder: EmbeddingProvider,
    path: str | Path,
    *,
    limit: Optional[int] = None,
    batch_size: int = 50,
    repository: Optional[DocumentRepository] = None,
    metrics: Optional[MetricsSink] = None,
) -> int:
    """
    Parse + load, skipping the parse entirely when the corpus is already present.
    """
    existing = await store.count_by_source(SourceType.REFERENCE_CORPUS)
    if existing > 0:
        logger.info("corpus.load.skip existing=%d", existing)
        return existing
    if not Path(path).is_file():
        logger.warning("corpus.missing path=%s", path)
        return 0
    disorders = parse_orphanet_xml(path, limit)
    return await load_corpus(
        store,
        embedder,
        disorders,
        batch_size=batch_size,
        repository=repository,
        metrics=metrics,
    )
