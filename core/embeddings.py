# core/embeddings.py
import asyncio
from functools import lru_cache
from typing import List, Protocol, Sequence, runtime_checkable
import numpy as np
from sentence_transformers import SentenceTransformer
from config.settings import settings
from util.errors import ProviderError
from util.timing import timed
import logging

logger = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Text -> fixed-length vector. `dimension` is the vector length."""

    dimension: int

    async def embed(self, text: str) -> np.ndarray: ...

    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]: ...


@lru_cache(maxsize=2)
def _load_model(name: str) -> SentenceTransformer:
    """
    Lazy-load the sentence embedding model once per process.

    CPU-only; all-MiniLM-L6-v2 downloads ~90MB on first use and is cached by
    the sentence-transformers hub cache afterwards.
    """
    with timed(logger, "embed.model.load", model=name):
        model = SentenceTransformer(name, device="cpu")
    return model


class SentenceTransformerEmbeddings:
    def __init__(
        self,
        model_name: str = settings.EMBEDDING_MODEL_NAME,
        dimension: int = settings.EMBEDDING_DIMENSION,
        batch_size: int = 64,
    ) -> None:
        self.model_name = model_name
        self.dimension = dimension
        self._batch_size = batch_size

    def _encode(self, texts: List[str]) -> np.ndarray:
        model = _load_model(self.model_name)
        vecs = model.encode(
            texts,
            batch_size=self._batch_size,
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        return vecs.astype(np.float32, copy=False)

    async def embed(self, text: str) -> np.ndarray:
        vecs = await self.embed_batch([text])
        return vecs[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        if not texts:
            return []
        with timed(logger, "embed.encode", n=len(texts), batch=self._batch_size):
            try:
                # Encoding is CPU-bound; keep it off the event loop.
                vecs = await asyncio.to_thread(self._encode, list(texts))
            except Exception as e:
                raise ProviderError(f"embedding failed: {type(e).__name__}: {e}") from e
        if vecs.ndim != 2 or vecs.shape[1] != self.dimension:
            raise ProviderError(
                f"embedding dimension {vecs.shape[-1]} != configured {self.dimension}"
            )
        logger.debug("embed.batch n=%d d=%d", vecs.shape[0], vecs.shape[1])
        return [row for row in vecs]
