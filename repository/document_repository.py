# repository/document_repository.py
from typing import Awaitable, Callable, Final, List, Optional, Sequence
from redis.asyncio import Redis
from config.cache import get_redis
from core.entities import Document
from model.document import StoredDocument
from repository.namespaces import DOCUMENTS
import logging

logger = logging.getLogger(__name__)

KEY: Final[str] = DOCUMENTS


class DocumentRepository:
    """
    Flow:
    - Mirror every vector-store insert into one Redis hash (doc id -> JSON).
    - On startup, hydrate the in-memory store from the hash so the corpus is
      not re-embedded after a restart.
    - No TTL: documents are append-only and live as long as the Redis data.
    """

    def __init__(
        self, client_factory: Optional[Callable[[], Awaitable[Redis]]] = None
    ) -> None:
        self._client_factory = client_factory or get_redis

    async def _client(self) -> Redis:
        return await self._client_factory()

    async def save_many(self, docs: Sequence[Document]) -> int:
        if not docs:
            return 0
        r = await self._client()
        mapping = {
            d.id: StoredDocument.from_document(d).model_dump_json().encode("utf-8")
            for d in docs
        }
        await r.hset(KEY, mapping=mapping)
        return len(mapping)

    async def load_all(self) -> List[Document]:
        r = await self._client()
        raw = await r.hgetall(KEY)
        out: List[Document] = []
        for _, val in (raw or {}).items():
            try:
                out.append(StoredDocument.model_validate_json(val).to_document())
            except Exception:
                # Skip malformed entries instead of failing the whole hydrate
                logger.warning("documents.load.malformed")
                continue
        return out

    async def count(self) -> int:
        r = await self._client()
        return int(await r.hlen(KEY) or 0)
