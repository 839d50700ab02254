# model/document.py
from typing import Optional
from pydantic import BaseModel
import numpy as np
from core.entities import Document, DocumentMetadata


class StoredMetadata(BaseModel):
    source_type: str
    source_id: str
    file_name: Optional[str] = None
    orpha_code: Optional[str] = None


class StoredDocument(BaseModel):
    """Wire shape of a vector-store document in Redis."""

    id: str
    text: str
    embedding: list[float]
    metadata: StoredMetadata

    @classmethod
    def from_document(cls, doc: Document) -> "StoredDocument":
        return cls(
            id=doc.id,
            text=doc.text,
            embedding=[float(x) for x in np.asarray(doc.embedding).reshape(-1)],
            metadata=StoredMetadata(**doc.metadata.to_dict()),
        )

    def to_document(self) -> Document:
        return Document(
            id=self.id,
            text=self.text,
            embedding=np.asarray(self.embedding, dtype=np.float32),
            metadata=DocumentMetadata.from_dict(self.metadata.model_dump()),
        )
