# core/entities.py
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import numpy as np


@dataclass(frozen=True)
class DocumentMetadata:
    source_type: str  # "orphadata" (reference corpus) or "user_file"
    source_id: str
    file_name: Optional[str] = None
    orpha_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_type": self.source_type,
            "source_id": self.source_id,
            "file_name": self.file_name,
            "orpha_code": self.orpha_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentMetadata":
        return cls(
            source_type=str(data.get("source_type") or ""),
            source_id=str(data.get("source_id") or ""),
            file_name=data.get("file_name"),
            orpha_code=data.get("orpha_code"),
        )


@dataclass
class Document:
    """
    Append-only unit of the vector store. `embedding` is a 1-D float32 vector
    whose length is fixed per store instance.
    """

    id: str
    text: str
    embedding: np.ndarray  # (d,) float32
    metadata: DocumentMetadata


@dataclass(frozen=True)
class SearchHit:
    text: str
    similarity: float
    metadata: DocumentMetadata


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class PipelineRequest:
    message: str
    user_id: str


@dataclass
class HpoAssociation:
    hpo_id: str = ""
    hpo_term: str = ""
    frequency: str = ""


@dataclass
class Disorder:
    orpha_code: str = ""
    name: str = ""
    hpo_associations: List[HpoAssociation] = field(default_factory=list)

    def to_embeddable_text(self) -> str:
        lines = [
            f"Disease: {self.name} (Orpha: {self.orpha_code})",
            "",
            "Clinical Signs and Symptoms:",
        ]
        for a in self.hpo_associations:
            lines.append(f"- {a.hpo_term} ({a.frequency}) [{a.hpo_id}]")
        return "\n".join(lines) + "\n"
