# model/api.py
from typing import Optional
from pydantic import BaseModel, Field, field_validator


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)

    @field_validator("message")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be blank")
        return v


class InspectRequest(BaseModel):
    query: str
    top_k: Optional[int] = None
    min_similarity: Optional[float] = None


class InspectHit(BaseModel):
    text: str
    similarity: float
    source_type: str
    source_id: str
    file_name: Optional[str] = None
    orpha_code: Optional[str] = None


class InspectResponse(BaseModel):
    query: str
    hits: list[InspectHit]


class RequestCounts(BaseModel):
    embedding: int
    completion: int
    total: int
    elapsed_seconds: int
    requests_per_minute: float


class StatsResponse(BaseModel):
    documents: int
    reference_documents: int
    requests: RequestCounts
