# model/pipeline.py
from typing import List
from pydantic import BaseModel, Field, field_validator


class NormalizedQuery(BaseModel):
    clinical_query: str = Field(min_length=1)
    key_symptoms: List[str] = Field(default_factory=list)

    @field_validator("key_symptoms")
    @classmethod
    def _drop_blank(cls, v: List[str]) -> List[str]:
        return [s.strip() for s in v if s and s.strip()]

    @classmethod
    def fallback(cls, raw_message: str) -> "NormalizedQuery":
        # Bypass validation: an empty raw message still has to round-trip verbatim.
        return cls.model_construct(clinical_query=raw_message, key_symptoms=[])


class CandidateSelection(BaseModel):
    """
    Model-chosen best hit. `selected_index` is 0-based into the hit list as
    presented to the model; use `clamped()` before indexing.
    """

    selected_index: int
    reasoning: str = ""

    def clamped(self, n_hits: int) -> "CandidateSelection":
        if 0 <= self.selected_index < n_hits:
            return self
        return CandidateSelection(selected_index=0, reasoning=self.reasoning)


class NarrationSteps(BaseModel):
    thinking_steps: List[str] = Field(default_factory=list)
