"""
Shared fixtures and test doubles.

The environment is seeded before anything imports config.settings, which
exits the process on missing variables.
"""

import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("ALLOWED_ORIGIN", "http://localhost:5173")
os.environ.setdefault("RATE_LIMIT_TIMES", "100")
os.environ.setdefault("RATE_LIMIT_SECONDS", "60")
os.environ.setdefault("IDENTITY_PROJECT_ID", "test-project")
os.environ.setdefault("ANTHROPIC_API_URL", "https://anthropic.test/v1/messages")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-key")
os.environ.setdefault("ANTHROPIC_MODEL", "test-model")
os.environ.setdefault("CORPUS_LOAD_ON_STARTUP", "false")
os.environ.setdefault("PERSIST_DOCUMENTS", "false")

from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pytest
import pytest_asyncio

from core.entities import DocumentMetadata
from core.metrics import RequestCounter
from core.rag_pipeline import PipelineConfig, PipelineContext
from core.retry import RetryPolicy
from core.vector_store import VectorStore
from util.constants import SourceType
from util.errors import ProviderError


Scripted = Union[str, Exception, List[Union[str, Exception]]]


class FakeEmbedder:
    """Maps known texts to fixed vectors; everything else gets `default`."""

    def __init__(
        self,
        vectors: Optional[Dict[str, Sequence[float]]] = None,
        default: Sequence[float] = (0.0, 0.0, 1.0),
        fail: Optional[Exception] = None,
    ) -> None:
        self.vectors = {k: np.asarray(v, dtype=np.float32) for k, v in (vectors or {}).items()}
        self.default = np.asarray(default, dtype=np.float32)
        self.dimension = int(self.default.shape[0])
        self.fail = fail
        self.calls: List[str] = []

    async def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if self.fail is not None:
            raise self.fail
        return self.vectors.get(text, self.default)

    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        return [await self.embed(t) for t in texts]


class FakeCompletion:
    """
    Routes each prompt to a scripted reply by recognizing which pipeline step
    built it. A list script is consumed one entry per call (last one repeats).
    """

    def __init__(
        self,
        normalize: Scripted = ProviderError("normalize down"),
        select: Scripted = ProviderError("select down"),
        narration: Scripted = ProviderError("narration down"),
        answer: Union[List[str], Exception] = ProviderError("answer down"),
    ) -> None:
        self.scripts = {"normalize": normalize, "select": select, "narration": narration}
        self.answer = answer
        self.prompts: Dict[str, List[str]] = {"normalize": [], "select": [], "narration": [], "answer": []}

    @staticmethod
    def _kind(prompt: str) -> str:
        if "clinical terminology assistant" in prompt:
            return "normalize"
        if "rare disease diagnostic assistant" in prompt:
            return "select"
        if "thinking_steps" in prompt:
            return "narration"
        return "answer"

    async def complete(self, prompt: str, *, temperature: float = 0.2, max_tokens: int = 800) -> str:
        kind = self._kind(prompt)
        self.prompts[kind].append(prompt)
        script = self.scripts[kind]
        if isinstance(script, list):
            reply = script.pop(0) if len(script) > 1 else script[0]
        else:
            reply = script
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def stream(self, prompt: str, *, temperature: float = 0.2, max_tokens: int = 800):
        self.prompts["answer"].append(prompt)
        if isinstance(self.answer, Exception):
            raise self.answer
        for item in self.answer:
            if isinstance(item, Exception):
                raise item
            yield item


class ExplodingMetrics:
    def record_embedding(self, context: str) -> None:
        raise RuntimeError("metrics backend down")

    def record_completion(self, context: str) -> None:
        raise RuntimeError("metrics backend down")


async def no_sleep(seconds: float) -> None:
    return None


def corpus_meta(code: str) -> DocumentMetadata:
    return DocumentMetadata(
        source_type=SourceType.REFERENCE_CORPUS,
        source_id=code,
        file_name=None,
        orpha_code=code,
    )


def make_context(store, embedder, completion, metrics=None, **config) -> PipelineContext:
    defaults = dict(
        embeddings_enabled=True,
        top_k=5,
        dimension=embedder.dimension,
        narration_retry=RetryPolicy(max_attempts=3, base_delay_ms=10, max_jitter_ms=0),
    )
    defaults.update(config)
    return PipelineContext(
        store=store,
        embedder=embedder,
        completion=completion,
        metrics=metrics or RequestCounter(),
        config=PipelineConfig(**defaults),
        sleep=no_sleep,
    )


@pytest.fixture
def store() -> VectorStore:
    return VectorStore(dimension=3)


async def seed_corpus(s: VectorStore) -> VectorStore:
    """Three corpus documents with similarity ~[0.9, 0.5, 0.2] to QUERY_VEC."""
    for code, name, vec in SEEDED_DOCS:
        await s.insert(
            f"orphanet_{code}",
            f"Disease: {name} (Orpha: {code})\n\nClinical Signs and Symptoms:\n- Headache\n",
            vec,
            corpus_meta(code),
        )
    return s


@pytest_asyncio.fixture
async def seeded_store() -> VectorStore:
    return await seed_corpus(VectorStore(dimension=3))


def _unit_at(sim: float) -> List[float]:
    # Unit vector whose cosine with (1, 0, 0) is exactly `sim`.
    return [sim, float(np.sqrt(1.0 - sim * sim)), 0.0]


QUERY_VEC = [1.0, 0.0, 0.0]
SEEDED_DOCS = [
    ("58", "Alexander disease", _unit_at(0.9)),
    ("99", "Idiopathic intracranial hypertension", _unit_at(0.5)),
    ("77", "Migraine variant", _unit_at(0.2)),
]
