# core/rag_pipeline.py
import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional
import numpy as np
from config.settings import settings
from core.completion import CompletionProvider, complete_json
from core.embeddings import EmbeddingProvider
from core.entities import PipelineRequest, SearchHit
from core.metrics import MetricsSink, NullMetrics
from core.prompts import (
    build_answer_prompt,
    build_enhanced_prompt,
    build_narration_prompt,
    build_normalize_prompt,
    build_select_prompt,
)
from core.retry import RetryPolicy, with_backoff
from core.streaming import EventChannel
from core.vector_store import VectorStore
from model.events import DoneEvent, Event, ResponseEvent, SourceEvent, ThinkingEvent
from model.pipeline import CandidateSelection, NarrationSteps, NormalizedQuery
from util.constants import FALLBACK_ANSWER, ThinkingSteps
from util.errors import PipelineCancelled
from util.functions import preview
import logging
from util.timing import timed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineConfig:
    embeddings_enabled: bool = True
    top_k: int = 10
    dimension: int = 384
    select_snippet_chars: int = 300
    context_snippet_chars: int = 400
    max_sources: int = 3
    max_narration_steps: int = 6
    narration_retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_settings(cls) -> "PipelineConfig":
        return cls(
            embeddings_enabled=settings.ENABLE_EMBEDDINGS,
            top_k=settings.RAG_TOP_K,
            dimension=settings.EMBEDDING_DIMENSION,
            select_snippet_chars=settings.SELECT_SNIPPET_CHARS,
            context_snippet_chars=settings.CONTEXT_SNIPPET_CHARS,
            max_sources=settings.MAX_SOURCES,
            max_narration_steps=settings.MAX_NARRATION_STEPS,
            narration_retry=RetryPolicy(
                max_attempts=settings.NARRATION_MAX_ATTEMPTS,
                base_delay_ms=settings.NARRATION_BASE_DELAY_MS,
                max_jitter_ms=settings.NARRATION_MAX_JITTER_MS,
            ),
        )


@dataclass
class PipelineContext:
    store: VectorStore
    embedder: EmbeddingProvider
    completion: CompletionProvider
    metrics: MetricsSink = field(default_factory=NullMetrics)
    config: PipelineConfig = field(default_factory=PipelineConfig)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


class RagPipeline:
    """
    Symptom query -> streamed answer.

    Steps run strictly in order and each one owns its fallback, so the only
    ways a run ends without a Done event are explicit cancellation or the
    task itself being cancelled. Events go to a single EventChannel:
      thinking* -> response* -> source* -> done
    """

    def __init__(self, ctx: PipelineContext) -> None:
        self._ctx = ctx
        self._cfg = ctx.config

    async def run(self, request: PipelineRequest, channel: EventChannel) -> None:
        cancelled = False
        try:
            await self._steps(request, channel)
        except PipelineCancelled:
            cancelled = True
            logger.info("rag.cancelled user=%s", request.user_id)
        except asyncio.CancelledError:
            cancelled = True
            raise
        except Exception:
            # Steps guard their own provider calls; this is a bug, not a degraded path.
            logger.exception("rag.unexpected user=%s", request.user_id)
        finally:
            if not cancelled and not channel.closed:
                await channel.emit(DoneEvent())
            channel.close()

    async def _steps(self, request: PipelineRequest, channel: EventChannel) -> None:
        message = request.message
        logger.info("rag.start user=%s q=%r", request.user_id, preview(message))

        with timed(logger, "rag.pipeline", user=request.user_id):
            await self._emit(channel, ThinkingEvent(step=ThinkingSteps.ACKNOWLEDGE))
            await self._emit(channel, ThinkingEvent(step=ThinkingSteps.NORMALIZE))
            normalized = await self._normalize(message, channel)

            await self._emit(channel, ThinkingEvent(step=ThinkingSteps.EMBED))
            query_vec = await self._embed(normalized, channel)

            await self._emit(channel, ThinkingEvent(step=ThinkingSteps.SEARCH))
            hits = await self._retrieve(query_vec)
            await self._emit(
                channel,
                ThinkingEvent(
                    step=f"Found {len(hits)} candidate conditions, selecting best match..."
                ),
            )

            selected = await self._select(message, hits, channel)
            context_prompt = build_enhanced_prompt(
                message,
                normalized,
                hits,
                selected,
                self._cfg.context_snippet_chars,
            )

            await self._narrate(context_prompt, message, channel)
            await self._answer(context_prompt, message, channel)

            for hit in hits[: self._cfg.max_sources]:
                await self._emit(
                    channel,
                    SourceEvent(
                        source_type=hit.metadata.source_type,
                        source_id=hit.metadata.source_id,
                        relevance=float(hit.similarity),
                    ),
                )
        logger.info("rag.done user=%s hits=%d", request.user_id, len(hits))

    # ---------------- Steps ----------------

    async def _normalize(self, message: str, channel: EventChannel) -> NormalizedQuery:
        self._record("completion", "normalize", message)
        try:
            with timed(logger, "rag.normalize"):
                normalized = await complete_json(
                    self._ctx.completion,
                    build_normalize_prompt(message),
                    NormalizedQuery,
                    temperature=0.1,
                )
        except Exception as e:
            logger.warning("rag.normalize.fallback err=%s", e)
            return NormalizedQuery.fallback(message)

        logger.info("rag.normalize.ok q=%r", preview(normalized.clinical_query, 120))
        if normalized.key_symptoms:
            await self._emit(
                channel,
                ThinkingEvent(step=f"Key symptoms: {', '.join(normalized.key_symptoms)}"),
            )
        return normalized

    async def _embed(self, normalized: NormalizedQuery, channel: EventChannel) -> np.ndarray:
        zero = np.zeros(self._cfg.dimension, dtype=np.float32)
        if not self._cfg.embeddings_enabled:
            return zero
        self._record("embedding", "query", normalized.clinical_query)
        try:
            return await self._ctx.embedder.embed(normalized.clinical_query)
        except Exception as e:
            logger.error("rag.embed.failed err=%s", e)
        await self._emit(channel, ThinkingEvent(step=ThinkingSteps.EMBED_FAILED))
        return zero

    async def _retrieve(self, query_vec: np.ndarray) -> List[SearchHit]:
        try:
            return await self._ctx.store.search(query_vec, self._cfg.top_k)
        except Exception as e:
            logger.error("rag.search.failed err=%s", e)
            return []

    async def _select(
        self, message: str, hits: List[SearchHit], channel: EventChannel
    ) -> Optional[SearchHit]:
        if not hits:
            return None
        self._record("completion", "select", message)
        try:
            with timed(logger, "rag.select", n=len(hits)):
                raw = await complete_json(
                    self._ctx.completion,
                    build_select_prompt(message, hits, self._cfg.select_snippet_chars),
                    CandidateSelection,
                    temperature=0.1,
                )
        except Exception as e:
            logger.warning("rag.select.fallback err=%s", e)
            return hits[0]

        selection = raw.clamped(len(hits))
        if selection.selected_index != raw.selected_index:
            logger.warning(
                "rag.select.clamped index=%d n=%d", raw.selected_index, len(hits)
            )
        logger.info("rag.select.ok index=%d", selection.selected_index)
        if selection.reasoning.strip():
            await self._emit(
                channel, ThinkingEvent(step=f"AI reasoning: {selection.reasoning.strip()}")
            )
        return hits[selection.selected_index]

    async def _narrate(self, context_prompt: str, message: str, channel: EventChannel) -> None:
        prompt = build_narration_prompt(context_prompt, message)

        async def _call() -> NarrationSteps:
            self._record("completion", "narration", message)
            return await complete_json(
                self._ctx.completion, prompt, NarrationSteps, temperature=0.2
            )

        async def _on_wait(delay_ms: int, attempt: int) -> None:
            await self._emit(
                channel,
                ThinkingEvent(step=f"Rate limit hit, retrying in {delay_ms // 1000}s..."),
            )

        async def _sleep(seconds: float) -> None:
            await self._ctx.sleep(seconds)
            channel.token.raise_if_cancelled()

        try:
            steps = await with_backoff(
                _call,
                self._cfg.narration_retry,
                on_wait=_on_wait,
                sleep=_sleep,
                label="narration",
            )
        except PipelineCancelled:
            raise
        except Exception as e:
            # Decorative step: omitted silently from the stream.
            logger.warning("rag.narration.skipped err=%s", e)
            return

        for step in steps.thinking_steps[: self._cfg.max_narration_steps]:
            if step.strip():
                await self._emit(channel, ThinkingEvent(step=step.strip()))

    async def _answer(self, context_prompt: str, message: str, channel: EventChannel) -> None:
        prompt = build_answer_prompt(context_prompt, message)
        self._record("completion", "answer", message)
        emitted = 0
        pending = ""
        try:
            with timed(logger, "rag.answer"):
                # aclosing: a cancelled run shuts the provider stream down immediately.
                async with aclosing(
                    self._ctx.completion.stream(prompt, temperature=0.2)
                ) as fragments:
                    async for fragment in fragments:
                        if not fragment:
                            continue
                        # Hold whitespace until real text arrives so a blank answer emits nothing.
                        pending += fragment
                        if not pending.strip():
                            continue
                        await self._emit(channel, ResponseEvent(content=pending))
                        pending = ""
                        emitted += 1
        except PipelineCancelled:
            raise
        except Exception as e:
            if emitted:
                logger.error("rag.answer.truncated fragments=%d err=%s", emitted, e)
            else:
                logger.error("rag.answer.failed err=%s", e)

        if not emitted:
            await self._emit(channel, ResponseEvent(content=FALLBACK_ANSWER))
        elif pending:
            # Trailing whitespace belongs to the answer once real text was sent.
            await self._emit(channel, ResponseEvent(content=pending))

    # ---------------- Plumbing ----------------

    async def _emit(self, channel: EventChannel, event: Event) -> None:
        channel.token.raise_if_cancelled()
        await channel.emit(event)

    def _record(self, kind: str, step: str, message: str) -> None:
        ctx = f"{step} | query: {preview(message)}"
        try:
            if kind == "embedding":
                self._ctx.metrics.record_embedding(ctx)
            else:
                self._ctx.metrics.record_completion(ctx)
        except Exception as e:
            logger.warning("metrics.record.failed kind=%s err=%s", kind, e)
