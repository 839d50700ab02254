"""
End-to-end tests for the RAG pipeline with fake providers.

Every run is checked against the stream shape:
thinking* -> response* -> source* -> exactly one done.
"""

import asyncio
import json

import pytest

from conftest import (
    QUERY_VEC,
    ExplodingMetrics,
    FakeCompletion,
    FakeEmbedder,
    make_context,
)
from core.entities import PipelineRequest
from core.rag_pipeline import RagPipeline
from core.streaming import EventChannel
from core.vector_store import VectorStore
from model.events import DoneEvent, ResponseEvent, SourceEvent, ThinkingEvent
from util.constants import FALLBACK_ANSWER, ThinkingSteps
from util.errors import MalformedProviderOutput, ProviderRateLimited

MESSAGE = "persistent headache and blurry vision"
CLINICAL = "Chronic cephalalgia with visual disturbance"

NORMALIZED = json.dumps(
    {"clinical_query": CLINICAL, "key_symptoms": ["Headache", "Blurred vision"]}
)


async def run_pipeline(ctx, message=MESSAGE):
    channel = EventChannel()
    await RagPipeline(ctx).run(PipelineRequest(message=message, user_id="u1"), channel)
    return [e async for e in channel]


def of_type(events, cls):
    return [e for e in events if isinstance(e, cls)]


def assert_stream_shape(events):
    order = {ThinkingEvent: 0, ResponseEvent: 1, SourceEvent: 2, DoneEvent: 3}
    phases = [order[type(e)] for e in events]
    assert phases == sorted(phases)
    assert len(of_type(events, DoneEvent)) == 1
    assert isinstance(events[-1], DoneEvent)


class TestScenarios:
    @pytest.mark.asyncio
    async def test_empty_store_and_dead_provider_degrades_to_apology(self):
        ctx = make_context(VectorStore(dimension=3), FakeEmbedder(), FakeCompletion())

        events = await run_pipeline(ctx)

        assert_stream_shape(events)
        assert len(of_type(events, ThinkingEvent)) >= 1
        assert of_type(events, SourceEvent) == []
        responses = of_type(events, ResponseEvent)
        assert [r.content for r in responses] == [FALLBACK_ANSWER]

    @pytest.mark.asyncio
    async def test_out_of_range_selection_clamps_to_top_hit(self, seeded_store):
        completion = FakeCompletion(
            normalize=NORMALIZED,
            select='{"selected_index": 99, "reasoning": "closest phenotype"}',
            narration='{"thinking_steps": ["Compared candidates"]}',
            answer=["Most likely condition: ", "Alexander disease"],
        )
        embedder = FakeEmbedder(vectors={CLINICAL: QUERY_VEC})
        ctx = make_context(seeded_store, embedder, completion)

        events = await run_pipeline(ctx)

        assert_stream_shape(events)
        steps = [e.step for e in of_type(events, ThinkingEvent)]
        assert "AI reasoning: closest phenotype" in steps
        answer_prompt = completion.prompts["answer"][0]
        assert "Condition: Alexander disease (Orpha: 58)" in answer_prompt
        assert "".join(r.content for r in of_type(events, ResponseEvent)) == (
            "Most likely condition: Alexander disease"
        )

    @pytest.mark.asyncio
    async def test_negative_selection_clamps_to_top_hit(self, seeded_store):
        completion = FakeCompletion(
            normalize=NORMALIZED,
            select='{"selected_index": -2, "reasoning": "x"}',
            answer=["ok"],
        )
        ctx = make_context(seeded_store, FakeEmbedder(vectors={CLINICAL: QUERY_VEC}), completion)

        await run_pipeline(ctx)

        assert "Condition: Alexander disease (Orpha: 58)" in completion.prompts["answer"][0]


class TestSteps:
    @pytest.mark.asyncio
    async def test_thinking_sequence_on_happy_path(self, seeded_store):
        completion = FakeCompletion(
            normalize=NORMALIZED,
            select='{"selected_index": 1, "reasoning": "raised pressure signs"}',
            narration='{"thinking_steps": ["Reviewed symptoms", "  ", "Matched phenotype"]}',
            answer=["Answer"],
        )
        ctx = make_context(seeded_store, FakeEmbedder(vectors={CLINICAL: QUERY_VEC}), completion)

        events = await run_pipeline(ctx)

        steps = [e.step for e in of_type(events, ThinkingEvent)]
        assert steps == [
            ThinkingSteps.ACKNOWLEDGE,
            ThinkingSteps.NORMALIZE,
            "Key symptoms: Headache, Blurred vision",
            ThinkingSteps.EMBED,
            ThinkingSteps.SEARCH,
            "Found 3 candidate conditions, selecting best match...",
            "AI reasoning: raised pressure signs",
            "Reviewed symptoms",
            "Matched phenotype",
        ]
        assert "Condition: Idiopathic intracranial hypertension (Orpha: 99)" in (
            completion.prompts["answer"][0]
        )

    @pytest.mark.asyncio
    async def test_normalization_failure_uses_raw_message(self, seeded_store):
        embedder = FakeEmbedder()
        completion = FakeCompletion(normalize="not json at all", answer=["A"])
        ctx = make_context(seeded_store, embedder, completion)

        events = await run_pipeline(ctx)

        assert embedder.calls == [MESSAGE]
        steps = [e.step for e in of_type(events, ThinkingEvent)]
        assert not any(s.startswith("Key symptoms") for s in steps)
        assert "KEY CLINICAL TERMS:\n" in completion.prompts["answer"][0]

    @pytest.mark.asyncio
    async def test_normalization_schema_mismatch_falls_back(self, seeded_store):
        embedder = FakeEmbedder()
        completion = FakeCompletion(normalize='{"clinical_query": ""}', answer=["A"])
        ctx = make_context(seeded_store, embedder, completion)

        await run_pipeline(ctx)

        assert embedder.calls == [MESSAGE]

    @pytest.mark.asyncio
    async def test_embedding_failure_uses_zero_vector(self, seeded_store):
        embedder = FakeEmbedder(fail=RuntimeError("model missing"))
        completion = FakeCompletion(normalize=NORMALIZED, answer=["A"])
        ctx = make_context(seeded_store, embedder, completion)

        events = await run_pipeline(ctx)

        assert_stream_shape(events)
        steps = [e.step for e in of_type(events, ThinkingEvent)]
        assert ThinkingSteps.EMBED_FAILED in steps
        sources = of_type(events, SourceEvent)
        assert len(sources) == 3
        assert all(s.relevance == 0.0 for s in sources)

    @pytest.mark.asyncio
    async def test_embeddings_disabled_skips_provider(self, seeded_store):
        embedder = FakeEmbedder()
        ctx = make_context(
            seeded_store, embedder, FakeCompletion(answer=["A"]), embeddings_enabled=False
        )

        await run_pipeline(ctx)

        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_selection_failure_defaults_to_top_hit(self, seeded_store):
        completion = FakeCompletion(
            normalize=NORMALIZED,
            select=MalformedProviderOutput("bad"),
            answer=["A"],
        )
        ctx = make_context(seeded_store, FakeEmbedder(vectors={CLINICAL: QUERY_VEC}), completion)

        events = await run_pipeline(ctx)

        assert "Condition: Alexander disease (Orpha: 58)" in completion.prompts["answer"][0]
        steps = [e.step for e in of_type(events, ThinkingEvent)]
        assert not any(s.startswith("AI reasoning") for s in steps)

    @pytest.mark.asyncio
    async def test_sources_follow_rank_not_selection(self, seeded_store):
        completion = FakeCompletion(
            normalize=NORMALIZED,
            select='{"selected_index": 2, "reasoning": "r"}',
            answer=["A"],
        )
        ctx = make_context(
            seeded_store, FakeEmbedder(vectors={CLINICAL: QUERY_VEC}), completion, max_sources=2
        )

        events = await run_pipeline(ctx)

        sources = of_type(events, SourceEvent)
        assert [s.source_id for s in sources] == ["58", "99"]
        assert sources[0].relevance == pytest.approx(0.9, abs=1e-5)
        assert all(s.source_type == "orphadata" for s in sources)

    @pytest.mark.asyncio
    async def test_empty_retrieval_prompt_says_no_match(self):
        completion = FakeCompletion(normalize=NORMALIZED, answer=["A"])
        ctx = make_context(VectorStore(dimension=3), FakeEmbedder(), completion)

        await run_pipeline(ctx)

        assert completion.prompts["select"] == []
        assert "No matching conditions found in the knowledge base." in (
            completion.prompts["answer"][0]
        )


class TestNarration:
    @pytest.mark.asyncio
    async def test_rate_limited_narration_retries_and_reports_wait(self, seeded_store):
        completion = FakeCompletion(
            narration=[
                ProviderRateLimited("429"),
                '{"thinking_steps": ["Step after retry"]}',
            ],
            answer=["A"],
        )
        ctx = make_context(seeded_store, FakeEmbedder(), completion)

        events = await run_pipeline(ctx)

        steps = [e.step for e in of_type(events, ThinkingEvent)]
        assert "Rate limit hit, retrying in 0s..." in steps
        assert steps[-1] == "Step after retry"
        assert len(completion.prompts["narration"]) == 2

    @pytest.mark.asyncio
    async def test_exhausted_narration_is_silently_omitted(self, seeded_store):
        completion = FakeCompletion(narration=ProviderRateLimited("429"), answer=["A"])
        ctx = make_context(seeded_store, FakeEmbedder(), completion)

        events = await run_pipeline(ctx)

        assert_stream_shape(events)
        assert len(completion.prompts["narration"]) == 3
        assert [r.content for r in of_type(events, ResponseEvent)] == ["A"]

    @pytest.mark.asyncio
    async def test_narration_steps_are_capped(self, seeded_store):
        many = json.dumps({"thinking_steps": [f"s{i}" for i in range(10)]})
        completion = FakeCompletion(narration=many, answer=["A"])
        ctx = make_context(seeded_store, FakeEmbedder(), completion, max_narration_steps=4)

        events = await run_pipeline(ctx)

        steps = [e.step for e in of_type(events, ThinkingEvent)]
        assert [s for s in steps if s.startswith("s")] == ["s0", "s1", "s2", "s3"]


class TestAnswer:
    @pytest.mark.asyncio
    async def test_fragments_forwarded_in_order(self, seeded_store):
        fragments = ["Most likely condition: X\n", "Reasons:\n", "- a\n"]
        ctx = make_context(seeded_store, FakeEmbedder(), FakeCompletion(answer=fragments))

        events = await run_pipeline(ctx)

        assert [r.content for r in of_type(events, ResponseEvent)] == fragments

    @pytest.mark.asyncio
    async def test_whitespace_is_folded_into_next_fragment(self, seeded_store):
        ctx = make_context(
            seeded_store, FakeEmbedder(), FakeCompletion(answer=["", "\n", "Hello", " ", "world"])
        )

        events = await run_pipeline(ctx)

        assert [r.content for r in of_type(events, ResponseEvent)] == ["\nHello", " world"]

    @pytest.mark.asyncio
    async def test_trailing_whitespace_is_kept(self, seeded_store):
        ctx = make_context(
            seeded_store, FakeEmbedder(), FakeCompletion(answer=["Hello", "\n", "\n"])
        )

        events = await run_pipeline(ctx)

        assert_stream_shape(events)
        responses = [r.content for r in of_type(events, ResponseEvent)]
        assert responses == ["Hello", "\n\n"]
        assert "".join(responses) == "Hello\n\n"

    @pytest.mark.asyncio
    async def test_blank_answer_gets_fallback(self, seeded_store):
        ctx = make_context(seeded_store, FakeEmbedder(), FakeCompletion(answer=["  ", "\n"]))

        events = await run_pipeline(ctx)

        assert [r.content for r in of_type(events, ResponseEvent)] == [FALLBACK_ANSWER]

    @pytest.mark.asyncio
    async def test_mid_stream_failure_keeps_partial_answer(self, seeded_store):
        ctx = make_context(
            seeded_store,
            FakeEmbedder(),
            FakeCompletion(answer=["Partial ", RuntimeError("connection reset")]),
        )

        events = await run_pipeline(ctx)

        assert_stream_shape(events)
        assert [r.content for r in of_type(events, ResponseEvent)] == ["Partial "]
        assert len(of_type(events, SourceEvent)) == 3


class TestPlumbing:
    @pytest.mark.asyncio
    async def test_metrics_failures_do_not_block(self, seeded_store):
        ctx = make_context(
            seeded_store,
            FakeEmbedder(),
            FakeCompletion(normalize=NORMALIZED, answer=["A"]),
            metrics=ExplodingMetrics(),
        )

        events = await run_pipeline(ctx)

        assert_stream_shape(events)
        assert [r.content for r in of_type(events, ResponseEvent)] == ["A"]

    @pytest.mark.asyncio
    async def test_counts_each_provider_call(self, seeded_store):
        ctx = make_context(
            seeded_store,
            FakeEmbedder(vectors={CLINICAL: QUERY_VEC}),
            FakeCompletion(
                normalize=NORMALIZED,
                select='{"selected_index": 0, "reasoning": "r"}',
                narration='{"thinking_steps": []}',
                answer=["A"],
            ),
        )

        await run_pipeline(ctx)

        # normalize + select + narration + answer
        assert ctx.metrics.completion_count == 4
        assert ctx.metrics.embedding_count == 1

    @pytest.mark.asyncio
    async def test_cancelled_run_stops_without_done(self, seeded_store):
        gate = asyncio.Event()

        class BlockingCompletion(FakeCompletion):
            async def complete(self, prompt, **kw):
                await gate.wait()
                return await super().complete(prompt, **kw)

        ctx = make_context(seeded_store, FakeEmbedder(), BlockingCompletion(answer=["A"]))
        channel = EventChannel()
        task = asyncio.create_task(
            RagPipeline(ctx).run(PipelineRequest(message=MESSAGE, user_id="u1"), channel)
        )
        await asyncio.sleep(0)
        channel.token.cancel()
        gate.set()
        await asyncio.wait_for(task, timeout=1)

        events = [e async for e in channel]
        assert channel.closed
        assert of_type(events, DoneEvent) == []
        assert of_type(events, ResponseEvent) == []

    @pytest.mark.asyncio
    async def test_cancel_mid_answer_closes_provider_stream(self, seeded_store):
        channel = EventChannel()

        class TrackingCompletion(FakeCompletion):
            closed = False

            async def stream(self, prompt, **kw):
                try:
                    yield "first"
                    channel.token.cancel()
                    yield "second"
                    yield "third"
                finally:
                    self.closed = True

        completion = TrackingCompletion()
        ctx = make_context(seeded_store, FakeEmbedder(), completion)

        await RagPipeline(ctx).run(PipelineRequest(message=MESSAGE, user_id="u1"), channel)

        assert completion.closed
        events = [e async for e in channel]
        assert of_type(events, DoneEvent) == []
        assert [r.content for r in of_type(events, ResponseEvent)] == ["first"]
