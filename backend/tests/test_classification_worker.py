"""
Unit tests for ClassificationWorker.

Tests consensus classification of chunks, idempotent redelivery, leftover
cleanup, provider failure handling and cooperative cancellation.
"""

import pytest
import pytest_asyncio
from fakes import FakeProvider, classification

from ideascan.core.database.models import (
    SCAN_CLASSIFYING,
    SCAN_FAILED,
    Classification,
)
from ideascan.core.exceptions import PermanentProviderError, TransientProviderError
from ideascan.core.models.llm_models import ClassificationRequest
from ideascan.core.pipeline.classification_worker import (
    CHUNK_FAILURE_CATEGORY,
    ClassificationWorker,
)

VOTES = {
    "Strong pain point": (classification("keep", 0.9), classification("keep", 0.85)),
    "Split opinion": (classification("keep", 0.9), classification("skip", 0.7)),
    "Meme post": (classification("skip", 0.9), classification("skip", 0.95)),
}


def scripted_providers():
    return [
        FakeProvider("anthropic-haiku", classify=lambda r: VOTES[r.title][0]),
        FakeProvider("openai-gpt4-mini", classify=lambda r: VOTES[r.title][1]),
    ]


@pytest.fixture
def providers():
    return scripted_providers()


@pytest.fixture
def worker(db, state, providers, retry_policy):
    return ClassificationWorker(
        database=db,
        state=state,
        provider_factory=lambda: providers,
        retry_policy=retry_policy,
    )


@pytest_asyncio.fixture
async def classifying_scan(seed):
    topic_id = await seed.topic()
    scan_id = await seed.scan(topic_id, status=SCAN_CLASSIFYING)
    item_ids = [await seed.item(topic_id, scan_id, title=title) for title in VOTES]
    return scan_id, item_ids


class TestClassifyChunk:
    """Test chunk classification."""

    @pytest.mark.asyncio
    async def test_classifies_each_item(self, worker, seed, classifying_scan):
        """Test every item gets a terminal decision from both providers."""
        scan_id, (keep_id, split_id, meme_id) = classifying_scan

        stats = await worker.classify_chunk(scan_id, [keep_id, split_id, meme_id])

        assert stats["classified"] == 3
        keep = await seed.classification_for(keep_id)
        assert keep.final_decision == "keep"
        assert keep.combined_score == pytest.approx(1.0)
        assert keep.primary_provider == "anthropic-haiku"
        assert keep.secondary_provider == "openai-gpt4-mini"
        assert keep.primary_completed and keep.secondary_completed

        split = await seed.classification_for(split_id)
        assert split.final_decision == "borderline"
        assert split.combined_score == pytest.approx(0.45)

        meme = await seed.classification_for(meme_id)
        assert meme.final_decision == "discard"
        assert (await seed.get_scan(scan_id)).items_classified == 3

    @pytest.mark.asyncio
    async def test_redelivered_chunk_is_idempotent(self, worker, seed, providers, classifying_scan):
        """Test processing the same chunk twice creates no duplicates."""
        scan_id, item_ids = classifying_scan

        await worker.classify_chunk(scan_id, item_ids)
        stats = await worker.classify_chunk(scan_id, item_ids)

        assert stats["already_classified"] == 3
        assert await seed.count(Classification) == 3
        assert (await seed.get_scan(scan_id)).items_classified == 3
        # The second delivery never reached the models
        assert len(providers[0].classify_calls) == 3

    @pytest.mark.asyncio
    async def test_pending_leftover_replaced(self, worker, seed, classifying_scan):
        """Test a non-terminal row from a crashed attempt is recreated."""
        scan_id, item_ids = classifying_scan
        await seed.classification(item_ids[0], scan_id, "pending")

        await worker.classify_chunk(scan_id, item_ids[:1])

        assert await seed.count(Classification) == 1
        assert (await seed.classification_for(item_ids[0])).final_decision == "keep"

    @pytest.mark.asyncio
    async def test_missing_item_skipped(self, worker, classifying_scan):
        """Test an item id that no longer exists is counted as missing."""
        scan_id, _ = classifying_scan

        stats = await worker.classify_chunk(scan_id, ["00000000-0000-0000-0000-000000000000"])

        assert stats["missing"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_scan_stops_chunk(self, worker, seed, providers, classifying_scan):
        """Test a scan that left classifying is not written to."""
        scan_id, item_ids = classifying_scan
        await seed.update_scan(scan_id, status=SCAN_FAILED)

        stats = await worker.classify_chunk(scan_id, item_ids)

        assert stats["scan_inactive"] == 3
        assert await seed.count(Classification) == 0
        assert providers[0].classify_calls == []

    @pytest.mark.asyncio
    async def test_providers_closed(self, worker, providers, classifying_scan):
        """Test provider clients are released after the chunk."""
        scan_id, item_ids = classifying_scan

        await worker.classify_chunk(scan_id, item_ids)

        assert all(p.closed for p in providers)


class TestProviderFailures:
    """Test fail-open behavior when models fail."""

    @pytest.mark.asyncio
    async def test_both_permanent_failures_discard(self, db, state, seed, retry_policy, sleep):
        """Test two permanently failing models still yield a terminal discard."""
        providers = [
            FakeProvider("anthropic-haiku", classify=lambda r: PermanentProviderError("bad key", status_code=401)),
            FakeProvider("openai-gpt4-mini", classify=lambda r: PermanentProviderError("bad key", status_code=401)),
        ]
        worker = ClassificationWorker(db, state, lambda: providers, retry_policy)
        topic_id = await seed.topic()
        scan_id = await seed.scan(topic_id, status=SCAN_CLASSIFYING)
        item_id = await seed.item(topic_id, scan_id)

        stats = await worker.classify_chunk(scan_id, [item_id])

        assert stats["classified"] == 1
        row = await seed.classification_for(item_id)
        assert row.final_decision == "discard"
        assert row.combined_score == 0.0
        assert not row.primary_completed and not row.secondary_completed
        assert "bad key" in row.primary_reasoning
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_one_model_exhausts_retries(self, db, state, seed, retry_policy, sleep):
        """Test the partial-failure path when one model keeps timing out."""
        providers = [
            FakeProvider("anthropic-haiku", classify=lambda r: classification("keep", 0.9)),
            FakeProvider("openai-gpt4-mini", classify=lambda r: TransientProviderError("timeout")),
        ]
        worker = ClassificationWorker(db, state, lambda: providers, retry_policy)
        topic_id = await seed.topic()
        scan_id = await seed.scan(topic_id, status=SCAN_CLASSIFYING)
        item_id = await seed.item(topic_id, scan_id)

        await worker.classify_chunk(scan_id, [item_id])

        row = await seed.classification_for(item_id)
        assert row.final_decision == "borderline"
        assert row.combined_score == pytest.approx(0.45)
        assert row.primary_completed and not row.secondary_completed
        assert len(providers[1].classify_calls) == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_transient_then_success(self, db, state, seed, retry_policy):
        """Test a single transient failure is absorbed by the retry."""
        providers = [
            FakeProvider("anthropic-haiku", classify=[TransientProviderError("529"), classification("keep", 0.7)]),
            FakeProvider("openai-gpt4-mini", classify=lambda r: classification("keep", 0.8)),
        ]
        worker = ClassificationWorker(db, state, lambda: providers, retry_policy)
        topic_id = await seed.topic()
        scan_id = await seed.scan(topic_id, status=SCAN_CLASSIFYING)
        item_id = await seed.item(topic_id, scan_id)

        await worker.classify_chunk(scan_id, [item_id])

        row = await seed.classification_for(item_id)
        assert row.final_decision == "keep"
        assert row.combined_score == pytest.approx(0.75)

    @pytest.mark.asyncio
    async def test_no_providers_writes_fallback(self, db, state, seed, retry_policy):
        """Test an unexpected chunk failure writes a terminal discard per item."""
        def broken_factory():
            raise ValueError("Unknown LLM provider 'gpt-9'")

        worker = ClassificationWorker(db, state, broken_factory, retry_policy)
        topic_id = await seed.topic()
        scan_id = await seed.scan(topic_id, status=SCAN_CLASSIFYING)
        item_ids = [await seed.item(topic_id, scan_id) for _ in range(2)]

        stats = await worker.classify_chunk(scan_id, item_ids)

        assert stats["fallback"] == 2
        for item_id in item_ids:
            row = await seed.classification_for(item_id)
            assert row.final_decision == "discard"
            assert row.primary_category == CHUNK_FAILURE_CATEGORY
        assert (await seed.get_scan(scan_id)).items_classified == 2

    @pytest.mark.asyncio
    async def test_fallback_never_replaces_terminal(self, worker, seed, classifying_scan):
        """Test a late fallback leaves an existing decision untouched."""
        scan_id, item_ids = classifying_scan
        await seed.classification(item_ids[0], scan_id, "keep", score=0.9)

        outcome = await worker.write_fallback(scan_id, item_ids[0], CHUNK_FAILURE_CATEGORY, "late")

        assert outcome == "already_classified"
        assert (await seed.classification_for(item_ids[0])).final_decision == "keep"


class TestEvaluate:
    """Test side-effect-free evaluation."""

    @pytest.mark.asyncio
    async def test_single_provider_path(self, worker):
        """Test one configured provider uses the single-provider path."""
        provider = FakeProvider("anthropic-haiku", classify=lambda r: classification("keep", 0.7))
        evaluation = await worker.evaluate([provider], ClassificationRequest(topic="SaaS", title="t"))

        assert evaluation.consensus.path == "single-provider"
        assert evaluation.consensus.decision == "keep"
        assert evaluation.consensus.score == pytest.approx(0.7)
