"""
Unit tests for ExtractionWorker.

Tests idea persistence, the per-item idea cap, duplicate-delivery safety,
the network-error retry path and the zero-idea fallback.
"""

import pytest
import pytest_asyncio
from fakes import FakeProvider, ideas_response

from ideascan.core.database.models import SCAN_COMPLETED, SCAN_EXTRACTING, Idea
from ideascan.core.exceptions import PermanentProviderError
from ideascan.core.models.llm_models import ExtractionResponse
from ideascan.core.pipeline.extraction_worker import ExtractionWorker


@pytest.fixture
def sonnet():
    return FakeProvider("claude-sonnet", extract=lambda r: ideas_response(f"Tool for {r.title}"), supports_extraction=True)


@pytest.fixture
def worker(db, state, sonnet, retry_policy):
    return ExtractionWorker(db, state, lambda: sonnet, retry_policy, max_ideas=5)


@pytest_asyncio.fixture
async def extracting_scan(seed):
    """A scan in extracting with one keep, one borderline and one discard item."""
    topic_id = await seed.topic()
    scan_id = await seed.scan(topic_id, status=SCAN_EXTRACTING)
    items = {}
    for decision in ("keep", "borderline", "discard"):
        item_id = await seed.item(topic_id, scan_id, title=f"{decision} post")
        await seed.classification(item_id, scan_id, decision)
        items[decision] = item_id
    await seed.reply(items["keep"], "c1", "I would pay for this", upvotes=9)
    return scan_id, items


class TestExtractChunk:
    """Test chunk extraction."""

    @pytest.mark.asyncio
    async def test_extracts_eligible_items(self, worker, seed, sonnet, extracting_scan):
        """Test keep and borderline items get ideas; discard is skipped."""
        scan_id, items = extracting_scan

        stats = await worker.extract_chunk(scan_id, list(items.values()))

        assert stats["extracted"] == 2
        assert stats["not_eligible"] == 1
        assert stats["ideas"] == 2

        keep_ideas = await seed.ideas_for(items["keep"])
        assert [i.idea_title for i in keep_ideas] == ["Tool for keep post"]
        assert keep_ideas[0].classification_status == "keep"
        assert str(keep_ideas[0].scan_id) == scan_id
        assert (await seed.ideas_for(items["borderline"]))[0].classification_status == "borderline"
        assert (await seed.get_item(items["keep"])).extracted_at is not None
        assert (await seed.get_item(items["discard"])).extracted_at is None

        scan = await seed.get_scan(scan_id)
        assert scan.items_extracted == 2
        assert scan.ideas_found == 2

    @pytest.mark.asyncio
    async def test_prompt_includes_replies_and_status(self, worker, sonnet, extracting_scan):
        """Test the extraction request carries replies and the decision."""
        scan_id, items = extracting_scan

        await worker.extract_chunk(scan_id, [items["keep"]])

        request = sonnet.extract_calls[0]
        assert request.classification_status == "keep"
        assert request.replies[0].body == "I would pay for this"
        assert "I would pay for this" in request.prompt()

    @pytest.mark.asyncio
    async def test_redelivered_chunk_creates_no_duplicates(self, worker, seed, sonnet, extracting_scan):
        """Test an already-extracted item is skipped on redelivery."""
        scan_id, items = extracting_scan
        eligible = [items["keep"], items["borderline"]]

        await worker.extract_chunk(scan_id, eligible)
        stats = await worker.extract_chunk(scan_id, eligible)

        assert stats["already_extracted"] == 2
        assert await seed.count(Idea) == 2
        assert (await seed.get_scan(scan_id)).items_extracted == 2
        assert len(sonnet.extract_calls) == 2

    @pytest.mark.asyncio
    async def test_idea_cap(self, db, state, seed, retry_policy, extracting_scan):
        """Test at most max_ideas ideas are stored per item."""
        scan_id, items = extracting_scan
        many = FakeProvider(
            "claude-sonnet",
            extract=lambda r: ideas_response(*[f"Idea {n}" for n in range(7)]),
            supports_extraction=True,
        )
        worker = ExtractionWorker(db, state, lambda: many, retry_policy, max_ideas=5)

        stats = await worker.extract_chunk(scan_id, [items["keep"]])

        assert stats["ideas"] == 5
        assert len(await seed.ideas_for(items["keep"])) == 5
        assert (await seed.get_scan(scan_id)).ideas_found == 5

    @pytest.mark.asyncio
    async def test_scan_not_extracting(self, worker, seed, sonnet, extracting_scan):
        """Test nothing is written once the scan left extracting."""
        scan_id, items = extracting_scan
        await seed.update_scan(scan_id, status=SCAN_COMPLETED)

        stats = await worker.extract_chunk(scan_id, [items["keep"]])

        assert stats["scan_inactive"] == 1
        assert sonnet.extract_calls == []
        assert await seed.count(Idea) == 0


class TestExtractionFailures:
    """Test retry and fallback behavior."""

    @pytest.mark.asyncio
    async def test_network_error_is_retried(self, db, state, seed, retry_policy, sleep, extracting_scan):
        """Test a network-error response is retried like a transient failure."""
        scan_id, items = extracting_scan
        flaky = FakeProvider(
            "claude-sonnet",
            extract=[ExtractionResponse.network_failure("connection reset"), ideas_response("Recovered idea")],
            supports_extraction=True,
        )
        worker = ExtractionWorker(db, state, lambda: flaky, retry_policy)

        stats = await worker.extract_chunk(scan_id, [items["keep"]])

        assert stats["extracted"] == 1
        assert len(flaky.extract_calls) == 2
        sleep.assert_awaited_once_with(2)
        assert [i.idea_title for i in await seed.ideas_for(items["keep"])] == ["Recovered idea"]

    @pytest.mark.asyncio
    async def test_exhausted_retries_mark_item_without_ideas(self, db, state, seed, retry_policy, extracting_scan):
        """Test an item whose extraction never succeeds is still marked processed."""
        scan_id, items = extracting_scan
        down = FakeProvider(
            "claude-sonnet",
            extract=lambda r: ExtractionResponse.network_failure("connection refused"),
            supports_extraction=True,
        )
        worker = ExtractionWorker(db, state, lambda: down, retry_policy)

        stats = await worker.extract_chunk(scan_id, [items["keep"]])

        assert stats["extraction_failed"] == 1
        assert len(down.extract_calls) == 3
        assert await seed.count(Idea) == 0
        assert (await seed.get_item(items["keep"])).extracted_at is not None
        assert (await seed.get_scan(scan_id)).items_extracted == 1

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, db, state, seed, retry_policy, extracting_scan):
        """Test a permanent failure falls back immediately."""
        scan_id, items = extracting_scan
        broken = FakeProvider(
            "claude-sonnet",
            extract=lambda r: PermanentProviderError("unparseable", status_code=None),
            supports_extraction=True,
        )
        worker = ExtractionWorker(db, state, lambda: broken, retry_policy)

        stats = await worker.extract_chunk(scan_id, [items["keep"]])

        assert stats["extraction_failed"] == 1
        assert len(broken.extract_calls) == 1
        assert (await seed.get_item(items["keep"])).extracted_at is not None

    @pytest.mark.asyncio
    async def test_provider_unavailable(self, db, state, seed, retry_policy, extracting_scan):
        """Test a provider that cannot be created still lets the stage finish."""
        scan_id, items = extracting_scan

        def broken_factory():
            raise ValueError("Provider 'anthropic-haiku' does not support extraction")

        worker = ExtractionWorker(db, state, broken_factory, retry_policy)

        stats = await worker.extract_chunk(scan_id, [items["keep"], items["borderline"]])

        assert stats["extraction_failed"] == 2
        assert (await seed.get_scan(scan_id)).items_extracted == 2
