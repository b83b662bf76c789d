"""
Unit tests for FetchStage.

Tests scan start, paged item fetch with checkpointing, reply fan-out,
the reply-job completion check and cooperative cancellation.
"""

from datetime import datetime, timedelta

import pytest
from fakes import FakeSource
from sqlalchemy import select

from ideascan.config import settings
from ideascan.core.database.models import (
    SCAN_CLASSIFYING,
    SCAN_FAILED,
    SCAN_FETCHING,
    SCAN_PENDING,
    Item,
    Reply,
)
from ideascan.core.exceptions import ContentSourceError, RetryExhaustedError, TransientSourceError
from ideascan.core.pipeline.fetch_stage import FetchStage
from ideascan.core.sources.base import FetchPage, SourceItem, SourceReply


def make_item(source_id: str, upvotes: int = 12) -> SourceItem:
    return SourceItem(
        source_id=source_id,
        title=f"Post {source_id}",
        body="I wish there was a tool for this",
        author="someone",
        upvotes=upvotes,
        num_comments=4,
        created_at=datetime.utcnow() - timedelta(days=1),
    )


@pytest.fixture
def source():
    return FakeSource(
        pages={
            None: FetchPage(items=[make_item("a1"), make_item("a2")], next_cursor="t3_a2"),
            "t3_a2": FetchPage(items=[make_item("a3")], next_cursor=None),
        },
        replies={
            "a1": [SourceReply(source_id="c1", body="Same here", upvotes=3)],
            "a2": [SourceReply(source_id="c2", body="+1"), SourceReply(source_id="c3", body="Would pay")],
        },
    )


@pytest.fixture
def stage(db, state, dispatcher, source, retry_policy):
    return FetchStage(
        database=db,
        state=state,
        dispatcher=dispatcher,
        source_factory=lambda: source,
        retry_policy=retry_policy,
    )


class TestBegin:
    """Test FetchStage.begin()."""

    @pytest.mark.asyncio
    async def test_begin_moves_to_fetching(self, stage, seed, dispatcher):
        """Test pending -> fetching and first page dispatched from the checkpoint."""
        scan_id = await seed.scan(await seed.topic(), checkpoint="t3_resume")

        assert await stage.begin(scan_id) is True

        assert (await seed.get_scan(scan_id)).status == SCAN_FETCHING
        assert list(dispatcher.calls) == [("fetch_page", scan_id, "t3_resume")]

    @pytest.mark.asyncio
    async def test_begin_twice_dispatches_once(self, stage, seed, dispatcher):
        """Test duplicate start delivery is a no-op."""
        scan_id = await seed.scan(await seed.topic())

        await stage.begin(scan_id)
        assert await stage.begin(scan_id) is False

        assert dispatcher.names() == ["fetch_page"]

    @pytest.mark.asyncio
    async def test_begin_deleted_scan(self, stage, dispatcher):
        """Test a deleted scan is not started."""
        assert await stage.begin("00000000-0000-0000-0000-000000000000") is False
        assert not dispatcher.calls


class TestFetchPage:
    """Test paged item fetching."""

    @pytest.mark.asyncio
    async def test_page_with_next_cursor(self, stage, seed, dispatcher):
        """Test a page is stored, checkpointed and the next page dispatched."""
        scan_id = await seed.scan(await seed.topic(), status=SCAN_FETCHING)

        result = await stage.fetch_page(scan_id, None)

        assert result["status"] == "continued"
        scan = await seed.get_scan(scan_id)
        assert scan.items_fetched == 2
        assert scan.checkpoint == "t3_a2"
        assert list(dispatcher.calls) == [("fetch_page", scan_id, "t3_a2")]

    @pytest.mark.asyncio
    async def test_last_page_fans_out_reply_jobs(self, stage, seed, dispatcher):
        """Test pagination end dispatches reply chunks and the completion check."""
        scan_id = await seed.scan(await seed.topic(), status=SCAN_FETCHING)

        await stage.fetch_page(scan_id, None)
        dispatcher.calls.clear()
        result = await stage.fetch_page(scan_id, "t3_a2")

        assert result["status"] == "fetching_replies"
        assert dispatcher.names() == ["fetch_replies", "check_fetch_complete"]
        assert len(dispatcher.of("fetch_replies")[0][2]) == 3
        scan = await seed.get_scan(scan_id)
        assert scan.child_jobs_total == 1
        assert scan.child_jobs_done == 0
        assert scan.checkpoint is None

    @pytest.mark.asyncio
    async def test_redelivered_page_is_recounted(self, stage, seed):
        """Test items_fetched matches the stored items after a page is delivered twice."""
        scan_id = await seed.scan(await seed.topic(), status=SCAN_FETCHING)

        await stage.fetch_page(scan_id, None)
        await stage.fetch_page(scan_id, None)
        assert (await seed.get_scan(scan_id)).items_fetched == 4

        await stage.fetch_page(scan_id, "t3_a2")

        assert (await seed.get_scan(scan_id)).items_fetched == 3

    @pytest.mark.asyncio
    async def test_empty_scan_goes_to_classification(self, seed, db, state, dispatcher, retry_policy):
        """Test a scan that fetched nothing advances straight to classifying."""
        stage = FetchStage(db, state, dispatcher, lambda: FakeSource(), retry_policy)
        scan_id = await seed.scan(await seed.topic(), status=SCAN_FETCHING)

        result = await stage.fetch_page(scan_id, None)

        assert result["status"] == "no_items"
        assert (await seed.get_scan(scan_id)).status == SCAN_CLASSIFYING
        assert list(dispatcher.calls) == [("start_classification", scan_id)]

    @pytest.mark.asyncio
    async def test_refetch_updates_existing_item(self, stage, seed, source):
        """Test a re-fetched item is updated, not duplicated."""
        topic_id = await seed.topic()
        old_scan = await seed.scan(topic_id, status=SCAN_FAILED)
        await seed.item(topic_id, old_scan, source_id="a1", upvotes=1)
        scan_id = await seed.scan(topic_id, status=SCAN_FETCHING)

        await stage.fetch_page(scan_id, None)

        assert await seed.count(Item, Item.source_id == "a1") == 1
        async with seed.db.get_session() as session:
            item = (await session.execute(select(Item).where(Item.source_id == "a1"))).scalar_one()
        assert item.upvotes == 12
        assert str(item.scan_id) == scan_id

    @pytest.mark.asyncio
    async def test_not_fetching_skips(self, stage, seed, source, dispatcher):
        """Test a cancelled scan does not call the source."""
        scan_id = await seed.scan(await seed.topic(), status=SCAN_FAILED)

        assert (await stage.fetch_page(scan_id, None))["status"] == "skipped"
        assert source.item_calls == []
        assert not dispatcher.calls

    @pytest.mark.asyncio
    async def test_transient_failures_exhaust(self, seed, db, state, dispatcher, retry_policy):
        """Test a source that keeps failing raises after the last retry."""
        failing = FakeSource(pages={None: TransientSourceError("429")})
        stage = FetchStage(db, state, dispatcher, lambda: failing, retry_policy)
        scan_id = await seed.scan(await seed.topic(), status=SCAN_FETCHING)

        with pytest.raises(RetryExhaustedError):
            await stage.fetch_page(scan_id, None)

        assert (await seed.get_scan(scan_id)).items_fetched == 0


class TestFetchReplies:
    """Test reply fetching jobs."""

    @pytest.mark.asyncio
    async def test_replies_stored_and_job_counted(self, stage, seed, source):
        """Test replies are upserted and the job marks itself done."""
        topic_id = await seed.topic()
        scan_id = await seed.scan(topic_id, status=SCAN_FETCHING, child_jobs_total=1)
        a1 = await seed.item(topic_id, scan_id, source_id="a1")
        a2 = await seed.item(topic_id, scan_id, source_id="a2")

        result = await stage.fetch_replies(scan_id, [a1, a2])
        await stage.fetch_replies(scan_id, [a1, a2])

        assert result["replies"] == 3
        assert await seed.count(Reply) == 3
        assert (await seed.get_scan(scan_id)).child_jobs_done == 2

    @pytest.mark.asyncio
    async def test_failing_item_does_not_block_others(self, stage, seed, source):
        """Test a permanent failure on one item still stores the rest."""
        source.replies["a1"] = ContentSourceError("403")
        topic_id = await seed.topic()
        scan_id = await seed.scan(topic_id, status=SCAN_FETCHING, child_jobs_total=1)
        a1 = await seed.item(topic_id, scan_id, source_id="a1")
        a2 = await seed.item(topic_id, scan_id, source_id="a2")

        result = await stage.fetch_replies(scan_id, [a1, a2])

        assert result["failed_items"] == 1
        assert await seed.count(Reply) == 2

    @pytest.mark.asyncio
    async def test_job_counted_even_when_crashing(self, seed, db, state, dispatcher, retry_policy):
        """Test the done counter moves even if the job blows up."""
        def broken_factory():
            raise RuntimeError("no source")

        stage = FetchStage(db, state, dispatcher, broken_factory, retry_policy)
        topic_id = await seed.topic()
        scan_id = await seed.scan(topic_id, status=SCAN_FETCHING, child_jobs_total=1)
        item_id = await seed.item(topic_id, scan_id)

        with pytest.raises(RuntimeError):
            await stage.fetch_replies(scan_id, [item_id])

        assert (await seed.get_scan(scan_id)).child_jobs_done == 1


class TestCheckFetchComplete:
    """Test the polling completion check."""

    @pytest.mark.asyncio
    async def test_waits_while_jobs_outstanding(self, stage, seed, dispatcher):
        """Test the check re-schedules itself with the next poll number."""
        scan_id = await seed.scan(await seed.topic(), status=SCAN_FETCHING, child_jobs_total=3, child_jobs_done=1)

        result = await stage.check_fetch_complete(scan_id, poll=4)

        assert result["status"] == "waiting"
        assert list(dispatcher.calls) == [("check_fetch_complete", scan_id, 5)]
        assert (await seed.get_scan(scan_id)).status == SCAN_FETCHING

    @pytest.mark.asyncio
    async def test_all_done_advances(self, stage, seed, dispatcher):
        """Test completion moves the scan to classifying exactly once."""
        scan_id = await seed.scan(await seed.topic(), status=SCAN_FETCHING, child_jobs_total=2, child_jobs_done=2)

        first = await stage.check_fetch_complete(scan_id, poll=1)
        second = await stage.check_fetch_complete(scan_id, poll=1)

        assert first["status"] == "complete"
        assert second["status"] == "skipped"
        assert (await seed.get_scan(scan_id)).status == SCAN_CLASSIFYING
        assert list(dispatcher.calls) == [("start_classification", scan_id)]

    @pytest.mark.asyncio
    async def test_poll_limit_reached_proceeds(self, stage, seed, dispatcher, monkeypatch):
        """Test the scan proceeds with what it has after the last poll."""
        monkeypatch.setattr(settings, "fetch_check_max_polls", 3)
        scan_id = await seed.scan(await seed.topic(), status=SCAN_FETCHING, child_jobs_total=5, child_jobs_done=2)

        result = await stage.check_fetch_complete(scan_id, poll=3)

        assert result["status"] == "complete"
        assert (await seed.get_scan(scan_id)).status == SCAN_CLASSIFYING

    @pytest.mark.asyncio
    async def test_pending_scan_is_noop(self, stage, seed, dispatcher):
        """Test the check does nothing for a scan outside fetching."""
        scan_id = await seed.scan(await seed.topic(), status=SCAN_PENDING)

        assert (await stage.check_fetch_complete(scan_id))["status"] == "skipped"
        assert not dispatcher.calls
