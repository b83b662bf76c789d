# backend/ideascan/core/pipeline/fetch_stage.py
"""
Fetch stage: begin scan, paged item fetch, parallel reply fetch and the
polling completion check.

Flow:
    begin()                 pending -> fetching, dispatch first page
    fetch_page(cursor)      upsert one page, persist checkpoint, then either
                            re-dispatch itself with the next cursor or fan
                            out reply jobs
    fetch_replies(ids)      upsert replies for a chunk of items; always
                            counts itself done, even on failure
    check_fetch_complete()  re-schedules itself until all reply jobs are
                            done (or the poll limit is reached), then
                            fetching -> classifying

All dispatches happen after the session that decided on them committed.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select

from ...config import settings
from ..database.models import SCAN_CLASSIFYING, SCAN_FETCHING, SCAN_PENDING, Item, Reply, Topic
from ..shared.database_service import DatabaseService, database_service
from ..sources.base import ContentSource, SourceItem, SourceReply
from .dispatcher import PipelineDispatcher, celery_dispatcher, chunked
from .retry_policy import RetryPolicy
from .scan_state_service import ScanStateService, as_uuid, scan_state_service

logger = logging.getLogger("ideascan.pipeline.fetch")


def _default_source() -> ContentSource:
    from ..sources.reddit_source import RedditSource
    return RedditSource()


class FetchStage:
    def __init__(
        self,
        database: Optional[DatabaseService] = None,
        state: Optional[ScanStateService] = None,
        dispatcher: Optional[PipelineDispatcher] = None,
        source_factory: Optional[Callable[[], ContentSource]] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._db = database or database_service
        self._state = state or scan_state_service
        self._dispatcher = dispatcher or celery_dispatcher
        self._source_factory = source_factory or _default_source
        self._retry = retry_policy or RetryPolicy.from_settings()

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def begin(self, scan_id: str) -> bool:
        """pending -> fetching and dispatch the first page from the scan's checkpoint."""
        async with self._db.get_session() as session:
            scan = await self._state.get_scan(session, scan_id)
            if scan is None:
                logger.info(f"Scan {scan_id} no longer exists, not starting")
                return False
            checkpoint = scan.checkpoint
            moved = await self._state.transition(session, scan_id, SCAN_PENDING, SCAN_FETCHING)

        if moved:
            self._dispatcher.fetch_page(scan_id, checkpoint)
        return moved

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def fetch_page(self, scan_id: str, cursor: Optional[str] = None) -> Dict[str, Any]:
        """
        Fetch and upsert one page of items.

        Raises:
            RetryExhaustedError / ContentSourceError: fetch failed; the
            caller marks the scan failed
        """
        async with self._db.get_session() as session:
            scan = await self._state.get_scan(session, scan_id)
            if scan is None or scan.status != SCAN_FETCHING:
                logger.info(f"Scan {scan_id} not fetching, skipping page fetch")
                return {"status": "skipped"}
            topic = await session.get(Topic, scan.topic_id)
            topic_name, topic_id = topic.name, topic.id
            date_from, date_to = scan.date_from, scan.date_to

        source = self._source_factory()
        try:
            page = await self._retry.run(
                lambda: source.fetch_items(topic_name, date_from, date_to, cursor),
                description=f"fetch r/{topic_name} page",
            )
        finally:
            await source.aclose()

        async with self._db.get_session() as session:
            if not await self._state.is_in_stage(session, scan_id, SCAN_FETCHING):
                logger.info(f"Scan {scan_id} left fetching during page fetch, discarding page")
                return {"status": "skipped"}
            stored = await self._upsert_items(session, scan_id, topic_id, page.items)
            await self._state.increment(session, scan_id, items_fetched=stored)
            await self._state.set_checkpoint(session, scan_id, page.next_cursor)

        logger.info(f"Scan {scan_id}: stored {stored} item(s) from r/{topic_name} (next={page.next_cursor})")

        if page.next_cursor and page.next_cursor != cursor:
            self._dispatcher.fetch_page(scan_id, page.next_cursor)
            return {"status": "continued", "items": stored, "next_cursor": page.next_cursor}

        return await self._dispatch_reply_fetch(scan_id)

    async def _upsert_items(self, session, scan_id: str, topic_id, items: Sequence[SourceItem]) -> int:
        if not items:
            return 0
        by_source_id = {item.source_id: item for item in items}
        result = await session.execute(select(Item).where(Item.source_id.in_(list(by_source_id))))
        existing = {row.source_id: row for row in result.scalars().all()}

        now = datetime.utcnow()
        for source_id, item in by_source_id.items():
            row = existing.get(source_id)
            if row is not None:
                row.upvotes = item.upvotes
                row.downvotes = item.downvotes
                row.num_comments = item.num_comments
                row.upvote_ratio = item.upvote_ratio
                row.scan_id = as_uuid(scan_id)
                row.fetched_at = now
            else:
                session.add(Item(
                    source_id=source_id,
                    topic_id=topic_id,
                    scan_id=as_uuid(scan_id),
                    title=item.title,
                    body=item.body,
                    author=item.author,
                    permalink=item.permalink,
                    url=item.url,
                    upvotes=item.upvotes,
                    downvotes=item.downvotes,
                    num_comments=item.num_comments,
                    upvote_ratio=item.upvote_ratio,
                    source_created_at=item.created_at,
                    fetched_at=now,
                ))
        await session.flush()
        return len(by_source_id)

    async def _dispatch_reply_fetch(self, scan_id: str) -> Dict[str, Any]:
        """Pagination exhausted: fan out reply jobs, or go straight to classify when empty."""
        moved = False
        chunks: List[List[str]] = []
        async with self._db.get_session() as session:
            result = await session.execute(
                select(Item.id).where(Item.scan_id == as_uuid(scan_id)).order_by(Item.created_at)
            )
            item_ids = [str(item_id) for item_id in result.scalars().all()]

            if not item_ids:
                moved = await self._state.transition(session, scan_id, SCAN_FETCHING, SCAN_CLASSIFYING)
                if moved:
                    await self._state.set_counters(session, scan_id, items_fetched=0)
            else:
                chunks = chunked(item_ids, settings.reply_chunk_size)
                if not await self._state.begin_child_jobs(session, scan_id, len(chunks)):
                    return {"status": "skipped"}
                # redelivered pages add to the running count; recount from rows
                await self._state.set_counters(session, scan_id, items_fetched=len(item_ids))

        if not chunks:
            logger.info(f"Scan {scan_id}: no items fetched, moving to classification")
            if moved:
                self._dispatcher.start_classification(scan_id)
            return {"status": "no_items"}

        for chunk in chunks:
            self._dispatcher.fetch_replies(scan_id, chunk)
        self._dispatcher.check_fetch_complete(scan_id, 0, settings.fetch_check_interval_seconds)
        logger.info(f"Scan {scan_id}: dispatched {len(chunks)} reply job(s) for {len(item_ids)} item(s)")
        return {"status": "fetching_replies", "items": len(item_ids), "reply_jobs": len(chunks)}

    # ------------------------------------------------------------------
    # Replies
    # ------------------------------------------------------------------

    async def fetch_replies(self, scan_id: str, item_ids: Sequence[str]) -> Dict[str, Any]:
        """Fetch replies for a chunk of items. Counts as done whatever happens."""
        stored = 0
        failed = 0
        try:
            async with self._db.get_session() as session:
                scan = await self._state.get_scan(session, scan_id)
                if scan is None or scan.status != SCAN_FETCHING:
                    logger.info(f"Scan {scan_id} not fetching, skipping reply fetch")
                    return {"status": "skipped"}
                topic = await session.get(Topic, scan.topic_id)
                topic_name = topic.name
                ids = [as_uuid(i) for i in item_ids]
                result = await session.execute(select(Item.id, Item.source_id).where(Item.id.in_(ids)))
                targets = list(result.all())

            source = self._source_factory()
            try:
                for item_id, source_id in targets:
                    try:
                        replies = await self._retry.run(
                            lambda sid=source_id: source.fetch_replies(topic_name, sid),
                            description=f"fetch replies for {source_id}",
                        )
                    except Exception as e:
                        failed += 1
                        logger.warning(f"Scan {scan_id}: reply fetch failed for item {source_id}: {e}")
                        continue

                    async with self._db.get_session() as session:
                        stored += await self._upsert_replies(session, item_id, replies)
            finally:
                await source.aclose()

            return {"status": "ok", "replies": stored, "failed_items": failed}
        finally:
            async with self._db.get_session() as session:
                await self._state.increment(session, scan_id, child_jobs_done=1)

    async def _upsert_replies(self, session, item_id, replies: Sequence[SourceReply]) -> int:
        if not replies:
            return 0
        result = await session.execute(select(Reply).where(Reply.item_id == item_id))
        existing = {row.source_id: row for row in result.scalars().all()}

        for reply in replies:
            row = existing.get(reply.source_id)
            if row is not None:
                row.upvotes = reply.upvotes
                row.body = reply.body
                continue
            row = Reply(
                item_id=item_id,
                source_id=reply.source_id,
                parent_source_id=reply.parent_source_id,
                author=reply.author,
                body=reply.body,
                upvotes=reply.upvotes,
                depth=reply.depth,
                source_created_at=reply.created_at,
            )
            session.add(row)
            existing[reply.source_id] = row
        await session.flush()
        return len(replies)

    # ------------------------------------------------------------------
    # Completion check
    # ------------------------------------------------------------------

    async def check_fetch_complete(self, scan_id: str, poll: int = 0) -> Dict[str, Any]:
        """Poll the reply-job counters; advance to classification when all are done."""
        reschedule = False
        moved = False
        async with self._db.get_session() as session:
            scan = await self._state.get_scan(session, scan_id)
            if scan is None or scan.status != SCAN_FETCHING:
                logger.info(f"Scan {scan_id} not fetching, completion check is a no-op")
                return {"status": "skipped"}

            total, done = scan.child_jobs_total, scan.child_jobs_done or 0
            complete = total is not None and done >= total

            if not complete and poll < settings.fetch_check_max_polls:
                reschedule = True
            else:
                if not complete:
                    logger.warning(
                        f"Scan {scan_id}: reply fetch incomplete after {poll} poll(s) "
                        f"({done}/{total}), proceeding to classification"
                    )
                moved = await self._state.transition(session, scan_id, SCAN_FETCHING, SCAN_CLASSIFYING)

        if reschedule:
            self._dispatcher.check_fetch_complete(scan_id, poll + 1, settings.fetch_check_interval_seconds)
            return {"status": "waiting", "done": done, "total": total}
        if moved:
            self._dispatcher.start_classification(scan_id)
        return {"status": "complete" if moved else "skipped", "done": done, "total": total}


# Global singleton instance
fetch_stage = FetchStage()
