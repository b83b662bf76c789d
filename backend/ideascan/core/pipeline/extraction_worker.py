# backend/ideascan/core/pipeline/extraction_worker.py
"""
Extract chunk worker.

Precondition per item: a terminal classification of keep or borderline
and no extracted_at. The extraction call runs under RetryPolicy, with the
provider's network-error response treated as transient. Persisting is a
single transaction under a row lock on the item:

    SELECT item FOR UPDATE -> re-check extracted_at -> insert <= N ideas
    -> set extracted_at -> increment items_extracted / ideas_found

The lock plus the re-check is what prevents duplicate ideas when the same
chunk is delivered twice. If extraction fails for good, the item is still
marked extracted with zero ideas so the scan cannot stall.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select

from ...config import settings
from ..database.models import EXTRACTABLE_DECISIONS, SCAN_EXTRACTING, Classification, Idea, Item, Reply, Topic
from ..llm.base import LLMProvider
from ..models.llm_models import ExtractionRequest, IdeaPayload, ReplyExcerpt
from ..shared.database_service import DatabaseService, database_service
from .retry_policy import RetryPolicy
from .scan_state_service import ScanStateService, as_uuid, scan_state_service

logger = logging.getLogger("ideascan.pipeline.extract")

EXTRACTED = "extracted"
EXTRACTION_FAILED = "extraction_failed"
ALREADY_EXTRACTED = "already_extracted"
NOT_ELIGIBLE = "not_eligible"
MISSING = "missing"
SCAN_INACTIVE = "scan_inactive"


class ExtractionWorker:
    def __init__(
        self,
        database: Optional[DatabaseService] = None,
        state: Optional[ScanStateService] = None,
        provider_factory: Optional[Callable[[], LLMProvider]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_ideas: Optional[int] = None,
    ):
        self._db = database or database_service
        self._state = state or scan_state_service
        self._provider_factory = provider_factory or self._default_provider
        self._retry = retry_policy or RetryPolicy.from_settings()
        self._max_ideas = max_ideas if max_ideas is not None else settings.max_ideas_per_item

    @staticmethod
    def _default_provider() -> LLMProvider:
        from ..llm.factory import llm_provider_factory
        return llm_provider_factory.extraction_provider()

    async def extract_chunk(self, scan_id: str, item_ids: Sequence[str]) -> Dict[str, Any]:
        """Extract ideas for a chunk of items. Never raises."""
        stats = {
            EXTRACTED: 0, EXTRACTION_FAILED: 0, ALREADY_EXTRACTED: 0,
            NOT_ELIGIBLE: 0, MISSING: 0, SCAN_INACTIVE: 0, "ideas": 0,
        }

        try:
            provider = self._provider_factory()
        except Exception as e:
            logger.error(f"Scan {scan_id}: could not create extraction provider: {e}", exc_info=True)
            provider = None

        try:
            for position, item_id in enumerate(item_ids):
                try:
                    outcome, created = await self._extract_item(scan_id, item_id, provider)
                except Exception as e:
                    logger.error(f"Scan {scan_id}: extraction failed for item {item_id}: {e}", exc_info=True)
                    outcome, created = await self._mark_without_ideas(scan_id, item_id)

                stats[outcome] += 1
                stats["ideas"] += created
                if outcome == SCAN_INACTIVE:
                    stats[SCAN_INACTIVE] = len(item_ids) - position
                    logger.info(f"Scan {scan_id} left extracting, stopping chunk")
                    break
        finally:
            if provider is not None:
                try:
                    await provider.aclose()
                except Exception as e:
                    logger.debug(f"Error closing provider {provider.name}: {e}")

        logger.info(f"Scan {scan_id}: extract chunk done {stats}")
        return stats

    async def _extract_item(self, scan_id: str, item_id: str, provider: Optional[LLMProvider]):
        async with self._db.get_session() as session:
            if not await self._state.is_in_stage(session, scan_id, SCAN_EXTRACTING):
                return SCAN_INACTIVE, 0
            item = await session.get(Item, as_uuid(item_id))
            if item is None:
                return MISSING, 0
            if item.extracted_at is not None:
                return ALREADY_EXTRACTED, 0
            result = await session.execute(
                select(Classification.final_decision).where(Classification.item_id == item.id)
            )
            decision = result.scalar_one_or_none()
            if decision not in EXTRACTABLE_DECISIONS:
                return NOT_ELIGIBLE, 0
            request = await self._build_request(session, item, decision)

        ideas: List[IdeaPayload] = []
        failed = False
        if provider is None:
            failed = True
        else:
            try:
                response = await self._retry.run(
                    lambda: provider.extract(request),
                    retry_on_result=lambda r: r.network_error,
                    description=f"{provider.name} extract item {item_id}",
                )
                ideas = response.ideas[: self._max_ideas]
            except Exception as e:
                failed = True
                logger.warning(f"Scan {scan_id}: extraction gave up for item {item_id}: {e}")

        outcome, created = await self._persist(scan_id, item_id, ideas, decision)
        if outcome == EXTRACTED and failed:
            outcome = EXTRACTION_FAILED
        return outcome, created

    async def _build_request(self, session, item: Item, decision: str) -> ExtractionRequest:
        topic = await session.get(Topic, item.topic_id)
        result = await session.execute(
            select(Reply)
            .where(Reply.item_id == item.id)
            .order_by(Reply.upvotes.desc())
            .limit(settings.extraction_reply_limit)
        )
        replies = [
            ReplyExcerpt(author=r.display_author, body=r.body, upvotes=r.upvotes)
            for r in result.scalars().all()
        ]
        return ExtractionRequest(
            topic=topic.name if topic else "",
            title=item.title,
            body=item.body,
            upvotes=item.upvotes,
            num_comments=item.num_comments,
            replies=replies,
            classification_status=decision,
            item_id=str(item.id),
        )

    async def _persist(self, scan_id: str, item_id: str, ideas: Sequence[IdeaPayload], decision: str):
        async with self._db.get_session() as session:
            if not await self._state.is_in_stage(session, scan_id, SCAN_EXTRACTING):
                return SCAN_INACTIVE, 0

            result = await session.execute(
                select(Item)
                .where(Item.id == as_uuid(item_id))
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            item = result.scalar_one_or_none()
            if item is None:
                return MISSING, 0
            if item.extracted_at is not None:
                return ALREADY_EXTRACTED, 0

            for idea in ideas[: self._max_ideas]:
                session.add(Idea(
                    item_id=item.id,
                    scan_id=as_uuid(scan_id),
                    classification_status=decision,
                    **idea.to_columns(),
                ))
            item.extracted_at = datetime.utcnow()
            await session.flush()
            await self._state.increment(session, scan_id, items_extracted=1, ideas_found=len(ideas[: self._max_ideas]))

        return EXTRACTED, len(ideas[: self._max_ideas])

    async def _mark_without_ideas(self, scan_id: str, item_id: str):
        try:
            outcome, _ = await self._persist(scan_id, item_id, [], "")
        except Exception as e:
            logger.error(f"Scan {scan_id}: could not mark item {item_id} extracted: {e}", exc_info=True)
            return EXTRACTION_FAILED, 0
        return (EXTRACTION_FAILED if outcome == EXTRACTED else outcome), 0


# Global singleton instance
extraction_worker = ExtractionWorker()
