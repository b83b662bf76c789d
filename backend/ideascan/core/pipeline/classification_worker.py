# backend/ideascan/core/pipeline/classification_worker.py
"""
Classify chunk worker.

For each item of a chunk:
    1. guard: scan still classifying (else stop the chunk)
    2. skip items that are gone or already have a terminal classification
    3. call every configured provider concurrently, each under RetryPolicy
    4. resolve the provider outcome to a decision (consensus.resolve)
    5. in one transaction: lock the item, drop a non-terminal leftover,
       insert the classification, increment items_classified

An unexpected failure for one item writes a terminal discard so the
completeness sweep never waits on it. classify_chunk() itself never
raises: the stage finalizer must run after every chunk.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ...config import settings
from ..database.models import (
    DECISION_DISCARD,
    SCAN_CLASSIFYING,
    TERMINAL_DECISIONS,
    Classification,
    Item,
    Reply,
    Topic,
)
from ..exceptions import RetryExhaustedError
from ..llm.base import LLMProvider
from ..models.llm_models import ClassificationRequest, ClassificationResponse, ReplyExcerpt
from ..shared.database_service import DatabaseService, database_service
from .consensus import ConsensusResult, ConsensusThresholds, Vote, outcome_from_votes, resolve
from .retry_policy import RetryPolicy
from .scan_state_service import ScanStateService, as_uuid, scan_state_service

logger = logging.getLogger("ideascan.pipeline.classify")

CHUNK_FAILURE_CATEGORY = "chunk-job-failed"

# Per-item outcomes
CLASSIFIED = "classified"
ALREADY_CLASSIFIED = "already_classified"
MISSING = "missing"
SCAN_INACTIVE = "scan_inactive"
FALLBACK = "fallback"


@dataclass
class SlotResult:
    """One provider's contribution to an item's classification."""
    provider: str
    response: Optional[ClassificationResponse] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.response is not None

    @property
    def vote(self) -> Optional[Vote]:
        if self.response is None:
            return None
        return Vote(self.response.verdict, self.response.confidence)


@dataclass
class ItemEvaluation:
    slots: List[SlotResult] = field(default_factory=list)
    consensus: Optional[ConsensusResult] = None


def discard_classification(item_id, scan_id, category: str, reasoning: str) -> Classification:
    """A terminal discard used when an item cannot be classified normally."""
    return Classification(
        item_id=as_uuid(item_id),
        scan_id=as_uuid(scan_id) if scan_id is not None else None,
        primary_verdict="skip",
        primary_confidence=0.0,
        primary_category=category,
        primary_reasoning=reasoning,
        primary_completed=False,
        secondary_completed=False,
        combined_score=0.0,
        final_decision=DECISION_DISCARD,
        classified_at=datetime.utcnow(),
    )


async def build_classification_request(session: AsyncSession, item: Item) -> ClassificationRequest:
    topic = await session.get(Topic, item.topic_id)
    result = await session.execute(
        select(Reply)
        .where(Reply.item_id == item.id)
        .order_by(Reply.upvotes.desc())
        .limit(settings.classification_reply_limit)
    )
    replies = [
        ReplyExcerpt(author=r.display_author, body=r.body, upvotes=r.upvotes)
        for r in result.scalars().all()
    ]
    return ClassificationRequest(
        topic=topic.name if topic else "",
        title=item.title,
        body=item.body,
        upvotes=item.upvotes,
        num_comments=item.num_comments,
        replies=replies,
        item_id=str(item.id),
    )


class ClassificationWorker:
    def __init__(
        self,
        database: Optional[DatabaseService] = None,
        state: Optional[ScanStateService] = None,
        provider_factory: Optional[Callable[[], List[LLMProvider]]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        thresholds: Optional[ConsensusThresholds] = None,
    ):
        self._db = database or database_service
        self._state = state or scan_state_service
        self._provider_factory = provider_factory or self._default_providers
        self._retry = retry_policy or RetryPolicy.from_settings()
        self._thresholds = thresholds or ConsensusThresholds.from_settings()

    @staticmethod
    def _default_providers() -> List[LLMProvider]:
        from ..llm.factory import llm_provider_factory
        return llm_provider_factory.classification_providers()

    # ------------------------------------------------------------------
    # Evaluation (no side effects, shared with the dry-run command)
    # ------------------------------------------------------------------

    async def _call_provider(self, provider: LLMProvider, request: ClassificationRequest) -> SlotResult:
        try:
            response = await self._retry.run(
                lambda: provider.classify(request),
                description=f"{provider.name} classify item {request.item_id}",
            )
            return SlotResult(provider=provider.name, response=response)
        except RetryExhaustedError as e:
            return SlotResult(provider=provider.name, error=str(e))
        except Exception as e:
            return SlotResult(provider=provider.name, error=f"{type(e).__name__}: {e}")

    async def evaluate(self, providers: Sequence[LLMProvider], request: ClassificationRequest) -> ItemEvaluation:
        """Call all providers concurrently and resolve their consensus."""
        slots = list(await asyncio.gather(*(self._call_provider(p, request) for p in providers)))
        first = slots[0].vote if slots else None
        second = slots[1].vote if len(slots) > 1 else None
        outcome = outcome_from_votes(first, second, providers_requested=len(slots))
        return ItemEvaluation(slots=slots, consensus=resolve(outcome, self._thresholds))

    # ------------------------------------------------------------------
    # Chunk processing
    # ------------------------------------------------------------------

    async def classify_chunk(self, scan_id: str, item_ids: Sequence[str]) -> Dict[str, Any]:
        """Classify a chunk of items. Never raises."""
        stats = {CLASSIFIED: 0, ALREADY_CLASSIFIED: 0, MISSING: 0, FALLBACK: 0, SCAN_INACTIVE: 0}

        try:
            providers = self._provider_factory()
        except Exception as e:
            logger.error(f"Scan {scan_id}: could not create classification providers: {e}", exc_info=True)
            providers = []

        try:
            for position, item_id in enumerate(item_ids):
                try:
                    if not providers:
                        raise RuntimeError("no classification providers available")
                    outcome = await self._classify_item(scan_id, item_id, providers)
                except Exception as e:
                    logger.error(f"Scan {scan_id}: classification failed for item {item_id}: {e}", exc_info=True)
                    outcome = await self._write_fallback_safely(scan_id, item_id, f"Classification failed: {e}")

                stats[outcome] += 1
                if outcome == SCAN_INACTIVE:
                    stats[SCAN_INACTIVE] = len(item_ids) - position
                    logger.info(f"Scan {scan_id} left classifying, stopping chunk")
                    break
        finally:
            for provider in providers:
                try:
                    await provider.aclose()
                except Exception as e:
                    logger.debug(f"Error closing provider {provider.name}: {e}")

        logger.info(f"Scan {scan_id}: classify chunk done {stats}")
        return stats

    async def _classify_item(self, scan_id: str, item_id: str, providers: Sequence[LLMProvider]) -> str:
        async with self._db.get_session() as session:
            if not await self._state.is_in_stage(session, scan_id, SCAN_CLASSIFYING):
                return SCAN_INACTIVE
            item = await session.get(Item, as_uuid(item_id))
            if item is None:
                return MISSING
            existing = await self._get_classification(session, item_id)
            if existing is not None and existing.final_decision in TERMINAL_DECISIONS:
                return ALREADY_CLASSIFIED
            request = await build_classification_request(session, item)

        evaluation = await self.evaluate(providers, request)

        try:
            async with self._db.get_session() as session:
                if not await self._state.is_in_stage(session, scan_id, SCAN_CLASSIFYING):
                    return SCAN_INACTIVE
                if not await self._lock_item(session, item_id):
                    return MISSING
                existing = await self._get_classification(session, item_id)
                if existing is not None:
                    if existing.final_decision in TERMINAL_DECISIONS:
                        return ALREADY_CLASSIFIED
                    await self._delete_leftover(session, item_id)

                session.add(self.build_classification(scan_id, item_id, evaluation))
                await session.flush()
                await self._state.increment(session, scan_id, items_classified=1)
        except IntegrityError:
            logger.info(f"Item {item_id} classified concurrently by another worker")
            return ALREADY_CLASSIFIED

        logger.debug(
            f"Item {item_id}: {evaluation.consensus.decision} "
            f"(score={evaluation.consensus.score:.2f}, path={evaluation.consensus.path})"
        )
        return CLASSIFIED

    def build_classification(self, scan_id: str, item_id: str, evaluation: ItemEvaluation) -> Classification:
        row = Classification(
            item_id=as_uuid(item_id),
            scan_id=as_uuid(scan_id) if scan_id is not None else None,
            combined_score=evaluation.consensus.score,
            final_decision=evaluation.consensus.decision,
            classified_at=datetime.utcnow(),
        )
        for prefix, slot in zip(("primary", "secondary"), evaluation.slots):
            setattr(row, f"{prefix}_provider", slot.provider)
            setattr(row, f"{prefix}_completed", slot.ok)
            if slot.ok:
                setattr(row, f"{prefix}_verdict", slot.response.verdict)
                setattr(row, f"{prefix}_confidence", slot.response.confidence)
                setattr(row, f"{prefix}_category", slot.response.category)
                setattr(row, f"{prefix}_reasoning", slot.response.reasoning)
            else:
                setattr(row, f"{prefix}_reasoning", f"Provider error: {slot.error}")
        return row

    # ------------------------------------------------------------------
    # Fallback
    # ------------------------------------------------------------------

    async def _write_fallback_safely(self, scan_id: str, item_id: str, reasoning: str) -> str:
        try:
            return await self.write_fallback(scan_id, item_id, CHUNK_FAILURE_CATEGORY, reasoning)
        except Exception as e:
            # The classification finalizer gap-fills this item
            logger.error(f"Scan {scan_id}: fallback discard failed for item {item_id}: {e}", exc_info=True)
            return FALLBACK

    async def write_fallback(self, scan_id: str, item_id: str, category: str, reasoning: str) -> str:
        """Write a terminal discard under the item lock, never replacing a terminal result."""
        try:
            async with self._db.get_session() as session:
                if not await self._state.is_in_stage(session, scan_id, SCAN_CLASSIFYING):
                    return SCAN_INACTIVE
                if not await self._lock_item(session, item_id):
                    return MISSING
                existing = await self._get_classification(session, item_id)
                if existing is not None:
                    if existing.final_decision in TERMINAL_DECISIONS:
                        return ALREADY_CLASSIFIED
                    await self._delete_leftover(session, item_id)
                session.add(discard_classification(item_id, scan_id, category, reasoning[:2000]))
                await session.flush()
                await self._state.increment(session, scan_id, items_classified=1)
        except IntegrityError:
            return ALREADY_CLASSIFIED
        return FALLBACK

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _lock_item(session: AsyncSession, item_id: str) -> bool:
        result = await session.execute(select(Item.id).where(Item.id == as_uuid(item_id)).with_for_update())
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def _get_classification(session: AsyncSession, item_id: str) -> Optional[Classification]:
        result = await session.execute(
            select(Classification)
            .where(Classification.item_id == as_uuid(item_id))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _delete_leftover(session: AsyncSession, item_id: str) -> None:
        logger.info(f"Item {item_id}: removing non-terminal classification left by an earlier attempt")
        await session.execute(
            delete(Classification)
            .where(Classification.item_id == as_uuid(item_id))
            .execution_options(synchronize_session=False)
        )
        await session.flush()


# Global singleton instance
classification_worker = ClassificationWorker()
