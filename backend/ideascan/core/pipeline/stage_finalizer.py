# backend/ideascan/core/pipeline/stage_finalizer.py
"""
Stage entry and finalization for the classify and extract stages.

Entry (start_classification / start_extraction):
    select the items the stage still has to process, claim the batch
    guard, and dispatch them as one chunk batch whose callback is the
    stage finalizer. No items means the finalizer is dispatched directly.

Finalization (runs once per batch, after every chunk job finished):
    1. completeness sweep (classify only): any item of the scan without a
       terminal classification gets a synthetic discard
    2. counter reconciliation: recompute the stage counter from persisted
       rows and overwrite it
    3. advance the scan and release the batch guard

The classification finalizer re-run after a crash between its transition
and its dispatch sees the scan already extracting and only re-dispatches
the extract entry job.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ...config import settings
from ..database.models import (
    EXTRACTABLE_DECISIONS,
    SCAN_CLASSIFYING,
    SCAN_EXTRACTING,
    TERMINAL_DECISIONS,
    Classification,
    Item,
)
from ..shared.database_service import DatabaseService, database_service
from .batch_guard import STAGE_CLASSIFY, STAGE_EXTRACT, BatchGuard, batch_guard
from .classification_worker import discard_classification
from .dispatcher import PipelineDispatcher, celery_dispatcher, chunked
from .scan_state_service import ScanStateService, as_uuid, scan_state_service

logger = logging.getLogger("ideascan.pipeline.finalizer")

GAP_FILL_CATEGORY = "finalization-gap-fill"
GAP_FILL_REASONING = "Post was not classified before finalization"


class StageFinalizer:
    def __init__(
        self,
        database: Optional[DatabaseService] = None,
        state: Optional[ScanStateService] = None,
        dispatcher: Optional[PipelineDispatcher] = None,
        guard: Optional[BatchGuard] = None,
    ):
        self._db = database or database_service
        self._state = state or scan_state_service
        self._dispatcher = dispatcher or celery_dispatcher
        self._guard = guard or batch_guard

    # ------------------------------------------------------------------
    # Stage entry
    # ------------------------------------------------------------------

    async def start_classification(self, scan_id: str) -> Dict[str, Any]:
        """Dispatch classify chunks for every item lacking a terminal classification."""
        async with self._db.get_session() as session:
            if not await self._state.is_in_stage(session, scan_id, SCAN_CLASSIFYING):
                logger.info(f"Scan {scan_id} not classifying, skipping classification start")
                return {"status": "skipped"}
            item_ids = await self._unclassified_item_ids(session, scan_id)

        if not item_ids:
            logger.info(f"Scan {scan_id}: nothing to classify, finalizing")
            self._dispatcher.finalize_classification(scan_id)
            return {"status": "empty", "items": 0}

        if not await self._guard.claim(scan_id, STAGE_CLASSIFY):
            return {"status": "already_dispatched"}

        chunks = chunked(item_ids, settings.classify_chunk_size)
        self._dispatcher.classify_batch(scan_id, chunks)
        return {"status": "dispatched", "items": len(item_ids), "chunks": len(chunks)}

    async def start_extraction(self, scan_id: str) -> Dict[str, Any]:
        """Dispatch extract chunks for every keep/borderline item not yet extracted."""
        async with self._db.get_session() as session:
            if not await self._state.is_in_stage(session, scan_id, SCAN_EXTRACTING):
                logger.info(f"Scan {scan_id} not extracting, skipping extraction start")
                return {"status": "skipped"}
            result = await session.execute(
                select(Item.id)
                .join(Classification, Classification.item_id == Item.id)
                .where(
                    Item.scan_id == as_uuid(scan_id),
                    Item.extracted_at.is_(None),
                    Classification.final_decision.in_(EXTRACTABLE_DECISIONS),
                )
                .order_by(Classification.combined_score.desc())
            )
            item_ids = [str(i) for i in result.scalars().all()]

        if not item_ids:
            logger.info(f"Scan {scan_id}: nothing to extract, finalizing")
            self._dispatcher.finalize_extraction(scan_id)
            return {"status": "empty", "items": 0}

        if not await self._guard.claim(scan_id, STAGE_EXTRACT):
            return {"status": "already_dispatched"}

        chunks = chunked(item_ids, settings.extract_chunk_size)
        self._dispatcher.extract_batch(scan_id, chunks)
        return {"status": "dispatched", "items": len(item_ids), "chunks": len(chunks)}

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def finalize_classification(self, scan_id: str) -> Dict[str, Any]:
        redispatch = False
        moved = False
        gap_filled = 0
        async with self._db.get_session() as session:
            status = await self._state.get_status(session, scan_id)
            if status == SCAN_EXTRACTING:
                redispatch = True
            elif status != SCAN_CLASSIFYING:
                logger.info(f"Scan {scan_id} is {status}, classification finalizer is a no-op")
                return {"status": "skipped"}
            else:
                gap_filled = await self._gap_fill(session, scan_id)
                await self._reconcile_classified(session, scan_id)
                moved = await self._state.transition(session, scan_id, SCAN_CLASSIFYING, SCAN_EXTRACTING)

        if redispatch:
            logger.info(f"Scan {scan_id} already extracting, re-dispatching extraction start")
            await self._guard.release(scan_id, STAGE_CLASSIFY)
            self._dispatcher.start_extraction(scan_id)
            return {"status": "redispatched"}

        await self._guard.release(scan_id, STAGE_CLASSIFY)
        if moved:
            self._dispatcher.start_extraction(scan_id)
        return {"status": "advanced" if moved else "skipped", "gap_filled": gap_filled}

    async def finalize_extraction(self, scan_id: str) -> Dict[str, Any]:
        async with self._db.get_session() as session:
            if not await self._state.is_in_stage(session, scan_id, SCAN_EXTRACTING):
                logger.info(f"Scan {scan_id} not extracting, extraction finalizer is a no-op")
                return {"status": "skipped"}
            await self._reconcile_extracted(session, scan_id)
            moved = await self._state.mark_completed(session, scan_id)

        await self._guard.release(scan_id, STAGE_EXTRACT)
        return {"status": "completed" if moved else "skipped"}

    # ------------------------------------------------------------------
    # Sweep and reconciliation
    # ------------------------------------------------------------------

    async def _unclassified_item_ids(self, session: AsyncSession, scan_id: str) -> List[str]:
        result = await session.execute(
            select(Item.id)
            .outerjoin(
                Classification,
                and_(
                    Classification.item_id == Item.id,
                    Classification.final_decision.in_(TERMINAL_DECISIONS),
                ),
            )
            .where(Item.scan_id == as_uuid(scan_id), Classification.id.is_(None))
            .order_by(Item.created_at)
        )
        return [str(i) for i in result.scalars().all()]

    async def _gap_fill(self, session: AsyncSession, scan_id: str) -> int:
        item_ids = await self._unclassified_item_ids(session, scan_id)
        if not item_ids:
            return 0

        ids = [as_uuid(i) for i in item_ids]
        await session.execute(
            delete(Classification)
            .where(Classification.item_id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        for item_id in item_ids:
            session.add(discard_classification(item_id, scan_id, GAP_FILL_CATEGORY, GAP_FILL_REASONING))
        await session.flush()
        logger.warning(f"Scan {scan_id}: gap-filled {len(item_ids)} unclassified item(s) as discard")
        return len(item_ids)

    async def _reconcile_classified(self, session: AsyncSession, scan_id: str) -> int:
        result = await session.execute(
            select(func.count(Classification.id))
            .join(Item, Item.id == Classification.item_id)
            .where(
                Item.scan_id == as_uuid(scan_id),
                Classification.final_decision.in_(TERMINAL_DECISIONS),
            )
        )
        actual = result.scalar_one()
        await self._write_reconciled(session, scan_id, "items_classified", actual)
        return actual

    async def _reconcile_extracted(self, session: AsyncSession, scan_id: str) -> int:
        result = await session.execute(
            select(func.count(Item.id))
            .join(Classification, Classification.item_id == Item.id)
            .where(
                Item.scan_id == as_uuid(scan_id),
                Item.extracted_at.is_not(None),
                Classification.final_decision.in_(EXTRACTABLE_DECISIONS),
            )
        )
        actual = result.scalar_one()
        await self._write_reconciled(session, scan_id, "items_extracted", actual)
        return actual

    async def _write_reconciled(self, session: AsyncSession, scan_id: str, column: str, actual: int) -> None:
        scan = await self._state.get_scan(session, scan_id)
        recorded = getattr(scan, column) or 0
        if recorded != actual:
            logger.warning(f"Scan {scan_id}: {column} drifted (recorded={recorded}, actual={actual}), correcting")
        await self._state.set_counters(session, scan_id, **{column: actual})


# Global singleton instance
stage_finalizer = StageFinalizer()
