# backend/ideascan/core/pipeline/scan_state_service.py
"""
Scan state machine.

Owns the scan row's status, counters and checkpoint. Every transition is
a single conditional UPDATE ... WHERE status = :expected, so the re-read
of the current status and the mutation happen atomically in the database.
A zero-row update means the scan already advanced, is terminal, or was
deleted; callers treat that as a no-op. This is what makes duplicate and
out-of-order job delivery safe.

    pending -> fetching -> classifying -> extracting -> completed
    (any non-terminal) -> failed

Entering a stage resets the counters that stage owns so a re-entrant
dispatch after a crash cannot double count.

All methods take the caller's session; they never commit. The caller's
`database_service.get_session()` block is the transaction boundary.

Usage:
    async with database_service.get_session() as session:
        if await scan_state_service.transition(session, scan_id, SCAN_FETCHING, SCAN_CLASSIFYING):
            dispatcher.start_classification(scan_id)
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import (
    ACTIVE_SCAN_STATUSES,
    SCAN_CLASSIFYING,
    SCAN_COMPLETED,
    SCAN_EXTRACTING,
    SCAN_FAILED,
    SCAN_FETCHING,
    SCAN_PENDING,
    Scan,
    Topic,
)

logger = logging.getLogger("ideascan.pipeline.state")

# Forward transitions; failed is handled by mark_failed()
NEXT_STATUS: Dict[str, str] = {
    SCAN_PENDING: SCAN_FETCHING,
    SCAN_FETCHING: SCAN_CLASSIFYING,
    SCAN_CLASSIFYING: SCAN_EXTRACTING,
    SCAN_EXTRACTING: SCAN_COMPLETED,
}

# Counters owned by each stage, reset on entry
STAGE_RESETS: Dict[str, Dict[str, Any]] = {
    SCAN_FETCHING: {"items_fetched": 0, "child_jobs_total": None, "child_jobs_done": 0},
    SCAN_CLASSIFYING: {"items_classified": 0},
    SCAN_EXTRACTING: {"items_extracted": 0, "ideas_found": 0},
}

COUNTER_COLUMNS = ("items_fetched", "items_classified", "items_extracted", "ideas_found", "child_jobs_done")


def as_uuid(value) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class ScanStateService:
    """Guarded transitions and atomic counter updates for Scan rows."""

    async def get_scan(self, session: AsyncSession, scan_id, for_update: bool = False) -> Optional[Scan]:
        """Fresh read of the scan row (bypasses the identity map)."""
        stmt = select(Scan).where(Scan.id == as_uuid(scan_id)).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_status(self, session: AsyncSession, scan_id) -> Optional[str]:
        result = await session.execute(select(Scan.status).where(Scan.id == as_uuid(scan_id)))
        return result.scalar_one_or_none()

    async def is_in_stage(self, session: AsyncSession, scan_id, expected: str) -> bool:
        """Cooperative guard: True only if the scan exists and is in `expected`."""
        return await self.get_status(session, scan_id) == expected

    async def transition(self, session: AsyncSession, scan_id, from_status: str, to_status: str) -> bool:
        """
        Move a scan forward one stage if it is still in from_status.

        Returns:
            True if this call performed the transition, False if the guard
            did not match (already advanced, terminal, or deleted).

        Raises:
            ValueError: from_status -> to_status is not a forward edge
        """
        if NEXT_STATUS.get(from_status) != to_status:
            raise ValueError(f"Illegal scan transition {from_status} -> {to_status}")

        now = datetime.utcnow()
        values: Dict[str, Any] = {"status": to_status, "updated_at": now}
        values.update(STAGE_RESETS.get(to_status, {}))
        if to_status == SCAN_FETCHING:
            values["started_at"] = now
        if to_status == SCAN_COMPLETED:
            values["completed_at"] = now

        result = await session.execute(
            update(Scan)
            .where(Scan.id == as_uuid(scan_id), Scan.status == from_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        if changed:
            logger.info(f"Scan {scan_id}: {from_status} -> {to_status}")
        else:
            logger.info(f"Scan {scan_id}: transition {from_status} -> {to_status} skipped (guard did not match)")
        return changed

    async def mark_completed(self, session: AsyncSession, scan_id) -> bool:
        """extracting -> completed, stamping the topic's last_scanned_at."""
        if not await self.transition(session, scan_id, SCAN_EXTRACTING, SCAN_COMPLETED):
            return False

        now = datetime.utcnow()
        topic_id = select(Scan.topic_id).where(Scan.id == as_uuid(scan_id)).scalar_subquery()
        await session.execute(
            update(Topic)
            .where(Topic.id == topic_id)
            .values(last_scanned_at=now)
            .execution_options(synchronize_session=False)
        )
        return True

    async def mark_failed(self, session: AsyncSession, scan_id, error_message: str) -> bool:
        """Move any non-terminal scan to failed. No-op for terminal/deleted scans."""
        now = datetime.utcnow()
        result = await session.execute(
            update(Scan)
            .where(Scan.id == as_uuid(scan_id), Scan.status.in_(ACTIVE_SCAN_STATUSES))
            .values(status=SCAN_FAILED, error_message=error_message[:2000], completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        if changed:
            logger.warning(f"Scan {scan_id} marked failed: {error_message}")
        return changed

    async def increment(self, session: AsyncSession, scan_id, **deltas: int) -> None:
        """Atomic `col = col + n` for one or more counters."""
        values = {}
        for column, delta in deltas.items():
            if column not in COUNTER_COLUMNS:
                raise ValueError(f"Unknown scan counter: {column}")
            if delta:
                values[column] = getattr(Scan, column) + delta
        if not values:
            return
        await session.execute(
            update(Scan)
            .where(Scan.id == as_uuid(scan_id))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def set_counters(self, session: AsyncSession, scan_id, **values: int) -> None:
        """Overwrite counters (used by reconciliation)."""
        for column in values:
            if column not in COUNTER_COLUMNS:
                raise ValueError(f"Unknown scan counter: {column}")
        await session.execute(
            update(Scan)
            .where(Scan.id == as_uuid(scan_id))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def set_checkpoint(self, session: AsyncSession, scan_id, checkpoint: Optional[str]) -> None:
        await session.execute(
            update(Scan)
            .where(Scan.id == as_uuid(scan_id))
            .values(checkpoint=checkpoint, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )

    async def begin_child_jobs(self, session: AsyncSession, scan_id, total: int) -> bool:
        """Record how many reply-fetch jobs are about to be dispatched."""
        result = await session.execute(
            update(Scan)
            .where(Scan.id == as_uuid(scan_id), Scan.status == SCAN_FETCHING)
            .values(child_jobs_total=total, child_jobs_done=0)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


# Global singleton instance
scan_state_service = ScanStateService()
