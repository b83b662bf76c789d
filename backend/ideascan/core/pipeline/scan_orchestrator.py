# backend/ideascan/core/pipeline/scan_orchestrator.py
"""
Scan orchestrator: the service API the UI layer calls.

    start_scan(topic_id, date_from?, date_to?, checkpoint?) -> ScanStatus
    get_scan_status(scan_id) -> ScanStatus
    cancel_scan(scan_id) -> ScanStatus
    retry_scan(scan_id) -> new scan id

start_scan runs in one transaction holding a row lock on the topic, so two
concurrent requests for the same topic end up with one scan. The start job
is dispatched only after that transaction committed.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select

from ...config import settings
from ..database.models import (
    ACTIVE_SCAN_STATUSES,
    SCAN_COMPLETED,
    SCAN_FAILED,
    SCAN_PENDING,
    SCAN_TYPE_INITIAL,
    SCAN_TYPE_RESCAN,
    Scan,
    Topic,
)
from ..exceptions import InvalidScanStateError, ScanNotFoundError, TopicNotFoundError
from ..models.scan_models import ScanStatus
from ..shared.database_service import DatabaseService, database_service
from .dispatcher import PipelineDispatcher, celery_dispatcher
from .scan_state_service import ScanStateService, as_uuid, scan_state_service

logger = logging.getLogger("ideascan.services.scan_orchestrator")

CANCEL_MESSAGE = "Scan cancelled by user"
START_FAILED_MESSAGE = "Failed to start scan pipeline"


class ScanOrchestrator:
    def __init__(
        self,
        database: Optional[DatabaseService] = None,
        state: Optional[ScanStateService] = None,
        dispatcher: Optional[PipelineDispatcher] = None,
    ):
        self._db = database or database_service
        self._state = state or scan_state_service
        self._dispatcher = dispatcher or celery_dispatcher

    async def start_scan(
        self,
        topic_id: str,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        checkpoint: Optional[str] = None,
    ) -> ScanStatus:
        """
        Start a scan for a topic, or return the one already running.

        Raises:
            TopicNotFoundError: topic does not exist
        """
        async with self._db.get_session() as session:
            result = await session.execute(
                select(Topic).where(Topic.id == as_uuid(topic_id)).with_for_update()
            )
            topic = result.scalar_one_or_none()
            if topic is None:
                raise TopicNotFoundError(f"Topic not found: {topic_id}")

            result = await session.execute(
                select(Scan)
                .where(Scan.topic_id == topic.id, Scan.status.in_(ACTIVE_SCAN_STATUSES))
                .order_by(Scan.created_at.desc())
                .limit(1)
            )
            active = result.scalar_one_or_none()
            if active is not None:
                logger.info(f"Topic {topic.name} already has scan {active.id} ({active.status})")
                return ScanStatus.from_scan(active)

            result = await session.execute(
                select(Scan.id).where(Scan.topic_id == topic.id, Scan.status == SCAN_COMPLETED).limit(1)
            )
            scan_type = SCAN_TYPE_RESCAN if result.first() is not None else SCAN_TYPE_INITIAL

            weeks = settings.rescan_timeframe_weeks if scan_type == SCAN_TYPE_RESCAN else settings.default_timeframe_weeks
            date_to = date_to or datetime.utcnow()
            date_from = date_from or (date_to - timedelta(weeks=weeks))
            if date_from >= date_to:
                raise ValueError(f"Empty scan window: {date_from} >= {date_to}")

            scan = Scan(
                topic_id=topic.id,
                scan_type=scan_type,
                status=SCAN_PENDING,
                date_from=date_from,
                date_to=date_to,
                checkpoint=checkpoint,
            )
            session.add(scan)
            await session.flush()
            status = ScanStatus.from_scan(scan)

        logger.info(f"Created {scan_type} scan {status.scan_id} for topic {topic_id} ({date_from} .. {date_to})")
        try:
            self._dispatcher.begin_scan(status.scan_id)
        except Exception as e:
            # never leave a pending scan with no job behind it
            logger.error(f"Failed to dispatch scan {status.scan_id}: {e}", exc_info=True)
            async with self._db.get_session() as session:
                await self._state.mark_failed(session, status.scan_id, START_FAILED_MESSAGE)
            raise
        return status

    async def get_scan_status(self, scan_id: str) -> ScanStatus:
        async with self._db.get_session() as session:
            scan = await self._state.get_scan(session, scan_id)
            if scan is None:
                return ScanStatus.deleted(scan_id)
            return ScanStatus.from_scan(scan)

    async def cancel_scan(self, scan_id: str) -> ScanStatus:
        """
        Fail a running scan. In-flight jobs notice at their next status check.

        Raises:
            ScanNotFoundError: scan does not exist
            InvalidScanStateError: scan is already completed or failed
        """
        async with self._db.get_session() as session:
            scan = await self._state.get_scan(session, scan_id)
            if scan is None:
                raise ScanNotFoundError(f"Scan not found: {scan_id}")
            if scan.status not in ACTIVE_SCAN_STATUSES:
                raise InvalidScanStateError(scan_id, scan.status, "cancel")
            if not await self._state.mark_failed(session, scan_id, CANCEL_MESSAGE):
                # finished between the read and the update
                current = await self._state.get_status(session, scan_id)
                raise InvalidScanStateError(scan_id, current or "deleted", "cancel")

        logger.info(f"Scan {scan_id} cancelled")
        return await self.get_scan_status(scan_id)

    async def retry_scan(self, scan_id: str, checkpoint: Optional[str] = None) -> str:
        """
        Start a fresh scan for the failed scan's topic.

        The window is the default one ending now; the cursor is fresh
        unless one is supplied.

        Raises:
            ScanNotFoundError: scan does not exist
            InvalidScanStateError: scan is not failed
        """
        async with self._db.get_session() as session:
            scan = await self._state.get_scan(session, scan_id)
            if scan is None:
                raise ScanNotFoundError(f"Scan not found: {scan_id}")
            if scan.status != SCAN_FAILED:
                raise InvalidScanStateError(scan_id, scan.status, "retry")
            topic_id = str(scan.topic_id)

        status = await self.start_scan(topic_id, checkpoint=checkpoint)
        logger.info(f"Scan {scan_id} retried as {status.scan_id}")
        return status.scan_id

    async def get_scan_history(self, topic_id: str, limit: int = 10) -> List[ScanStatus]:
        async with self._db.get_session() as session:
            result = await session.execute(
                select(Scan)
                .where(Scan.topic_id == as_uuid(topic_id))
                .order_by(Scan.created_at.desc())
                .limit(limit)
            )
            return [ScanStatus.from_scan(scan) for scan in result.scalars().all()]

    async def get_active_scans(self) -> List[ScanStatus]:
        async with self._db.get_session() as session:
            result = await session.execute(
                select(Scan).where(Scan.status.in_(ACTIVE_SCAN_STATUSES)).order_by(Scan.created_at)
            )
            return [ScanStatus.from_scan(scan) for scan in result.scalars().all()]


# Global singleton instance
scan_orchestrator = ScanOrchestrator()
