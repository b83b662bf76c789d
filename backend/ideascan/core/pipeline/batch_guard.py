# backend/ideascan/core/pipeline/batch_guard.py
"""
Duplicate batch-dispatch guard for the classify and extract stages.

The entry job of a stage claims a per-scan, per-stage lock before it fans
out a chunk batch; a redelivered entry job finds the lock held and does
nothing. The stage finalizer releases the lock. The lock expires after
batch_stale_after_seconds, after which a batch is considered stale and a
new dispatch is allowed.
"""

import logging
from typing import Optional

from ...config import settings
from ..shared.lock_service import LockService, lock_service

logger = logging.getLogger("ideascan.pipeline.batch_guard")

STAGE_CLASSIFY = "classify"
STAGE_EXTRACT = "extract"


class BatchGuard:
    def __init__(self, locks: Optional[LockService] = None, stale_after_seconds: Optional[int] = None):
        self._locks = locks or lock_service
        self._stale_after = stale_after_seconds or settings.batch_stale_after_seconds

    @staticmethod
    def resource_name(scan_id: str, stage: str) -> str:
        return f"scan:{scan_id}:{stage}-batch"

    async def claim(self, scan_id: str, stage: str) -> bool:
        lock_id = await self._locks.acquire_lock(self.resource_name(scan_id, stage), timeout=self._stale_after)
        if lock_id is None:
            logger.info(f"Scan {scan_id}: {stage} batch already dispatched, skipping")
            return False
        return True

    async def release(self, scan_id: str, stage: str) -> None:
        await self._locks.force_release(self.resource_name(scan_id, stage))


# Global singleton instance
batch_guard = BatchGuard()
