# backend/ideascan/core/pipeline/dispatcher.py
"""
Job dispatch for the scan pipeline.

Pipeline services never call Celery directly; they go through a
PipelineDispatcher so the same stage logic runs under Celery in
production and under an in-process dispatcher in tests.

Stage batches are dispatched as a Celery chord: a group of chunk tasks
with the stage finalizer as the callback, which Celery runs once every
chunk task has finished. Chunk tasks never raise, so the callback always
fires.
"""

import logging
from typing import List, Optional, Sequence

logger = logging.getLogger("ideascan.pipeline.dispatch")


class PipelineDispatcher:
    """Interface for enqueuing pipeline jobs. All ids are passed as strings."""

    def begin_scan(self, scan_id: str) -> None:
        raise NotImplementedError

    def fetch_page(self, scan_id: str, cursor: Optional[str] = None) -> None:
        raise NotImplementedError

    def fetch_replies(self, scan_id: str, item_ids: Sequence[str]) -> None:
        raise NotImplementedError

    def check_fetch_complete(self, scan_id: str, poll: int, countdown: int) -> None:
        raise NotImplementedError

    def start_classification(self, scan_id: str) -> None:
        raise NotImplementedError

    def classify_batch(self, scan_id: str, chunks: List[List[str]]) -> None:
        raise NotImplementedError

    def finalize_classification(self, scan_id: str) -> None:
        raise NotImplementedError

    def start_extraction(self, scan_id: str) -> None:
        raise NotImplementedError

    def extract_batch(self, scan_id: str, chunks: List[List[str]]) -> None:
        raise NotImplementedError

    def finalize_extraction(self, scan_id: str) -> None:
        raise NotImplementedError


class CeleryDispatcher(PipelineDispatcher):
    """Dispatches pipeline jobs as Celery tasks."""

    def begin_scan(self, scan_id: str) -> None:
        from ..tasks.scans import begin_scan_task
        begin_scan_task.apply_async(args=[scan_id])

    def fetch_page(self, scan_id: str, cursor: Optional[str] = None) -> None:
        from ..tasks.scans import fetch_items_task
        fetch_items_task.apply_async(args=[scan_id, cursor])

    def fetch_replies(self, scan_id: str, item_ids: Sequence[str]) -> None:
        from ..tasks.scans import fetch_replies_task
        fetch_replies_task.apply_async(args=[scan_id, list(item_ids)])

    def check_fetch_complete(self, scan_id: str, poll: int, countdown: int) -> None:
        from ..tasks.scans import check_fetch_complete_task
        check_fetch_complete_task.apply_async(args=[scan_id, poll], countdown=countdown)

    def start_classification(self, scan_id: str) -> None:
        from ..tasks.scans import start_classification_task
        start_classification_task.apply_async(args=[scan_id])

    def classify_batch(self, scan_id: str, chunks: List[List[str]]) -> None:
        from celery import chord

        from ..tasks.scans import classify_chunk_task, finalize_classification_task

        header = [classify_chunk_task.si(scan_id, chunk) for chunk in chunks]
        chord(header)(finalize_classification_task.si(scan_id))
        logger.info(f"Scan {scan_id}: dispatched {len(chunks)} classify chunk(s)")

    def finalize_classification(self, scan_id: str) -> None:
        from ..tasks.scans import finalize_classification_task
        finalize_classification_task.apply_async(args=[scan_id])

    def start_extraction(self, scan_id: str) -> None:
        from ..tasks.scans import start_extraction_task
        start_extraction_task.apply_async(args=[scan_id])

    def extract_batch(self, scan_id: str, chunks: List[List[str]]) -> None:
        from celery import chord

        from ..tasks.scans import extract_chunk_task, finalize_extraction_task

        header = [extract_chunk_task.si(scan_id, chunk) for chunk in chunks]
        chord(header)(finalize_extraction_task.si(scan_id))
        logger.info(f"Scan {scan_id}: dispatched {len(chunks)} extract chunk(s)")

    def finalize_extraction(self, scan_id: str) -> None:
        from ..tasks.scans import finalize_extraction_task
        finalize_extraction_task.apply_async(args=[scan_id])


def chunked(values: Sequence[str], size: int) -> List[List[str]]:
    size = max(1, size)
    return [list(values[i:i + size]) for i in range(0, len(values), size)]


# Global singleton instance
celery_dispatcher = CeleryDispatcher()
