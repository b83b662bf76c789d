"""
Scan pipeline Celery tasks.

Each task is a thin synchronous wrapper that runs one pipeline operation
with asyncio.run(). All decisions live in the pipeline services; tasks only
translate the final outcome of a failure into the scan's failed state.

Queues:
    fetch           begin, item pages, reply chunks, completion check
    classify        classification entry and finalizer
    classify_chunk  classify chunk jobs
    extract         extraction entry and finalizer
    extract_chunk   extract chunk jobs
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from ideascan.celery_app import app as celery_app
from ideascan.core.pipeline.classification_worker import classification_worker
from ideascan.core.pipeline.extraction_worker import extraction_worker
from ideascan.core.pipeline.fetch_stage import fetch_stage
from ideascan.core.pipeline.scan_state_service import scan_state_service
from ideascan.core.pipeline.stage_finalizer import stage_finalizer
from ideascan.core.shared.database_service import database_service
from ideascan.core.shared.lock_service import lock_service

logger = logging.getLogger("ideascan.tasks.scans")


async def _run(coro):
    """Run a pipeline coroutine, dropping pooled connections bound to this event loop."""
    try:
        return await coro
    finally:
        await database_service.close()
        await lock_service.close()


async def _mark_failed_async(scan_id: str, message: str) -> bool:
    async with database_service.get_session() as session:
        return await scan_state_service.mark_failed(session, scan_id, message)


def _fail_scan(scan_id: str, message: str) -> None:
    try:
        asyncio.run(_run(_mark_failed_async(scan_id, message)))
    except Exception as e:
        logger.error(f"Could not mark scan {scan_id} failed: {e}", exc_info=True)


def _retry_or_fail(task, scan_id: str, exc: Exception, message: str):
    """Retry the task with backoff; on the final attempt mark the scan failed and re-raise."""
    if task.request.retries < task.max_retries:
        countdown = min(2 ** (task.request.retries + 1), 30)
        raise task.retry(exc=exc, countdown=countdown)
    _fail_scan(scan_id, f"{message}: {exc}")
    raise exc


# ============================================================================
# FETCH
# ============================================================================

@celery_app.task(bind=True, name="ideascan.tasks.begin_scan", max_retries=2)
def begin_scan_task(self, scan_id: str) -> Dict[str, Any]:
    """pending -> fetching and dispatch the first item page."""
    logger.info(f"Starting scan {scan_id}")
    try:
        started = asyncio.run(_run(fetch_stage.begin(scan_id)))
        return {"scan_id": scan_id, "started": started}
    except Exception as e:
        logger.error(f"Failed to start scan {scan_id}: {e}", exc_info=True)
        _retry_or_fail(self, scan_id, e, "Failed to start scan")


@celery_app.task(bind=True, name="ideascan.tasks.fetch_items")
def fetch_items_task(self, scan_id: str, cursor: Optional[str] = None) -> Dict[str, Any]:
    """
    Fetch one page of items. The page fetch is retried inside the stage;
    a failure here is final for the scan.
    """
    try:
        return asyncio.run(_run(fetch_stage.fetch_page(scan_id, cursor)))
    except Exception as e:
        logger.error(f"Fetch failed for scan {scan_id} (cursor={cursor}): {e}", exc_info=True)
        _fail_scan(scan_id, f"Fetch failed: {e}")
        raise


@celery_app.task(bind=True, name="ideascan.tasks.fetch_replies")
def fetch_replies_task(self, scan_id: str, item_ids: List[str]) -> Dict[str, Any]:
    try:
        return asyncio.run(_run(fetch_stage.fetch_replies(scan_id, item_ids)))
    except Exception as e:
        # The job already counted itself done; the completion check moves on without it
        logger.error(f"Reply fetch failed for scan {scan_id}: {e}", exc_info=True)
        return {"status": "error", "error": str(e)}


@celery_app.task(bind=True, name="ideascan.tasks.check_fetch_complete", max_retries=2)
def check_fetch_complete_task(self, scan_id: str, poll: int = 0) -> Dict[str, Any]:
    try:
        return asyncio.run(_run(fetch_stage.check_fetch_complete(scan_id, poll)))
    except Exception as e:
        logger.error(f"Fetch completion check failed for scan {scan_id}: {e}", exc_info=True)
        _retry_or_fail(self, scan_id, e, "Fetch completion check failed")


# ============================================================================
# CLASSIFY
# ============================================================================

@celery_app.task(bind=True, name="ideascan.tasks.start_classification", max_retries=2)
def start_classification_task(self, scan_id: str) -> Dict[str, Any]:
    try:
        return asyncio.run(_run(stage_finalizer.start_classification(scan_id)))
    except Exception as e:
        logger.error(f"Classification start failed for scan {scan_id}: {e}", exc_info=True)
        _retry_or_fail(self, scan_id, e, "Classification start failed")


@celery_app.task(bind=True, name="ideascan.tasks.classify_chunk")
def classify_chunk_task(self, scan_id: str, item_ids: List[str]) -> Dict[str, Any]:
    """Classify a chunk. Never raises, so the chord callback always runs."""
    try:
        return asyncio.run(_run(classification_worker.classify_chunk(scan_id, item_ids)))
    except Exception as e:
        logger.error(f"Classify chunk crashed for scan {scan_id}: {e}", exc_info=True)
        return {"status": "error", "error": str(e)}


@celery_app.task(bind=True, name="ideascan.tasks.finalize_classification", max_retries=2)
def finalize_classification_task(self, scan_id: str) -> Dict[str, Any]:
    try:
        return asyncio.run(_run(stage_finalizer.finalize_classification(scan_id)))
    except Exception as e:
        logger.error(f"Classification finalizer failed for scan {scan_id}: {e}", exc_info=True)
        _retry_or_fail(self, scan_id, e, "Classification finalization failed")


# ============================================================================
# EXTRACT
# ============================================================================

@celery_app.task(bind=True, name="ideascan.tasks.start_extraction", max_retries=2)
def start_extraction_task(self, scan_id: str) -> Dict[str, Any]:
    try:
        return asyncio.run(_run(stage_finalizer.start_extraction(scan_id)))
    except Exception as e:
        logger.error(f"Extraction start failed for scan {scan_id}: {e}", exc_info=True)
        _retry_or_fail(self, scan_id, e, "Extraction start failed")


@celery_app.task(bind=True, name="ideascan.tasks.extract_chunk")
def extract_chunk_task(self, scan_id: str, item_ids: List[str]) -> Dict[str, Any]:
    """Extract a chunk. Never raises, so the chord callback always runs."""
    try:
        return asyncio.run(_run(extraction_worker.extract_chunk(scan_id, item_ids)))
    except Exception as e:
        logger.error(f"Extract chunk crashed for scan {scan_id}: {e}", exc_info=True)
        return {"status": "error", "error": str(e)}


@celery_app.task(bind=True, name="ideascan.tasks.finalize_extraction", max_retries=2)
def finalize_extraction_task(self, scan_id: str) -> Dict[str, Any]:
    try:
        return asyncio.run(_run(stage_finalizer.finalize_extraction(scan_id)))
    except Exception as e:
        logger.error(f"Extraction finalizer failed for scan {scan_id}: {e}", exc_info=True)
        _retry_or_fail(self, scan_id, e, "Extraction finalization failed")
