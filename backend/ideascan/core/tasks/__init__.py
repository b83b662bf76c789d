"""
Celery tasks package for ideascan.

Re-exports the task functions. Celery discovers tasks via the include=
list in celery_app.py, which references each submodule directly.
"""

from ideascan.core.tasks.scans import (
    begin_scan_task,
    check_fetch_complete_task,
    classify_chunk_task,
    extract_chunk_task,
    fetch_items_task,
    fetch_replies_task,
    finalize_classification_task,
    finalize_extraction_task,
    start_classification_task,
    start_extraction_task,
)

__all__ = [
    "begin_scan_task",
    "check_fetch_complete_task",
    "classify_chunk_task",
    "extract_chunk_task",
    "fetch_items_task",
    "fetch_replies_task",
    "finalize_classification_task",
    "finalize_extraction_task",
    "start_classification_task",
    "start_extraction_task",
]
