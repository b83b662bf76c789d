# backend/ideascan/core/models/scan_models.py
"""
Scan status model exposed to the UI layer.
"""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel

from ..database.models import (
    ACTIVE_SCAN_STATUSES,
    SCAN_CLASSIFYING,
    SCAN_COMPLETED,
    SCAN_EXTRACTING,
    SCAN_FAILED,
    SCAN_FETCHING,
    SCAN_PENDING,
    Scan,
)

SCAN_DELETED = "deleted"

PROGRESS_PERCENT: Dict[str, int] = {
    SCAN_PENDING: 0,
    SCAN_FETCHING: 25,
    SCAN_CLASSIFYING: 50,
    SCAN_EXTRACTING: 75,
    SCAN_COMPLETED: 100,
    SCAN_FAILED: 0,
}

STATUS_MESSAGES: Dict[str, str] = {
    SCAN_PENDING: "Waiting to start...",
    SCAN_FETCHING: "Fetching posts and comments...",
    SCAN_CLASSIFYING: "Classifying posts...",
    SCAN_EXTRACTING: "Extracting ideas...",
    SCAN_COMPLETED: "Scan completed",
    SCAN_FAILED: "Scan failed",
    SCAN_DELETED: "Scan no longer exists",
}


class ScanStatus(BaseModel):
    """
    Snapshot of a scan's progress.

    Attributes:
        scan_id: Scan UUID as string
        status: pending | fetching | classifying | extracting | completed | failed | deleted
        progress_percent: fixed mapping of status (see PROGRESS_PERCENT)
        counters: items_fetched, items_classified, items_extracted, ideas_found
        error: error message for failed scans
    """
    scan_id: str
    topic_id: Optional[str] = None
    scan_type: Optional[str] = None
    status: str
    status_message: str = ""
    progress_percent: int = 0
    items_fetched: int = 0
    items_classified: int = 0
    items_extracted: int = 0
    ideas_found: int = 0
    error: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def counters(self) -> Dict[str, int]:
        return {
            "items_fetched": self.items_fetched,
            "items_classified": self.items_classified,
            "items_extracted": self.items_extracted,
            "ideas_found": self.ideas_found,
        }

    @property
    def is_in_progress(self) -> bool:
        return self.status in ACTIVE_SCAN_STATUSES

    @property
    def is_completed(self) -> bool:
        return self.status == SCAN_COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == SCAN_FAILED

    @classmethod
    def from_scan(cls, scan: Scan) -> "ScanStatus":
        return cls(
            scan_id=str(scan.id),
            topic_id=str(scan.topic_id),
            scan_type=scan.scan_type,
            status=scan.status,
            status_message=scan.error_message if scan.status == SCAN_FAILED and scan.error_message
            else STATUS_MESSAGES.get(scan.status, ""),
            progress_percent=PROGRESS_PERCENT.get(scan.status, 0),
            items_fetched=scan.items_fetched or 0,
            items_classified=scan.items_classified or 0,
            items_extracted=scan.items_extracted or 0,
            ideas_found=scan.ideas_found or 0,
            error=scan.error_message,
            date_from=scan.date_from,
            date_to=scan.date_to,
            started_at=scan.started_at,
            completed_at=scan.completed_at,
        )

    @classmethod
    def deleted(cls, scan_id) -> "ScanStatus":
        return cls(
            scan_id=str(scan_id),
            status=SCAN_DELETED,
            status_message=STATUS_MESSAGES[SCAN_DELETED],
            progress_percent=0,
        )
