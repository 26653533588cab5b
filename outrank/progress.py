"""
What a polling client sees for a scan run.

Progress checkpoints written by the orchestrator:

  crawling 10, analyzing 25, generating 35 -> 45,
  querying 50 -> 85 (linear in completed platform queries), complete 100
"""

from __future__ import annotations

import math
from typing import Any, Dict, Optional

from .models import ScanRun, ScanRunStatus

STATUS_MESSAGES: Dict[str, str] = {
    ScanRunStatus.PENDING: "Queued for processing...",
    ScanRunStatus.CRAWLING: "Crawling your website...",
    ScanRunStatus.ANALYZING: "Analyzing your content...",
    ScanRunStatus.GENERATING: "Generating questions for AI...",
    ScanRunStatus.QUERYING: "Querying AI assistants...",
    ScanRunStatus.COMPLETE: "Report ready!",
    ScanRunStatus.FAILED: "Something went wrong",
}

# Seconds remaining, by status.
ESTIMATED_TIME: Dict[str, int] = {
    ScanRunStatus.PENDING: 300,
    ScanRunStatus.CRAWLING: 240,
    ScanRunStatus.ANALYZING: 180,
    ScanRunStatus.GENERATING: 150,
    ScanRunStatus.QUERYING: 90,
    ScanRunStatus.COMPLETE: 0,
    ScanRunStatus.FAILED: 0,
}

PROGRESS_CRAWLING = 10
PROGRESS_ANALYZING = 25
PROGRESS_GENERATING = 35
PROGRESS_GENERATED = 45
PROGRESS_QUERYING_START = 50
PROGRESS_QUERYING_SPAN = 35
PROGRESS_COMPLETE = 100


def querying_progress(completed: int, total: int) -> int:
    if total <= 0:
        return PROGRESS_QUERYING_START
    done = min(max(completed, 0), total)
    return PROGRESS_QUERYING_START + round(done / total * PROGRESS_QUERYING_SPAN)


def estimated_time_remaining(status: str, progress: int) -> int:
    remaining = ESTIMATED_TIME.get(status, 0)
    if status == ScanRunStatus.QUERYING and progress > PROGRESS_QUERYING_START:
        fraction = (progress - PROGRESS_QUERYING_START) / PROGRESS_QUERYING_SPAN
        remaining = max(0, math.ceil(ESTIMATED_TIME[ScanRunStatus.QUERYING] * (1 - fraction)))
    return remaining


def scan_status_view(run: ScanRun, report_token: Optional[str] = None) -> Dict[str, Any]:
    """
    Poll response for one run. `error_message` is only ever the stored
    user-facing message, and only for failed runs.
    """
    status = run.status or ScanRunStatus.PENDING
    progress = run.progress or 0
    failed = status == ScanRunStatus.FAILED
    return {
        "id": run.id,
        "domain": run.domain,
        "status": status,
        "progress": progress,
        "status_message": STATUS_MESSAGES.get(status, "Processing..."),
        "estimated_time_remaining": estimated_time_remaining(status, progress),
        "is_complete": status == ScanRunStatus.COMPLETE,
        "is_failed": failed,
        "error_message": run.error_message if failed else None,
        "report_token": report_token if status == ScanRunStatus.COMPLETE else None,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
    }
