# flows/scan_dispatcher_flow.py
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from prefect import flow, get_run_logger

from outrank.dispatcher import dispatch_due_scans
from outrank.events import PrefectEventBus
from outrank.repository import ScanRepository

load_dotenv()


@flow(name="hourly-scan-dispatcher", retries=2)
def hourly_scan_dispatcher(now_iso: Optional[str] = None) -> Dict[str, Any]:
    """
    Runs on the hour. Queues a scan for every active subscription whose local
    weekday/hour matches its schedule. Safe to re-run within the same hour.

    `now_iso` overrides the clock for backfills, e.g. "2026-10-18T22:00:00+00:00".
    """
    logger = get_run_logger()
    now = datetime.fromisoformat(now_iso) if now_iso else datetime.now(timezone.utc)

    summary = dispatch_due_scans(ScanRepository.from_env(), PrefectEventBus(), now)
    logger.info(
        json.dumps(
            {
                "event": "hourly_dispatch",
                "utc_hour": summary["utc_hour"],
                "queued": summary["queued"],
                "skipped": summary["skipped"],
                "errors": summary["errors"],
            },
            sort_keys=True,
        )
    )
    return summary


if __name__ == "__main__":
    hourly_scan_dispatcher()
