"""
Hourly dispatch pass.

For every active subscription whose local (weekday, hour) matches its
schedule, emit one `scan/process` event. A dispatch_log row per
(subscription, UTC hour) makes the pass safe to re-run inside the same hour.

A subscription whose scan is still running is skipped. If that run has not
been touched for `STALE_RUN_AFTER_S` its worker is gone, so the event is sent
again with the run's id and the new worker resumes it from its last saved step.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from . import config
from .events import SCAN_PROCESS, EventBus, scan_process_payload
from .models import ScanRun
from .repository import ScanRepository
from .schedule import effective_schedule, is_due, utc_hour_key

logger = logging.getLogger(__name__)


def is_stale(run: ScanRun, now: datetime, stale_after_s: int = config.STALE_RUN_AFTER_S) -> bool:
    last = run.updated_at or run.started_at
    if last is None:
        return True
    if last.tzinfo is None:
        # SQLite hands back naive datetimes; they were written as UTC.
        last = last.replace(tzinfo=timezone.utc)
    return now - last >= timedelta(seconds=stale_after_s)


def dispatch_due_scans(
    repo: ScanRepository,
    bus: EventBus,
    now: Optional[datetime] = None,
    *,
    stale_after_s: int = config.STALE_RUN_AFTER_S,
    resume_stale: bool = config.RESUME_STALE_RUNS,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    hour_key = utc_hour_key(now)

    subs = repo.active_subscriptions()
    queued: List[Dict[str, Any]] = []
    skipped: Dict[str, int] = {"already_dispatched": 0, "in_flight": 0}
    resumed = 0
    errors = 0

    for sub in subs:
        try:
            if not is_due(sub, now):
                continue

            scan_id = None
            active = repo.find_active_run(sub.lead_id, sub.id)
            if active is not None:
                if not (resume_stale and is_stale(active, now, stale_after_s)):
                    skipped["in_flight"] += 1
                    logger.info("subscription %s: scan %s still in flight, skipping", sub.id, active.id)
                    continue
                scan_id = active.id

            if not repo.record_dispatch(sub.id, hour_key):
                skipped["already_dispatched"] += 1
                continue

            payload = scan_process_payload(
                domain=sub.domain,
                lead_id=sub.lead_id,
                email=sub.email,
                domain_subscription_id=sub.id,
                scan_id=scan_id,
            )
            try:
                bus.send(SCAN_PROCESS, payload)
            except Exception:
                # Let the next pass in this hour try again.
                repo.forget_dispatch(sub.id, hour_key)
                raise

            if scan_id is not None:
                resumed += 1
                logger.warning("subscription %s: resuming stale scan %s (%s)", sub.id, scan_id, active.status)

            day, hour, tz = effective_schedule(sub)
            queued.append({"subscription_id": sub.id, "domain": sub.domain, "email": sub.email, "scan_id": scan_id})
            logger.info(
                json.dumps(
                    {
                        "event": "scan_dispatched",
                        "subscription_id": sub.id,
                        "domain": sub.domain,
                        "schedule": {"day": day, "hour": hour, "tz": tz},
                        "utc_hour": hour_key,
                        "resumed_scan_id": scan_id,
                    },
                    sort_keys=True,
                )
            )
        except Exception:
            errors += 1
            logger.exception("dispatch failed for subscription %s", sub.id)

    summary = {
        "utc_hour": hour_key,
        "active_subscriptions": len(subs),
        "queued": len(queued),
        "resumed": resumed,
        "subscriptions": queued,
        "skipped": skipped,
        "errors": errors,
    }
    if not queued:
        summary["message"] = "No scans due this hour"
    logger.info(json.dumps({"event": "dispatch_pass_done", **{k: v for k, v in summary.items() if k != "subscriptions"}}, sort_keys=True))
    return summary
