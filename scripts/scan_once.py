#!/usr/bin/env python
"""
scan_once.py

Run one website scan in-process (no Prefect), or print a run's status.

    python scripts/scan_once.py example.com.au --lead-id <uuid>
    python scripts/scan_once.py --status <run_id>

The scan needs DATABASE_URL and AI_GATEWAY_API_KEY (a .env file is loaded).
A lead row is created for --email/--domain if --lead-id is not given.
"""

import argparse
import json
import logging
import os
import sys
import uuid

from dotenv import load_dotenv

# Ensure project root is on sys.path so `outrank` can be imported
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from outrank.crawler import normalize_domain  # noqa: E402
from outrank.errors import ScanAlreadyInFlight, ScanNotFound  # noqa: E402
from outrank.pipeline import ScanPipeline  # noqa: E402
from outrank.progress import scan_status_view  # noqa: E402
from outrank.repository import ScanRepository  # noqa: E402
from outrank.schema import Lead  # noqa: E402


def parse_args():
    p = argparse.ArgumentParser(description="Run one AI visibility scan")
    p.add_argument("domain", nargs="?", help="Website to scan, e.g. example.com.au")
    p.add_argument("--lead-id", default=None)
    p.add_argument("--email", default="")
    p.add_argument("--subscription-id", default=None)
    p.add_argument("--scan-id", default=None, help="Resume (or create with) this run id")
    p.add_argument("--status", metavar="RUN_ID", default=None, help="Print the status view for a run and exit")
    p.add_argument("--init-schema", action="store_true", help="Create missing tables first")
    p.add_argument("--verbose", action="store_true")
    return p.parse_args()


def _ensure_lead(repo: ScanRepository, domain: str, email: str) -> str:
    lead_id = str(uuid.uuid4())
    with repo.session() as s:
        s.add(Lead(id=lead_id, email=email or None, domain=domain))
    return lead_id


def main() -> int:
    load_dotenv()
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    repo = ScanRepository.from_env()
    if args.init_schema:
        repo.ensure_schema()

    if args.status:
        try:
            run = repo.get_scan_run(args.status)
        except ScanNotFound:
            print(json.dumps({"error": "Scan not found"}))
            return 1
        report = repo.get_report(run.id) or {}
        print(json.dumps(scan_status_view(run, report.get("url_token")), indent=2))
        return 0

    if not args.domain:
        print("domain is required unless --status is given", file=sys.stderr)
        return 2

    domain = normalize_domain(args.domain)
    lead_id = args.lead_id or _ensure_lead(repo, domain, args.email)

    try:
        result = ScanPipeline(repo).run(domain, lead_id, args.subscription_id, args.scan_id)
    except ScanAlreadyInFlight as e:
        print(json.dumps({"status": "skipped", "reason": "in_flight", "run_id": e.run_id}))
        return 1

    print(json.dumps(result, indent=2))
    return 0 if result.get("status") == "complete" else 1


if __name__ == "__main__":
    sys.exit(main())
