#!/usr/bin/env python
"""
set_schedule.py

Set the weekly scan schedule for one domain subscription.

    python scripts/set_schedule.py <subscription_id> --day 1 --hour 9 --tz Australia/Sydney

Day is 0=Sunday .. 6=Saturday; hour is 0..23 in --tz. Nothing is written if
any value is invalid.
"""

import argparse
import json
import os
import sys

from dotenv import load_dotenv

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from outrank import config  # noqa: E402
from outrank.errors import ScheduleValidationError  # noqa: E402
from outrank.repository import ScanRepository  # noqa: E402
from outrank.schedule import update_scan_schedule  # noqa: E402


def parse_args():
    p = argparse.ArgumentParser(description="Set a subscription's weekly scan schedule")
    p.add_argument("subscription_id")
    p.add_argument("--day", type=int, default=config.DEFAULT_SCHEDULE_DAY, help="0=Sunday .. 6=Saturday")
    p.add_argument("--hour", type=int, default=config.DEFAULT_SCHEDULE_HOUR, help="0..23, local to --tz")
    p.add_argument("--tz", default=config.DEFAULT_SCAN_TIMEZONE, help="IANA timezone name")
    return p.parse_args()


def main() -> int:
    load_dotenv()
    args = parse_args()
    repo = ScanRepository.from_env()

    sub = repo.get_subscription(args.subscription_id)
    if sub is None:
        print(json.dumps({"error": "Subscription not found"}))
        return 1

    try:
        day, hour, tz = update_scan_schedule(repo, args.subscription_id, args.day, args.hour, args.tz)
    except ScheduleValidationError as e:
        print(json.dumps({"error": "Validation failed", "details": str(e)}))
        return 2
    except KeyError:
        print(json.dumps({"error": "Subscription not found"}))
        return 1

    print(
        json.dumps(
            {
                "subscription_id": sub.id,
                "domain": sub.domain,
                "scan_schedule_day": day,
                "scan_schedule_hour": hour,
                "scan_timezone": tz,
            }
        )
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
