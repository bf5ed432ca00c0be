#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from checkwatch.logging_utils import setup_json_logging
from checkwatch.services.dispatch import drain_side_effects
from checkwatch.services.missed_checkins import detect_missed_check_ins
from checkwatch.services.transfers import process_transfers
from checkwatch.settings import get_settings

JOBS = ("transfers", "missed-check-ins", "drain")


def _parse_now(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def run(job: str, now_utc: datetime) -> dict:
    if job == "transfers":
        result = process_transfers(now_utc)
    elif job == "missed-check-ins":
        result = detect_missed_check_ins(now_utc)
    else:
        result = None

    # Jobs only enqueue their events and notifications; persist them before exiting.
    drained = drain_side_effects()
    return {
        "job": job,
        "now_utc": now_utc.isoformat(),
        "result": asdict(result) if result is not None else None,
        "side_effects": asdict(drained),
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run one CheckWatch background job once.")
    parser.add_argument("job", choices=JOBS)
    parser.add_argument("--now", help="ISO-8601 instant to run as (defaults to the current time).")
    args = parser.parse_args(argv)

    setup_json_logging(get_settings().log_level)
    report = run(args.job, _parse_now(args.now))
    print(json.dumps(report, ensure_ascii=False, indent=2))
    result = report["result"] or {}
    return 1 if result.get("companies_failed") else 0


if __name__ == "__main__":
    sys.exit(main())
