#!/usr/bin/env python3
"""Audit log retention sweep and anomaly report.

Usage:
    python scripts/audit_maintenance.py                 # cleanup + report
    python scripts/audit_maintenance.py --report-only
    python scripts/audit_maintenance.py --retention-days 180

Suitable for cron; exits 2 when the report is not empty so a wrapper can
alert on it.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run(retention_days: Optional[int], report_only: bool) -> dict:
    from hikariauth.config import get_settings
    from hikariauth.service.runtime import Runtime

    runtime = Runtime.from_settings(get_settings())
    await runtime.startup()
    try:
        deleted = None
        if not report_only:
            deleted = await runtime.audit.cleanup(retention_days)
        report = await runtime.anomaly.detect()
    finally:
        await runtime.shutdown()
    return {"deleted": deleted, "report": report.to_dict(), "empty": report.is_empty}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Hikari Chat audit log maintenance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Delete entries older than this (defaults to AUDIT_RETENTION_DAYS)",
    )
    parser.add_argument(
        "--report-only",
        action="store_true",
        help="Skip the retention sweep",
    )
    args = parser.parse_args()

    if args.retention_days is not None and args.retention_days < 1:
        print("Error: --retention-days must be at least 1")
        sys.exit(1)

    try:
        result = asyncio.run(run(args.retention_days, args.report_only))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))
    sys.exit(0 if result["empty"] else 2)


if __name__ == "__main__":
    main()
