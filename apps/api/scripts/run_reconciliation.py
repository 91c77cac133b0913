import argparse
import asyncio
import json
import logging
import os
import sys

# Add parent dir to path to find services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.dedup import detect_duplicate_groups
from services.reconciliation import (
    run_reconciliation,
    sweep_expired_sessions,
    sweep_missing_callbacks,
    sweep_stalled_registrations,
)
from database import async_session_maker


async def run_async(sweep: str, report_duplicates: bool) -> dict:
    print(f"🧹 Running reconciliation sweep: {sweep}")
    if sweep == "stalled":
        result = {"stalled_registrations": await sweep_stalled_registrations()}
    elif sweep == "callbacks":
        result = {"missing_callbacks": await sweep_missing_callbacks()}
    elif sweep == "sessions":
        result = {"expired_sessions": await sweep_expired_sessions()}
    else:
        result = await run_reconciliation()

    if report_duplicates:
        async with async_session_maker() as db:
            groups = await detect_duplicate_groups(db)
        result["duplicate_groups"] = [
            {"external_asset_id": g.external_asset_id, "asset_ids": g.asset_ids} for g in groups
        ]
        if groups:
            print(f"⚠️ Found {len(groups)} duplicate groups; resolve via POST /admin/duplicates/resolve")
    return result


def main():
    parser = argparse.ArgumentParser(description="Repair assets and upload sessions stuck mid-pipeline.")
    parser.add_argument("--sweep", choices=["all", "stalled", "callbacks", "sessions"], default="all")
    parser.add_argument("--report-duplicates", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    result = asyncio.run(run_async(args.sweep, args.report_duplicates))
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
