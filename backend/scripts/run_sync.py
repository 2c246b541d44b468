#!/usr/bin/env python3
"""Run an ingestion job by hand, outside the cron endpoints."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from database import async_session, dispose_engine
from services.account_insights import AccountInsightsJob
from services.errors import PipelineError
from services.follower_snapshot import FollowerSnapshotJob
from services.graph_client import open_graph_client
from services.media_sync import MediaSyncJob
from services.metric_store import MetricStore


async def run(args: argparse.Namespace) -> dict:
    try:
        async with async_session() as db, open_graph_client() as graph:
            store = MetricStore(db)
            followers = FollowerSnapshotJob(store)
            if args.job == "media":
                report = await MediaSyncJob(store, graph, followers=followers).run(
                    account_id=args.account, lookback_days=args.lookback_days
                )
            elif args.job == "backfill":
                report = await AccountInsightsJob(store, graph).backfill(args.account, days=args.days)
            else:
                report = await AccountInsightsJob(store, graph, followers=followers).run(debug=args.debug)
    finally:
        await dispose_engine()
    return report.model_dump(mode="json")


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s :: %(message)s")

    parser = argparse.ArgumentParser(description="Run a Creator Insights sync job.")
    parser.add_argument("job", choices=["media", "insights", "backfill"])
    parser.add_argument("--account", help="Canonical account id (default: all accounts).")
    parser.add_argument("--lookback-days", type=int, help="Media sync lookback window.")
    parser.add_argument("--days", type=int, help="Backfill window in days.")
    parser.add_argument("--debug", action="store_true", help="Read back snapshots after writing.")
    args = parser.parse_args(argv)

    if args.job == "backfill" and not args.account:
        parser.error("backfill requires --account")

    try:
        report = asyncio.run(run(args))
    except PipelineError as e:
        report = {"ok": False, "error": e.code, "message": e.message}
    print(json.dumps(report, indent=2))
    return 0 if report.get("ok") else 1


if __name__ == "__main__":
    raise SystemExit(main())
