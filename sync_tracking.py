"""
sync_tracking.py
~~~~~~~~~~~~~~~~

Refresh Shiprocket tracking for every order still in transit.  Meant to
be run from cron or a scheduler.

Usage:
  python sync_tracking.py                 # bulk refresh, default pool size
  python sync_tracking.py --workers 10    # cap concurrent Shiprocket calls at 10
  python sync_tracking.py --order 6512ab  # force-sync a single order
  python sync_tracking.py --json          # machine-readable summary

Exits with status 1 when any order failed to reconcile.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
from typing import List, Optional

from dotenv import load_dotenv

from db import SqlFulfillmentStore, init_db
from errors import FulfillmentError
from shiprocket_client import ShiprocketClient
from tracking import TrackingReconciler


def main(argv: Optional[List[str]] = None, reconciler: Optional[TrackingReconciler] = None) -> int:
    ap = argparse.ArgumentParser(description="Reconcile Shiprocket tracking into local orders")
    ap.add_argument("--workers", type=int, help="Maximum concurrent Shiprocket calls (TRACKING_WORKERS)")
    ap.add_argument("--order", help="Force-sync a single order id instead of the bulk job")
    ap.add_argument("--json", action="store_true", help="Print the result as JSON")
    args = ap.parse_args(argv)

    if reconciler is None:
        load_dotenv()
        logging.basicConfig(
            level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )
        init_db()
        reconciler = TrackingReconciler(ShiprocketClient(), SqlFulfillmentStore(), max_workers=args.workers)
    elif args.workers:
        reconciler.max_workers = args.workers

    if args.order:
        try:
            result = reconciler.force_sync(args.order)
        except FulfillmentError as exc:
            print(json.dumps(exc.to_dict()) if args.json else f"order {args.order}: {exc.message}")
            return 1
        failed = 0
        summary = f"order {args.order}: {result['message']} ({result['previousStatus']} -> {result['newStatus']})"
    else:
        result = reconciler.bulk_update_tracking()
        failed = result["failed"]
        summary = f"{result['successful']}/{result['total']} orders updated, {failed} failed"
        for failure in result["failures"]:
            summary += f"\n  {failure['orderId']}: {failure['error']}"

    print(json.dumps(result, ensure_ascii=False, indent=2, default=str) if args.json else summary)
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
