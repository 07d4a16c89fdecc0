"""
tracking.py
~~~~~~~~~~~

Reconcile Shiprocket tracking data into local orders, one order at a
time or as a bulk job over every order still in transit.
"""

from __future__ import annotations

import os
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from db import FulfillmentStore
from errors import NoTrackingDataError, NotFoundError, PreconditionError
from shipping_rules import now_iso


logger = logging.getLogger("fulfillment")

# carrier current_status -> (shipping.status, order.status)
STATUS_MAPPING: Dict[str, Tuple[str, str]] = {
    "DELIVERED": ("delivered", "delivered"),
    "OUT FOR DELIVERY": ("shipped", "shipped"),
    "IN TRANSIT": ("shipped", "shipped"),
    "PICKED UP": ("shipped", "shipped"),
    "CANCELLED": ("cancelled", "cancelled"),
    "CANCELED": ("cancelled", "cancelled"),
    "RTO": ("cancelled", "cancelled"),
}

_DATE_FORMATS = (
    "%d %m %Y %H:%M:%S",
    "%d %b %Y %H:%M",
    "%d-%m-%Y %H:%M:%S",
    "%d %b, %Y",
)


def map_status(carrier_status: Optional[str]) -> Optional[Tuple[str, str]]:
    """Return ``(shipping_status, order_status)`` or ``None`` if unknown."""
    if not carrier_status:
        return None
    return STATUS_MAPPING.get(carrier_status.strip().upper())


def parse_carrier_date(value: Any) -> Optional[str]:
    """Normalize a carrier timestamp to ISO-8601; unknown formats pass through."""
    if value is None or value == "":
        return None
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text).isoformat()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).isoformat()
        except ValueError:
            continue
    return text


def merge_history(existing: List[Dict[str, Any]], scans: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Append scans not already recorded, keyed on timestamp + activity."""
    history = list(existing or [])
    seen = {(h.get("timestamp"), h.get("activity")) for h in history}
    for scan in scans:
        key = (scan.get("timestamp"), scan.get("activity"))
        if key in seen:
            continue
        seen.add(key)
        history.append(scan)
    return history


def push_scans(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Scans from a webhook body, in the shape ``track_by_awb`` returns.

    Pushes without a scan list contribute a single scan built from the
    current status.
    """
    scans = [
        {
            "activity": s.get("activity"),
            "location": s.get("location"),
            "date": s.get("date"),
            "status_code": s.get("sr-status"),
        }
        for s in payload.get("scans") or []
    ]
    if scans:
        return scans
    return [{
        "activity": payload.get("current_status") or payload.get("shipment_status"),
        "location": payload.get("location"),
        "date": payload.get("current_timestamp"),
        "status_code": payload.get("current_status_id") or payload.get("current_status_code"),
    }]


class TrackingReconciler:
    """Pulls tracking scans from Shiprocket and merges them into orders."""

    def __init__(self, client, store: FulfillmentStore, max_workers: Optional[int] = None) -> None:
        self.client = client
        self.store = store
        self.max_workers = int(max_workers or os.getenv("TRACKING_WORKERS", "5"))

    def update_tracking_info(self, order_id: str) -> Dict[str, Any]:
        order = self.store.load_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        shipping = order.get("shipping") or {}
        awb = shipping.get("awbCode")
        if not awb:
            raise PreconditionError(f"Order {order_id} has no AWB to track")

        data = self.client.track_by_awb(awb)
        if data.get("status") != 200:
            raise NoTrackingDataError(data.get("message") or "No tracking data available", data)
        return self._apply(order, awb, data.get("current_status"), data.get("scans") or [], data.get("edd"))

    def apply_carrier_push(
        self,
        awb: str,
        carrier_status: str,
        scans: Optional[List[Dict[str, Any]]] = None,
        edd: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Apply a tracking update pushed by Shiprocket's webhook.

        ``scans`` use the client's shape (``activity, location, date,
        status_code``).  Unrecognized statuses are recorded in the history
        but leave the order and shipping statuses alone.
        """
        order = self.store.find_order_by_awb(awb)
        if order is None:
            raise NotFoundError(f"No order found for AWB {awb}")
        logger.info("[WEBHOOK][order=%s] awb=%s status=%s", order["id"], awb, carrier_status)
        return self._apply(order, awb, carrier_status, scans or [], edd)

    def _apply(
        self,
        order: Dict[str, Any],
        awb: str,
        current: Optional[str],
        scans: List[Dict[str, Any]],
        edd: Optional[str],
    ) -> Dict[str, Any]:
        order_id = order["id"]
        shipping = order.get("shipping") or {}
        entries = [
            {
                "activity": scan.get("activity"),
                "location": scan.get("location"),
                "timestamp": parse_carrier_date(scan.get("date")),
                "statusCode": scan.get("status_code"),
            }
            for scan in scans
        ]
        history = merge_history(shipping.get("trackingHistory") or [], entries)
        newest = sorted(entries, key=lambda e: e.get("timestamp") or "", reverse=True)
        location = next((e["location"] for e in newest if e.get("location")), None) or current

        update: Dict[str, Any] = {
            "shipping": {
                "currentLocation": location,
                "lastUpdateAt": now_iso(),
                "trackingHistory": history,
            }
        }
        mapped = map_status(current)
        if mapped:
            update["shipping"]["status"], update["status"] = mapped
        else:
            logger.info("[TRACKING][order=%s] unmapped carrier status %r, statuses unchanged", order_id, current)
        if edd:
            update["shipping"]["eta"] = parse_carrier_date(edd)

        saved = self.store.save_order(order_id, update)
        return {
            "orderId": order_id,
            "awbCode": awb,
            "carrierStatus": current,
            "previousStatus": order.get("status"),
            "status": saved.get("status"),
            "shippingStatus": saved["shipping"].get("status"),
            "location": location,
            "eta": saved["shipping"].get("eta"),
            "trackingHistory": history,
        }

    def force_sync(self, order_id: str) -> Dict[str, Any]:
        """Reconcile one order on demand, e.g. after a missed webhook.

        Reports ``updated=False`` instead of failing when Shiprocket has
        nothing to report yet.
        """
        logger.info("[SYNC][order=%s] manual tracking sync", order_id)
        try:
            result = self.update_tracking_info(order_id)
        except NoTrackingDataError as exc:
            order = self.store.load_order(order_id) or {}
            logger.info("[SYNC][order=%s] no update available: %s", order_id, exc)
            return {
                "updated": False,
                "message": "No update available",
                "orderId": order_id,
                "previousStatus": order.get("status"),
                "newStatus": order.get("status"),
            }
        return {
            "updated": True,
            "message": "Tracking synced successfully",
            "orderId": order_id,
            "previousStatus": result["previousStatus"],
            "newStatus": result["status"],
            "carrierStatus": result["carrierStatus"],
            "tracking": result,
        }

    def bulk_update_tracking(self) -> Dict[str, Any]:
        """Refresh every order with an AWB that is still processing or shipped.

        Orders are reconciled on a bounded thread pool.  Each order
        succeeds or fails on its own.
        """
        order_ids = self.store.find_orders_needing_tracking()
        logger.info("[BULK_TRACKING] updating %d active shipments", len(order_ids))
        if not order_ids:
            return {"total": 0, "successful": 0, "failed": 0, "failures": []}

        successful = 0
        failures: List[Dict[str, Any]] = []
        workers = max(1, min(self.max_workers, len(order_ids)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tracking") as pool:
            futures = {pool.submit(self.update_tracking_info, oid): oid for oid in order_ids}
            for future in as_completed(futures):
                oid = futures[future]
                try:
                    future.result()
                    successful += 1
                except Exception as exc:
                    logger.error("[BULK_TRACKING][order=%s] failed: %s", oid, exc)
                    failures.append({"orderId": oid, "error": str(exc)})

        logger.info("[BULK_TRACKING] completed: %d/%d successful", successful, len(order_ids))
        return {
            "total": len(order_ids),
            "successful": successful,
            "failed": len(failures),
            "failures": failures,
        }
