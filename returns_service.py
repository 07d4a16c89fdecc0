"""
returns_service.py
~~~~~~~~~~~~~~~~~~

Reverse logistics for delivered orders.  A return request is always
stored first; booking the reverse pickup with Shiprocket is attempted
afterwards and its outcome is reported separately, so a carrier outage
never loses a customer's request.
"""

from __future__ import annotations

import os
import logging
from typing import Any, Dict, List, NamedTuple, Optional

from db import TERMINAL_RETURN_STATUSES, FulfillmentStore
from errors import AlreadyExistsError, NotFoundError, PreconditionError, ProviderError, ValidationError
from shiprocket_client import SUCCESS
from shipping_rules import _to_int, build_return_payload, compute_weight, now_iso, select_courier


logger = logging.getLogger("fulfillment")

REFUNDABLE_STATUSES = ("returned_to_seller", "received")

# Forward order of the return lifecycle; webhooks may only move a return forward.
_PROGRESS = {
    "requested": 0,
    "pickup_scheduled": 1,
    "in_transit": 2,
    "returned_to_seller": 3,
    "received": 4,
}

RETURN_STATUS_MAPPING = {
    "RETURN REQUESTED": "requested",
    "RETURN INITIATED": "requested",
    "RETURN PICKUP SCHEDULED": "pickup_scheduled",
    "RETURN PICKED UP": "in_transit",
    "RETURN IN TRANSIT": "in_transit",
    "RETURN OUT FOR DELIVERY": "in_transit",
    "RETURN DELIVERED": "returned_to_seller",
    "RETURNED TO SELLER": "returned_to_seller",
    "RETURN RECEIVED": "received",
}


class ReturnShipmentOutcome(NamedTuple):
    """Result of the best-effort reverse pickup booking.

    ``stage`` names the step that was reached: ``"scheduled"`` on success,
    otherwise the step that failed.
    """

    scheduled: bool
    stage: str
    error: Optional[str] = None
    return_order_id: Optional[str] = None
    shipment_id: Optional[str] = None
    awb_code: Optional[str] = None
    courier_name: Optional[str] = None


class ReturnRequestResult(NamedTuple):
    return_record: Dict[str, Any]
    shipment: ReturnShipmentOutcome


def map_return_status(carrier_status: Optional[str]) -> Optional[str]:
    if not carrier_status:
        return None
    normalized = carrier_status.upper().replace("_", " ").strip()
    if "CANCEL" in normalized:
        return "cancelled"
    if normalized in RETURN_STATUS_MAPPING:
        return RETURN_STATUS_MAPPING[normalized]
    if "DELIVERED" in normalized or "RETURNED" in normalized:
        return "returned_to_seller"
    return None


def _warehouse_from_env() -> Dict[str, Any]:
    return {
        "name": os.getenv("SHIPROCKET_WAREHOUSE_NAME", "Warehouse"),
        "address": os.getenv("SHIPROCKET_WAREHOUSE_ADDRESS", ""),
        "city": os.getenv("SHIPROCKET_WAREHOUSE_CITY", "New Delhi"),
        "state": os.getenv("SHIPROCKET_WAREHOUSE_STATE", "Delhi"),
        "phone": os.getenv("SHIPROCKET_WAREHOUSE_PHONE", ""),
    }


class ReturnService:
    """Creates returns, books reverse pickups and completes refunds."""

    def __init__(
        self,
        client,
        store: FulfillmentStore,
        warehouse: Optional[Dict[str, Any]] = None,
        pickup_pincode: Optional[str] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.pickup_pincode = pickup_pincode or os.getenv("SHIPROCKET_PICKUP_POSTCODE", "110001")
        self.warehouse = dict(warehouse or _warehouse_from_env())
        self.warehouse.setdefault("pincode", self.pickup_pincode)

    def create_return(
        self,
        order_id: str,
        items: List[Dict[str, Any]],
        reason: Optional[str] = None,
        refund_details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        notes: str = "",
    ) -> ReturnRequestResult:
        order = self.store.load_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.get("status") != "delivered":
            raise PreconditionError("Only delivered orders can be returned")

        errors = []
        if not items:
            errors.append("At least one item is required")
        for item in items or []:
            if not item.get("productId"):
                errors.append("Each returned item needs a productId")
            if _to_int(item.get("quantity")) <= 0:
                errors.append(f"Quantity for {item.get('productId')} must be positive")
        if errors:
            raise ValidationError(errors)

        existing = self.store.find_open_return(order_id)
        if existing:
            raise AlreadyExistsError(
                f"A return request already exists for order {order_id} (return {existing['id']})"
            )

        record = self.store.create_return({
            "orderId": order_id,
            "userId": user_id or order.get("userId"),
            "items": [dict(item, reason=item.get("reason") or reason) for item in items],
            "reason": reason,
            "notes": notes or "",
            "status": "requested",
            "refundDetails": refund_details or {},
            "refundSucceeded": False,
        })
        logger.info("[RETURN][order=%s] return %s requested", order_id, record["id"])

        outcome, update = self._book_return_shipment(record, order)
        if update:
            record = self.store.save_return(record["id"], update)
        return ReturnRequestResult(record, outcome)

    def _book_return_shipment(self, record: Dict[str, Any], order: Dict[str, Any]):
        """Best effort: return order, courier, AWB.  Never raises."""
        update: Dict[str, Any] = {}
        stage = "create_return_order"
        created: Dict[str, Any] = {}
        try:
            payload = build_return_payload(record["id"], order, record["items"], self.warehouse)
            created = self.client.create_return_order(payload)
            if not created.get("order_id"):
                raise ProviderError(created.get("message") or "Return order not created", created)
            update["shiprocketReturnId"] = str(created["order_id"])
            update["shiprocketReturnShipmentId"] = str(created.get("shipment_id") or "") or None

            stage = "courier_selection"
            quotes = self.client.get_available_couriers(
                (order.get("shippingAddress") or {}).get("postalCode"),
                self.pickup_pincode,
                compute_weight(record["items"]),
                0,
            )
            courier = select_courier(quotes.get("couriers") or [])

            stage = "awb"
            awb = self.client.assign_awb(created.get("shipment_id"), courier.get("courier_company_id"))
            if awb.get("status_code") != SUCCESS or not awb.get("awb_code"):
                raise ProviderError(awb.get("message") or "AWB assignment failed", awb)
        except Exception as exc:
            logger.warning(
                "[RETURN][return=%s] Shiprocket booking failed at %s: %s", record["id"], stage, exc
            )
            outcome = ReturnShipmentOutcome(
                scheduled=False,
                stage=stage,
                error=str(exc),
                return_order_id=update.get("shiprocketReturnId"),
                shipment_id=update.get("shiprocketReturnShipmentId"),
            )
            return outcome, update

        courier_name = courier.get("courier_name") or awb.get("courier_name")
        update.update({
            "status": "pickup_scheduled",
            "shiprocketReturnAwb": awb["awb_code"],
            "courierName": courier_name,
            "estimatedPickupDate": awb.get("pickup_scheduled_date"),
        })
        logger.info("[RETURN][return=%s] pickup scheduled awb=%s courier=%s", record["id"], awb["awb_code"], courier_name)
        outcome = ReturnShipmentOutcome(
            scheduled=True,
            stage="scheduled",
            return_order_id=update["shiprocketReturnId"],
            shipment_id=update["shiprocketReturnShipmentId"],
            awb_code=awb["awb_code"],
            courier_name=courier_name,
        )
        return outcome, update

    def mark_refund_complete(self, return_id: str) -> Dict[str, Any]:
        """Record that the refund was paid out.  One way only."""
        record = self.store.load_return(return_id)
        if record is None:
            raise NotFoundError(f"Return {return_id} not found")
        if record.get("refundSucceeded"):
            raise PreconditionError(f"Refund for return {return_id} is already completed")
        if record.get("status") not in REFUNDABLE_STATUSES:
            raise PreconditionError(
                f"Return {return_id} is {record.get('status')}; refunds need the item back with the seller"
            )

        saved = self.store.save_return(return_id, {
            "refundSucceeded": True,
            "refundProcessedAt": now_iso(),
            "status": "completed",
        })
        if self.store.load_order(record["orderId"]) is not None:
            self.store.save_order(record["orderId"], {"status": "refunded"})
        logger.info("[REFUND][return=%s] marked complete", return_id)
        return saved

    def apply_carrier_status(self, awb: str, carrier_status: str) -> Dict[str, Any]:
        """Advance a return from a Shiprocket status push."""
        record = self.store.find_return_by_awb(awb)
        if record is None:
            raise NotFoundError(f"No return found for AWB {awb}")
        current = record.get("status")
        new_status = map_return_status(carrier_status)
        result = {"returnId": record["id"], "previousStatus": current, "status": current, "updated": False}

        if current in TERMINAL_RETURN_STATUSES or new_status is None:
            return result
        if new_status != "cancelled" and _PROGRESS[new_status] <= _PROGRESS.get(current, 0):
            return result

        self.store.save_return(record["id"], {"status": new_status})
        logger.info("[RETURN][return=%s] %s -> %s (%s)", record["id"], current, new_status, carrier_status)
        return dict(result, status=new_status, updated=True)
