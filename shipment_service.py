"""
shipment_service.py
~~~~~~~~~~~~~~~~~~~

Forward shipping for paid orders.  The shipping sub-record of an order
moves ``pending -> processing -> shipped -> delivered``; ``cancelled`` is
reachable from any state before delivery.  ``shipmentId`` is written at
most once and its presence is the only guard against creating a second
Shiprocket order for the same storefront order.
"""

from __future__ import annotations

import os
import logging
from typing import Any, Dict, Optional

from db import FulfillmentStore
from errors import AlreadyExistsError, NotFoundError, PreconditionError, ProviderError, ValidationError
from shiprocket_client import SUCCESS
from shipping_rules import (
    build_order_payload,
    compute_weight,
    is_balance_error,
    is_cod,
    select_courier,
    validate_shippable,
)


logger = logging.getLogger("fulfillment")

DEFAULT_TRACKING_URL = "https://shiprocket.in/tracking/{awb}"


class ShipmentService:
    """Drives Shiprocket through create, AWB assignment, pickup and cancel.

    Parameters
    ----------
    client:
        A Shiprocket client (or anything exposing the same methods).
    store: FulfillmentStore
        Order persistence.
    pickup_pincode: str, optional
        Warehouse pincode used for courier quotes.  Defaults to
        ``SHIPROCKET_PICKUP_POSTCODE`` or ``'110001'``.
    pickup_location: str, optional
        Name of the pickup location registered with Shiprocket.
    """

    def __init__(
        self,
        client,
        store: FulfillmentStore,
        pickup_pincode: Optional[str] = None,
        pickup_location: Optional[str] = None,
        tracking_url_template: Optional[str] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.pickup_pincode = pickup_pincode or os.getenv("SHIPROCKET_PICKUP_POSTCODE", "110001")
        self.pickup_location = pickup_location or os.getenv("SHIPROCKET_PICKUP_LOCATION", "Primary")
        self.tracking_url_template = tracking_url_template or os.getenv(
            "TRACKING_URL_TEMPLATE", DEFAULT_TRACKING_URL
        )

    def _load(self, order_id: str) -> Dict[str, Any]:
        order = self.store.load_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    def build_payload(self, order_id: str) -> Dict[str, Any]:
        """Validate the order and return the body that would be sent to Shiprocket."""
        order = self._load(order_id)
        errors = validate_shippable(
            order.get("shippingAddress"),
            order.get("items"),
            order.get("totalAmount"),
            order.get("customerEmail"),
        )
        if errors:
            logger.warning("[CREATE_SHIPMENT][order=%s] validation failed: %s", order_id, errors)
            raise ValidationError(errors)
        return build_order_payload(order, self.pickup_location)

    def create_shipment(self, order_id: str) -> Dict[str, Any]:
        order = self._load(order_id)
        if (order.get("shipping") or {}).get("shipmentId"):
            raise AlreadyExistsError(f"Shipment already created for order {order_id}")

        payload = self.build_payload(order_id)
        logger.info("[CREATE_SHIPMENT][order=%s] sending order to Shiprocket", order_id)
        try:
            response = self.client.create_order(payload)
        except ProviderError as exc:
            self._record_error(order_id, str(exc))
            raise

        if response.get("status_code") != SUCCESS or not response.get("shipment_id"):
            message = response.get("message") or "Failed to create shipment"
            self._record_error(order_id, message)
            raise ProviderError(message, response)

        self.store.save_order(order_id, {
            "status": "processing",
            "shipping": {
                "shipmentId": response["shipment_id"],
                "shiprocketOrderId": response.get("order_id"),
                "status": "processing",
                "errorMessage": None,
            },
        })
        logger.info(
            "[CREATE_SHIPMENT][order=%s] shipment_id=%s shiprocket_order_id=%s",
            order_id, response["shipment_id"], response.get("order_id"),
        )
        return {"shipmentId": response["shipment_id"], "shiprocketOrderId": response.get("order_id")}

    def process_shipment(self, order_id: str) -> Dict[str, Any]:
        """Pick a courier, assign the AWB and request a pickup."""
        order = self._load(order_id)
        shipping = order.get("shipping") or {}
        shipment_id = shipping.get("shipmentId")
        if not shipment_id:
            raise PreconditionError(f"No shipment created for order {order_id}")
        if shipping.get("awbCode"):
            raise AlreadyExistsError(f"AWB {shipping['awbCode']} already assigned to order {order_id}")

        items = order.get("items") or []
        cod_amount = float(order.get("totalAmount") or 0) if is_cod(order) else 0
        quotes = self.client.get_available_couriers(
            self.pickup_pincode,
            (order.get("shippingAddress") or {}).get("postalCode"),
            compute_weight(items),
            cod_amount,
        )
        courier = select_courier(quotes.get("couriers") or [])
        logger.info(
            "[PROCESS_SHIPMENT][order=%s] courier=%s rate=%s",
            order_id, courier.get("courier_name"), courier.get("rate"),
        )

        awb = self.client.assign_awb(shipment_id, courier.get("courier_company_id"))
        if awb.get("status_code") != SUCCESS or not awb.get("awb_code"):
            raise ProviderError(awb.get("message") or "AWB assignment failed", awb)
        awb_code = awb["awb_code"]

        # The AWB is proof of shipment; a failed pickup request does not undo it.
        pickup_scheduled = False
        try:
            pickup = self.client.generate_pickup(shipment_id)
            pickup_scheduled = pickup.get("status_code") == SUCCESS
            if not pickup_scheduled:
                logger.warning("[PROCESS_SHIPMENT][order=%s] pickup not scheduled: %s", order_id, pickup.get("message"))
        except ProviderError as exc:
            logger.warning("[PROCESS_SHIPMENT][order=%s] pickup request failed: %s", order_id, exc)

        courier_name = courier.get("courier_name") or awb.get("courier_name")
        tracking_url = self.tracking_url_template.format(awb=awb_code)
        self.store.save_order(order_id, {
            "status": "shipped",
            "shipping": {
                "awbCode": awb_code,
                "courier": courier_name,
                "trackingUrl": tracking_url,
                "status": "shipped",
                "errorMessage": None,
            },
        })
        logger.info("[PROCESS_SHIPMENT][order=%s] awb=%s courier=%s", order_id, awb_code, courier_name)
        return {
            "awbCode": awb_code,
            "courier": courier_name,
            "trackingUrl": tracking_url,
            "pickupScheduled": pickup_scheduled,
        }

    def automate_shipping(self, order_id: str) -> Dict[str, Any]:
        """Create and process the shipment in one go.

        This is the hook called once payment completes.  An order whose
        shipment exists but has no AWB yet resumes at courier assignment.
        """
        logger.info("[AUTOMATE][order=%s] starting", order_id)
        order = self._load(order_id)
        shipping = order.get("shipping") or {}
        if shipping.get("shipmentId") and shipping.get("awbCode"):
            raise AlreadyExistsError(f"Shipment already created for order {order_id}")
        if shipping.get("shipmentId"):
            shipment_id = shipping["shipmentId"]
        else:
            shipment_id = self.create_shipment(order_id)["shipmentId"]

        try:
            processed = self.process_shipment(order_id)
        except ProviderError as exc:
            pending = "pending_balance" if is_balance_error(exc.message) else "pending_courier"
            self.store.save_order(order_id, {
                "shipping": {
                    "status": pending,
                    "errorMessage": f"Automatic courier assignment failed: {exc.message}",
                },
            })
            logger.error("[AUTOMATE][order=%s] shipment %s left %s: %s", order_id, shipment_id, pending, exc)
            raise

        logger.info("[AUTOMATE][order=%s] done awb=%s", order_id, processed["awbCode"])
        return dict(processed, shipmentId=shipment_id)

    def cancel_shipment(self, order_id: str) -> Dict[str, Any]:
        order = self._load(order_id)
        shipping = order.get("shipping") or {}
        awb = shipping.get("awbCode")
        if not awb:
            raise PreconditionError(f"Order {order_id} has no AWB to cancel")
        if shipping.get("status") in ("delivered", "cancelled"):
            raise PreconditionError(f"Shipment for order {order_id} is already {shipping['status']}")

        response = self.client.cancel_shipment(awb)
        if response.get("status_code") != SUCCESS:
            raise ProviderError(response.get("message") or "Failed to cancel shipment", response)

        self.store.save_order(order_id, {"status": "cancelled", "shipping": {"status": "cancelled"}})
        logger.info("[CANCEL][order=%s] awb=%s cancelled", order_id, awb)
        return {"success": True, "message": "Shipment cancelled successfully", "awbCode": awb}

    def generate_label(self, order_id: str) -> Dict[str, Any]:
        order = self._load(order_id)
        shipment_id = (order.get("shipping") or {}).get("shipmentId")
        if not shipment_id:
            raise PreconditionError(f"No shipment created for order {order_id}")
        response = self.client.generate_label(shipment_id)
        if response.get("status") != 200:
            raise ProviderError(response.get("message") or "Failed to generate label", response)
        return {"labelUrl": response.get("label_url"), "manifestUrl": response.get("manifest_url")}

    def _record_error(self, order_id: str, message: str) -> None:
        logger.error("[CREATE_SHIPMENT][order=%s] Shiprocket rejected order: %s", order_id, message)
        self.store.save_order(order_id, {"shipping": {"errorMessage": message}})
