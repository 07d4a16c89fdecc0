import copy
import os
import threading
import time
import uuid

# Must be set before `db` is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest

from db import (
    TERMINAL_RETURN_STATUSES,
    TRACKABLE_SHIPPING_STATUSES,
    FulfillmentStore,
    empty_shipping,
    merge_order_update,
)
from returns_service import ReturnService
from shipment_service import ShipmentService
from tracking import TrackingReconciler


class MemoryStore(FulfillmentStore):
    """In-memory FulfillmentStore with the same merge rules as the SQL one."""

    def __init__(self):
        self.orders = {}
        self.returns = {}
        self._lock = threading.Lock()

    def add_order(self, record):
        order = merge_order_update({"shipping": empty_shipping()}, copy.deepcopy(record))
        with self._lock:
            self.orders[order["id"]] = order
        return copy.deepcopy(order)

    def load_order(self, order_id):
        with self._lock:
            order = self.orders.get(order_id)
            return copy.deepcopy(order) if order else None

    def save_order(self, order_id, update):
        with self._lock:
            merged = merge_order_update(self.orders[order_id], copy.deepcopy(update))
            self.orders[order_id] = merged
            return copy.deepcopy(merged)

    def find_orders_needing_tracking(self):
        with self._lock:
            return [
                oid for oid, o in self.orders.items()
                if o["shipping"].get("awbCode") and o["shipping"].get("status") in TRACKABLE_SHIPPING_STATUSES
            ]

    def find_order_by_awb(self, awb):
        with self._lock:
            for order in self.orders.values():
                if order["shipping"].get("awbCode") == awb:
                    return copy.deepcopy(order)
        return None

    def load_return(self, return_id):
        with self._lock:
            record = self.returns.get(return_id)
            return copy.deepcopy(record) if record else None

    def save_return(self, return_id, update):
        with self._lock:
            self.returns[return_id].update(copy.deepcopy(update))
            return copy.deepcopy(self.returns[return_id])

    def create_return(self, record):
        record = copy.deepcopy(record)
        record.setdefault("id", uuid.uuid4().hex)
        for key in ("shiprocketReturnId", "shiprocketReturnShipmentId", "shiprocketReturnAwb",
                    "courierName", "estimatedPickupDate", "refundProcessedAt"):
            record.setdefault(key, None)
        with self._lock:
            self.returns[record["id"]] = record
        return copy.deepcopy(record)

    def find_open_return(self, order_id):
        with self._lock:
            for record in self.returns.values():
                if record["orderId"] == order_id and record["status"] not in TERMINAL_RETURN_STATUSES:
                    return copy.deepcopy(record)
        return None

    def find_return_by_awb(self, awb):
        with self._lock:
            for record in self.returns.values():
                if record.get("shiprocketReturnAwb") == awb:
                    return copy.deepcopy(record)
        return None


def tracking_response(current_status="In Transit", scans=None, edd=None):
    if scans is None:
        scans = [
            {"activity": "Shipment picked up", "location": "New Delhi", "date": "2026-10-02 10:00:00", "status_code": 42},
            {"activity": "In transit", "location": "Nagpur Hub", "date": "2026-10-03 08:30:00", "status_code": 18},
        ]
    return {"status": 200, "current_status": current_status, "scans": scans, "edd": edd}


class FakeShiprocket:
    """Scripted stand-in for ShiprocketClient.

    Set ``errors[method] = exc`` to make a method raise, or change the
    ``*_response`` attributes to change what it returns.
    """

    def __init__(self):
        self.calls = []
        self.errors = {}
        self.delay = 0
        self.create_response = {"status_code": 1, "shipment_id": 9001, "order_id": 7001, "message": ""}
        self.couriers = [
            {"courier_company_id": 10, "courier_name": "BlueDart Surface", "rate": 120, "is_surface": True, "freight_charge": 10},
            {"courier_company_id": 11, "courier_name": "Ekart Lite", "rate": 90, "is_surface": True, "freight_charge": 0},
            {"courier_company_id": 12, "courier_name": "Delhivery Air", "rate": 150, "is_surface": False, "freight_charge": 20},
        ]
        self.awb_response = {"status_code": 1, "awb_code": "AWB1001", "courier_name": "BlueDart Surface",
                             "pickup_scheduled_date": "2026-10-05 11:00:00", "message": ""}
        self.pickup_response = {"status_code": 1, "message": ""}
        self.cancel_response = {"status_code": 1, "message": "Shipment cancelled"}
        self.return_response = {"order_id": 5001, "shipment_id": 6001, "status_code": 1, "message": ""}
        self.label_response = {"status": 200, "label_url": "https://labels.example/9001.pdf",
                               "manifest_url": "https://labels.example/manifest-9001.pdf"}
        self.tracking = {}
        self.default_tracking = tracking_response()
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def _call(self, name, *args):
        with self._lock:
            self.calls.append((name,) + args)
        error = self.errors.get(name)
        if error is not None:
            raise error

    def names(self):
        return [c[0] for c in self.calls]

    def create_order(self, payload):
        self._call("create_order", payload)
        return dict(self.create_response)

    def get_available_couriers(self, pickup_pincode, delivery_pincode, weight, cod_amount=0):
        self._call("get_available_couriers", pickup_pincode, delivery_pincode, weight, cod_amount)
        return {"status": 200, "couriers": [dict(c) for c in self.couriers]}

    def assign_awb(self, shipment_id, courier_id):
        self._call("assign_awb", shipment_id, courier_id)
        return dict(self.awb_response)

    def generate_pickup(self, shipment_id):
        self._call("generate_pickup", shipment_id)
        return dict(self.pickup_response)

    def track_by_awb(self, awb):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            self._call("track_by_awb", awb)
            response = self.tracking.get(awb, self.default_tracking)
            if isinstance(response, Exception):
                raise response
            return copy.deepcopy(response)
        finally:
            with self._lock:
                self.active -= 1

    def cancel_shipment(self, awb):
        self._call("cancel_shipment", awb)
        return dict(self.cancel_response)

    def create_return_order(self, payload):
        self._call("create_return_order", payload)
        return dict(self.return_response)

    def generate_label(self, shipment_id):
        self._call("generate_label", shipment_id)
        return dict(self.label_response)


def make_order(order_id="ord-1", **overrides):
    order = {
        "id": order_id,
        "userId": "user-1",
        "customerEmail": "asha@example.com",
        "status": "pending",
        "paymentMethod": "prepaid",
        "totalAmount": 2499.0,
        "items": [{"productId": "ring-01", "name": "Gold Ring", "price": 2499.0, "quantity": 1}],
        "shippingAddress": {
            "fullName": "Asha Rao Menon",
            "addressLine1": "12 MG Road",
            "addressLine2": "Flat 4",
            "city": "Bengaluru",
            "state": "Karnataka",
            "postalCode": "560001",
            "phone": "+91 98765 43210",
            "country": "IN",
        },
        "createdAt": "2026-10-01T10:00:00+00:00",
    }
    order.update(overrides)
    return order


def shipped_order(order_id, awb, status="shipped", **overrides):
    shipping = dict(empty_shipping(), shipmentId=f"s-{order_id}", awbCode=awb, status=status)
    return make_order(order_id, status=status, shipping=shipping, **overrides)


@pytest.fixture()
def store():
    return MemoryStore()


@pytest.fixture()
def carrier():
    return FakeShiprocket()


@pytest.fixture()
def shipment_service(carrier, store):
    return ShipmentService(carrier, store, pickup_pincode="110001", pickup_location="Primary")


@pytest.fixture()
def reconciler(carrier, store):
    return TrackingReconciler(carrier, store, max_workers=3)


@pytest.fixture()
def return_service(carrier, store):
    warehouse = {"name": "Nandika Warehouse", "address": "4 Karol Bagh", "city": "New Delhi",
                 "state": "Delhi", "phone": "9811122233"}
    return ReturnService(carrier, store, warehouse=warehouse, pickup_pincode="110001")
