"""
shipping_rules.py
~~~~~~~~~~~~~~~~~

Pure helpers shared by the shipment and return services: parcel weight,
pre-flight validation of an order against Shiprocket's structural
requirements, courier selection and the carrier payload builders.
Nothing in here talks to the network or the database.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from errors import ProviderError


WEIGHT_PER_UNIT_KG = 0.1
MIN_WEIGHT_KG = 0.5
DEFAULT_DIMENSIONS = {"length": 15, "breadth": 10, "height": 5}
RETURN_DIMENSIONS = {"length": 15, "breadth": 15, "height": 10}

_PINCODE_RE = re.compile(r"^\d{6}$")
_REQUIRED_ADDRESS_FIELDS = (
    ("fullName", "Full name is required"),
    ("addressLine1", "Address line 1 is required"),
    ("city", "City is required"),
    ("state", "State is required"),
    ("postalCode", "Postal code is required"),
    ("phone", "Phone number is required"),
)


def _to_num(val: Any, default: float = 0.0) -> float:
    try:
        if val is None:
            return default
        s = str(val).replace(",", "").strip()
        if s == "":
            return default
        return float(s)
    except (TypeError, ValueError):
        return default


def _to_int(val: Any, default: int = 0) -> int:
    num = _to_num(val, float(default))
    # "nan" and "inf" parse as floats but have no integer value
    return int(num) if math.isfinite(num) else default


def compute_weight(items: List[Dict[str, Any]]) -> float:
    """Billable weight in kg: 0.1 kg per unit, never below 0.5 kg."""
    total = sum(_to_int(item.get("quantity")) * WEIGHT_PER_UNIT_KG for item in items or [])
    return round(max(MIN_WEIGHT_KG, total), 3)


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """Reduce a phone number to its 10 national digits, or ``None``.

    ``"+91 98765 43210"`` becomes ``"9876543210"``.  Anything else that is
    not exactly ten digits is rejected.
    """
    if not raw:
        return None
    digits = re.sub(r"\D", "", str(raw))
    if digits.startswith("91") and len(digits) == 12:
        digits = digits[2:]
    return digits if len(digits) == 10 else None


def validate_shippable(
    address: Optional[Dict[str, Any]],
    items: Optional[List[Dict[str, Any]]],
    total_amount: Any,
    customer_email: Optional[str],
) -> List[str]:
    """Return every reason Shiprocket would reject this order.

    An empty list means the order may be sent to the carrier.
    """
    errors: List[str] = []
    if not address:
        errors.append("Shipping address is required")
    else:
        for field, message in _REQUIRED_ADDRESS_FIELDS:
            if not str(address.get(field) or "").strip():
                errors.append(message)
        postal_code = str(address.get("postalCode") or "").strip()
        if postal_code and not _PINCODE_RE.match(postal_code):
            errors.append("Postal code must be 6 digits")
        if normalize_phone(address.get("phone")) is None:
            errors.append("Phone number must be 10 digits")

    if not items:
        errors.append("Order items are required")

    if _to_num(total_amount) <= 0:
        errors.append("Valid total amount is required")

    if not customer_email:
        errors.append("Customer email is required for shipping")
    return errors


def select_courier(couriers: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Pick the cheapest surface courier with a positive freight charge.

    Falls back to the cheapest quote overall when no surface option
    exists.  Raises ``ProviderError`` only when nothing was quoted.
    """
    if not couriers:
        raise ProviderError("No available couriers found")

    def rate(courier: Dict[str, Any]) -> float:
        return _to_num(courier.get("rate"), float("inf"))

    surface = [
        c for c in couriers
        if c.get("is_surface") and _to_num(c.get("freight_charge")) > 0
    ]
    if surface:
        return sorted(surface, key=rate)[0]
    return sorted(couriers, key=rate)[0]


def split_name(full_name: str) -> Tuple[str, str]:
    parts = (full_name or "").strip().split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def _country(value: Optional[str]) -> str:
    if not value or value.upper() == "IN":
        return "India"
    return value


def _normalize_payment(method: Optional[str]) -> str:
    v = (method or "").strip().lower()
    if v in {"cod", "cash on delivery"}:
        return "COD"
    return "Prepaid"


def is_cod(order: Dict[str, Any]) -> bool:
    return _normalize_payment(order.get("paymentMethod")) == "COD"


def _order_date(value: Any) -> str:
    if isinstance(value, datetime):
        moment = value
    elif value:
        try:
            moment = datetime.fromisoformat(str(value))
        except ValueError:
            moment = datetime.now(timezone.utc)
    else:
        moment = datetime.now(timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M")


def _sku(item: Dict[str, Any]) -> str:
    if item.get("productId"):
        return str(item["productId"])
    return re.sub(r"\s+", "-", str(item.get("name") or "item")).lower()


def build_order_payload(order: Dict[str, Any], pickup_location: str) -> Dict[str, Any]:
    """Build the ``orders/create/adhoc`` body for a storefront order."""
    address = order.get("shippingAddress") or {}
    first_name, last_name = split_name(address.get("fullName", ""))
    items = order.get("items") or []
    dims = DEFAULT_DIMENSIONS
    return {
        "order_id": str(order["id"]),
        "order_date": _order_date(order.get("createdAt")),
        "pickup_location": pickup_location,
        "billing_customer_name": first_name,
        "billing_last_name": last_name,
        "billing_address": address.get("addressLine1", ""),
        "billing_address_2": address.get("addressLine2") or "",
        "billing_city": address.get("city", ""),
        "billing_pincode": str(address.get("postalCode", "")),
        "billing_state": address.get("state", ""),
        "billing_country": _country(address.get("country")),
        "billing_email": order.get("customerEmail", ""),
        "billing_phone": normalize_phone(address.get("phone")),
        "shipping_is_billing": True,
        "order_items": [
            {
                "name": item.get("name", ""),
                "sku": _sku(item),
                "units": _to_int(item.get("quantity"), 1),
                "selling_price": _to_num(item.get("price")),
                "discount": 0,
                "tax": 0,
            }
            for item in items
        ],
        "payment_method": _normalize_payment(order.get("paymentMethod")),
        "shipping_charges": 0,
        "total_discount": 0,
        "sub_total": _to_num(order.get("totalAmount")),
        "length": dims["length"],
        "breadth": dims["breadth"],
        "height": dims["height"],
        "weight": compute_weight(items),
    }


def build_return_payload(
    return_id: str,
    order: Dict[str, Any],
    items: List[Dict[str, Any]],
    warehouse: Dict[str, Any],
) -> Dict[str, Any]:
    """Build the ``orders/create/return`` body.

    The customer's shipping address becomes the pickup address and the
    warehouse becomes the destination.
    """
    address = order.get("shippingAddress") or {}
    first_name, last_name = split_name(address.get("fullName", ""))
    prices = {str(i.get("productId")): _to_num(i.get("price")) for i in order.get("items") or []}
    order_items = [
        {
            "name": item.get("name", ""),
            "sku": f"RETURN-{item.get('productId')}",
            "units": _to_int(item.get("quantity"), 1),
            "selling_price": prices.get(str(item.get("productId")), 0.0),
            "discount": 0,
            "qc_enable": False,
        }
        for item in items
    ]
    dims = RETURN_DIMENSIONS
    return {
        "order_id": f"RETURN-{return_id}",
        "order_date": _order_date(None),
        "pickup_customer_name": first_name,
        "pickup_last_name": last_name,
        "pickup_address": address.get("addressLine1", ""),
        "pickup_address_2": address.get("addressLine2") or "",
        "pickup_city": address.get("city", ""),
        "pickup_state": address.get("state", ""),
        "pickup_country": _country(address.get("country")),
        "pickup_pincode": str(address.get("postalCode", "")),
        "pickup_email": order.get("customerEmail", ""),
        "pickup_phone": normalize_phone(address.get("phone")),
        "shipping_customer_name": warehouse.get("name", ""),
        "shipping_address": warehouse.get("address", ""),
        "shipping_city": warehouse.get("city", ""),
        "shipping_state": warehouse.get("state", ""),
        "shipping_country": "India",
        "shipping_pincode": str(warehouse.get("pincode", "")),
        "shipping_phone": warehouse.get("phone", ""),
        "order_items": order_items,
        "payment_method": "Prepaid",
        "sub_total": sum(i["selling_price"] * i["units"] for i in order_items),
        "length": dims["length"],
        "breadth": dims["breadth"],
        "height": dims["height"],
        "weight": compute_weight(items),
    }


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_balance_error(message: Optional[str]) -> bool:
    """Shiprocket reports an empty wallet through the error text only."""
    text = (message or "").lower()
    return "balance" in text or "insufficient" in text
