"""
shiprocket_client.py
~~~~~~~~~~~~~~~~~~~~

A thin Python client for Shiprocket's external API.  It covers the
calls the fulfillment services need: order creation, courier quotes,
AWB assignment, pickup requests, tracking, cancellation, return orders
and label generation.

Credentials and the base URL are read from environment variables by
default, but may be provided explicitly when constructing the client.
Every method returns a small normalized dict; the raw provider payload
is kept under ``"raw"`` for logging and debugging.
"""

from __future__ import annotations

import hashlib
import hmac
import os
import logging
from typing import Any, Dict, List, Optional

import requests

from errors import ProviderError


logger = logging.getLogger("shiprocket")

SUCCESS = 1
DEFAULT_BASE_URL = "https://apiv2.shiprocket.in/v1/external/"
_SENSITIVE_KEYS = {"token", "password", "authorization"}


def _redact(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            k: ("***REDACTED***" if str(k).lower() in _SENSITIVE_KEYS else _redact(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_redact(v) for v in data]
    return data


def _error_message(payload: Any, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("message", "error", "awb_assign_error"):
            if payload.get(key):
                return str(payload[key])
        errors = payload.get("errors")
        if isinstance(errors, dict) and errors:
            return "; ".join(f"{k}: {v}" for k, v in errors.items())
    return default


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check Shiprocket's ``x-shiprocket-signature`` header.

    The signature is the hex HMAC-SHA256 of the raw request body keyed with
    ``SHIPROCKET_WEBHOOK_SECRET``.  With no secret configured every push is
    accepted.
    """
    if not secret:
        return True
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8"))


class ShiprocketClient:
    """Simple HTTP client for Shiprocket's API.

    Parameters
    ----------
    email, password: str, optional
        API user credentials.  Default to ``SHIPROCKET_EMAIL`` and
        ``SHIPROCKET_PASSWORD``.
    token: str, optional
        A pre-issued bearer token.  Defaults to ``SHIPROCKET_TOKEN``; when
        present no login call is made until the token is rejected.
    base_url: str, optional
        Defaults to ``SHIPROCKET_BASE_URL`` or the public v1 endpoint.
    timeout: float, optional
        Per-request transport timeout in seconds (``SHIPROCKET_TIMEOUT``).
    """

    def __init__(
        self,
        email: Optional[str] = None,
        password: Optional[str] = None,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.email = email or os.getenv("SHIPROCKET_EMAIL")
        self.password = password or os.getenv("SHIPROCKET_PASSWORD")
        self.token = token or os.getenv("SHIPROCKET_TOKEN")
        if not self.token and not (self.email and self.password):
            raise ValueError(
                "Shiprocket credentials must be provided via 'SHIPROCKET_EMAIL'/'SHIPROCKET_PASSWORD' "
                "or 'SHIPROCKET_TOKEN' env vars or constructor arguments"
            )
        self.base_url = (base_url or os.getenv("SHIPROCKET_BASE_URL") or DEFAULT_BASE_URL).rstrip("/") + "/"
        self.timeout = float(timeout or os.getenv("SHIPROCKET_TIMEOUT", "30"))
        self.session = session or requests.Session()

    # Authentication
    def authenticate(self) -> str:
        """Log in with the API user and cache the bearer token."""
        if not (self.email and self.password):
            raise ProviderError("Shiprocket token rejected and no login credentials configured")
        url = self.base_url + "auth/login"
        logger.info("[AUTH] %s email=%s", url, self.email)
        try:
            response = self.session.post(
                url, json={"email": self.email, "password": self.password}, timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            raise ProviderError(f"Shiprocket authentication failed: {exc}") from exc
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise ProviderError(_error_message(data, "Shiprocket authentication returned no token"), data)
        self.token = token
        return token

    def _request(self, method: str, path: str, *, params=None, json=None, _retry: bool = True) -> Dict[str, Any]:
        if not self.token:
            self.authenticate()
        url = self.base_url + path.lstrip("/")
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self.token}"}
        logger.info("[%s] %s params=%s body=%s", method, url, params, _redact(json))
        try:
            response = self.session.request(
                method, url, params=params, json=json, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            logger.error("[%s] %s transport error: %s", method, url, exc)
            raise ProviderError(f"Shiprocket request failed: {exc}") from exc

        if response.status_code == 401 and _retry and self.email and self.password:
            logger.info("[%s] %s token rejected, logging in again", method, url)
            self.token = None
            return self._request(method, path, params=params, json=json, _retry=False)

        try:
            payload = response.json()
        except ValueError:
            payload = {"response": response.text}
        logger.info("[%s] %s -> %s %s", method, url, response.status_code, _redact(payload))

        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise ProviderError(_error_message(payload, str(exc)), payload) from exc
        return payload if isinstance(payload, dict) else {"data": payload}

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._request("GET", path, params=params or {})

    def _post(self, path: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._request("POST", path, json=data or {})

    # Order management
    def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create an ad-hoc (custom channel) order.

        Returns ``{"status_code", "shipment_id", "order_id", "message"}``;
        ``status_code`` is ``1`` when Shiprocket accepted the order.
        """
        data = self._post("orders/create/adhoc", payload)
        return {
            "status_code": data.get("status_code"),
            "shipment_id": data.get("shipment_id"),
            "order_id": data.get("order_id"),
            "message": _error_message(data, ""),
            "raw": data,
        }

    def cancel_shipment(self, awb: str) -> Dict[str, Any]:
        """Cancel a shipment by its AWB."""
        data = self._post("orders/cancel/shipment/awbs", {"awbs": [awb]})
        # The endpoint answers 200 with a message on success and 4xx otherwise.
        return {"status_code": SUCCESS, "message": _error_message(data, "Shipment cancelled"), "raw": data}

    def create_return_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create a return (reverse pickup) order."""
        data = self._post("orders/create/return", payload)
        return {
            "order_id": data.get("order_id"),
            "shipment_id": data.get("shipment_id"),
            "status_code": data.get("status_code"),
            "message": _error_message(data, ""),
            "raw": data,
        }

    # Couriers
    def get_available_couriers(
        self, pickup_pincode: str, delivery_pincode: str, weight: float, cod_amount: float = 0
    ) -> Dict[str, Any]:
        """Quote the couriers serviceable between two pincodes.

        ``cod_amount`` greater than zero marks the shipment as COD and is
        sent as the declared value.
        """
        params: Dict[str, Any] = {
            "pickup_postcode": pickup_pincode,
            "delivery_postcode": delivery_pincode,
            "weight": weight,
            "cod": 1 if cod_amount and cod_amount > 0 else 0,
        }
        if cod_amount and cod_amount > 0:
            params["declared_value"] = cod_amount
        data = self._get("courier/serviceability/", params)
        body = data.get("data") if isinstance(data.get("data"), dict) else {}
        couriers: List[Dict[str, Any]] = list(body.get("available_courier_companies") or [])
        return {"status": data.get("status"), "couriers": couriers, "raw": data}

    def assign_awb(self, shipment_id: Any, courier_id: Any) -> Dict[str, Any]:
        """Assign an AWB to a shipment for the given courier company."""
        data = self._post("courier/assign/awb", {"shipment_id": shipment_id, "courier_id": courier_id})
        inner = ((data.get("response") or {}).get("data") or {}) if isinstance(data.get("response"), dict) else {}
        ok = data.get("awb_assign_status") == 1 or data.get("status_code") == SUCCESS
        return {
            "status_code": SUCCESS if ok else 0,
            "awb_code": inner.get("awb_code") or data.get("awb_code"),
            "courier_name": inner.get("courier_name"),
            "pickup_scheduled_date": inner.get("pickup_scheduled_date"),
            "message": _error_message(inner, "") or _error_message(data, "AWB assignment failed"),
            "raw": data,
        }

    def generate_pickup(self, shipment_id: Any) -> Dict[str, Any]:
        """Request pickup generation for a shipment that already has an AWB."""
        data = self._post("courier/generate/pickup", {"shipment_id": [shipment_id]})
        return {
            "status_code": SUCCESS if data.get("pickup_status") == 1 else 0,
            "message": _error_message(data.get("response") or data, ""),
            "raw": data,
        }

    # Tracking
    def track_by_awb(self, awb: str) -> Dict[str, Any]:
        """Fetch tracking scans for an AWB.

        Returns ``{"status", "current_status", "scans", "edd"}`` where
        ``status`` is ``200`` only when the carrier has tracking data.
        """
        data = self._get(f"courier/track/awb/{awb}")
        tracking = data.get("tracking_data") or {}
        tracks = tracking.get("shipment_track") or []
        if not tracking or tracking.get("track_status") == 0 or not tracks:
            return {
                "status": 404,
                "current_status": None,
                "scans": [],
                "edd": None,
                "message": tracking.get("error") or "No tracking data available",
                "raw": data,
            }
        current = tracks[0] or {}
        scans = [
            {
                "activity": s.get("activity"),
                "location": s.get("location"),
                "date": s.get("date"),
                "status_code": s.get("sr-status"),
            }
            for s in tracking.get("shipment_track_activities") or []
        ]
        return {
            "status": 200,
            "current_status": current.get("current_status"),
            "scans": scans,
            "edd": current.get("edd") or tracking.get("etd"),
            "raw": data,
        }

    # Documents
    def generate_label(self, shipment_id: Any) -> Dict[str, Any]:
        """Generate the shipping label and manifest for a shipment."""
        label = self._post("courier/generate/label", {"shipment_id": [shipment_id]})
        if label.get("label_created") != 1:
            return {"status": 400, "label_url": None, "manifest_url": None,
                    "message": _error_message(label.get("response") or label, "Label not created"), "raw": label}
        manifest = self._post("manifests/generate", {"shipment_id": [shipment_id]})
        return {
            "status": 200,
            "label_url": label.get("label_url"),
            "manifest_url": manifest.get("manifest_url"),
            "raw": {"label": label, "manifest": manifest},
        }
