"""
main.py
~~~~~~~

FastAPI application exposing the storefront's fulfillment operations:
forward shipping, tracking reconciliation and returns.  The services in
``shipment_service``, ``tracking`` and ``returns_service`` do the work;
this module wires them to Shiprocket and the database per request and
translates their errors into HTTP responses.
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Body, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from db import FulfillmentStore, SqlFulfillmentStore, init_db
from errors import FulfillmentError
from returns_service import ReturnService
from shipment_service import ShipmentService
from shiprocket_client import ShiprocketClient, verify_webhook_signature
from tracking import TrackingReconciler, push_scans
import logging


logger = logging.getLogger("app")


def get_client() -> ShiprocketClient:
    """Dependency injection helper that constructs a client per request.

    The returned client reads its credentials from environment variables.
    """
    try:
        return ShiprocketClient()
    except Exception as exc:
        # Convert errors into HTTP exceptions for consistent error handling
        raise HTTPException(status_code=500, detail=str(exc))


def get_store() -> FulfillmentStore:
    return SqlFulfillmentStore()


def get_shipment_service(client=Depends(get_client), store=Depends(get_store)) -> ShipmentService:
    return ShipmentService(client, store)


def get_reconciler(client=Depends(get_client), store=Depends(get_store)) -> TrackingReconciler:
    return TrackingReconciler(client, store)


def get_push_reconciler(store=Depends(get_store)) -> TrackingReconciler:
    # Pushes carry their own tracking data; no Shiprocket credentials needed
    return TrackingReconciler(None, store)


def get_return_service(client=Depends(get_client), store=Depends(get_store)) -> ReturnService:
    return ReturnService(client, store)


def _dry_run() -> bool:
    return os.getenv("DRY_RUN", "false").lower() in {"1", "true", "yes", "on"}


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, FulfillmentError):
        if exc.status_code >= 500:
            logger.error("%s: %s", exc.kind, exc.message)
        return HTTPException(status_code=exc.status_code, detail=exc.to_dict())
    logger.exception("Unhandled error")
    return HTTPException(status_code=500, detail=str(exc))


async def check_webhook_signature(
    request: Request,
    x_shiprocket_signature: Optional[str] = Header(None),
) -> None:
    """Reject webhook pushes whose HMAC does not match ``SHIPROCKET_WEBHOOK_SECRET``."""
    secret = os.getenv("SHIPROCKET_WEBHOOK_SECRET")
    if not secret:
        logger.warning("SHIPROCKET_WEBHOOK_SECRET not configured, skipping webhook verification")
        return
    body = await request.body()
    if not verify_webhook_signature(body, x_shiprocket_signature, secret):
        logger.error("[WEBHOOK] invalid signature on %s", request.url.path)
        raise HTTPException(status_code=401, detail="Invalid signature")


load_dotenv()

app = FastAPI(title="Storefront Fulfillment API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    # Ensure tables exist before handling requests
    init_db()
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    # Ensure root handler exists so custom loggers propagate to console
    root = logging.getLogger()
    if not root.handlers:
        root_handler = logging.StreamHandler()
        root_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))
        root.addHandler(root_handler)
    root.setLevel(getattr(logging, level, logging.INFO))
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "shiprocket", "fulfillment", "app"):
        logging.getLogger(name).setLevel(getattr(logging, level, logging.INFO))
    logger.info("Startup complete. DB initialized. Log level=%s", level)
    logger.info(
        "Pickup: location=%s pincode=%s",
        os.getenv("SHIPROCKET_PICKUP_LOCATION", "Primary"),
        os.getenv("SHIPROCKET_PICKUP_POSTCODE", "110001"),
    )
    logger.info("Dry-run mode: %s", _dry_run())


# ----------------------
# Forward shipping
# ----------------------

@app.post("/orders/{order_id}/shipping/automate")
def automate_shipping(order_id: str, service: ShipmentService = Depends(get_shipment_service)) -> Dict[str, Any]:
    """Create the Shiprocket shipment and assign a courier in one call.

    Triggered once a payment completes.  With ``DRY_RUN`` set the
    validated payload is returned and Shiprocket is not called.
    """
    try:
        if _dry_run():
            logger.info("[AUTOMATE][DRY_RUN] order=%s skipping Shiprocket call", order_id)
            return {"dry_run": True, "payload": service.build_payload(order_id)}
        return service.automate_shipping(order_id)
    except Exception as exc:
        raise _http_error(exc)


@app.post("/orders/{order_id}/shipping/create")
def create_shipment(order_id: str, service: ShipmentService = Depends(get_shipment_service)) -> Dict[str, Any]:
    try:
        if _dry_run():
            return {"dry_run": True, "payload": service.build_payload(order_id)}
        return service.create_shipment(order_id)
    except Exception as exc:
        raise _http_error(exc)


@app.post("/orders/{order_id}/shipping/process")
def process_shipment(order_id: str, service: ShipmentService = Depends(get_shipment_service)) -> Dict[str, Any]:
    """Assign the AWB and request a pickup for an existing shipment."""
    try:
        return service.process_shipment(order_id)
    except Exception as exc:
        raise _http_error(exc)


@app.post("/orders/{order_id}/shipping/cancel")
def cancel_shipment(order_id: str, service: ShipmentService = Depends(get_shipment_service)) -> Dict[str, Any]:
    try:
        return service.cancel_shipment(order_id)
    except Exception as exc:
        raise _http_error(exc)


@app.get("/orders/{order_id}/shipping/label")
def shipping_label(order_id: str, service: ShipmentService = Depends(get_shipment_service)) -> Dict[str, Any]:
    try:
        return service.generate_label(order_id)
    except Exception as exc:
        raise _http_error(exc)


# ----------------------
# Tracking
# ----------------------

@app.post("/orders/{order_id}/tracking/sync")
def sync_tracking(order_id: str, reconciler: TrackingReconciler = Depends(get_reconciler)) -> Dict[str, Any]:
    """Force a tracking refresh, e.g. when a webhook was missed."""
    try:
        return reconciler.force_sync(order_id)
    except Exception as exc:
        raise _http_error(exc)


@app.post("/tracking/bulk-update")
def bulk_update_tracking(reconciler: TrackingReconciler = Depends(get_reconciler)) -> Dict[str, Any]:
    try:
        return reconciler.bulk_update_tracking()
    except Exception as exc:
        raise _http_error(exc)


@app.post("/webhooks/shiprocket/tracking", dependencies=[Depends(check_webhook_signature)])
def tracking_webhook(
    payload: Dict[str, Any] = Body(..., description="Shiprocket status push for a forward shipment"),
    reconciler: TrackingReconciler = Depends(get_push_reconciler),
) -> Dict[str, Any]:
    awb = payload.get("awb") or payload.get("awb_code")
    status = payload.get("current_status") or payload.get("shipment_status")
    if not awb or not status:
        raise HTTPException(status_code=400, detail="Payload must include 'awb' and 'current_status'")
    try:
        return reconciler.apply_carrier_push(
            str(awb), str(status), push_scans(payload), payload.get("etd") or payload.get("edd")
        )
    except Exception as exc:
        raise _http_error(exc)


@app.get("/tracking/awb/{awb}")
def track_awb(awb: str, client: ShiprocketClient = Depends(get_client)) -> Dict[str, Any]:
    """Relay Shiprocket's tracking data for an AWB without touching any order."""
    try:
        data = client.track_by_awb(awb)
        data.pop("raw", None)
        return data
    except Exception as exc:
        raise _http_error(exc)


# ----------------------
# Returns
# ----------------------

@app.post("/returns")
def create_return(
    order_id: str = Body(...),
    items: List[Dict[str, Any]] = Body(...),
    reason: Optional[str] = Body(None),
    refund_details: Optional[Dict[str, Any]] = Body(None),
    user_id: Optional[str] = Body(None),
    notes: str = Body(""),
    service: ReturnService = Depends(get_return_service),
) -> Dict[str, Any]:
    """Create a return request; the reverse pickup is booked on a best-effort basis."""
    try:
        result = service.create_return(order_id, items, reason, refund_details, user_id=user_id, notes=notes)
    except Exception as exc:
        raise _http_error(exc)
    return {
        "success": True,
        "returnId": result.return_record["id"],
        "return": result.return_record,
        "shipment": result.shipment._asdict(),
    }


@app.post("/returns/{return_id}/refund-complete")
def refund_complete(return_id: str, service: ReturnService = Depends(get_return_service)) -> Dict[str, Any]:
    try:
        return service.mark_refund_complete(return_id)
    except Exception as exc:
        raise _http_error(exc)


@app.post("/webhooks/shiprocket/returns", dependencies=[Depends(check_webhook_signature)])
def return_webhook(
    payload: Dict[str, Any] = Body(..., description="Shiprocket status push for a return shipment"),
    service: ReturnService = Depends(get_return_service),
) -> Dict[str, Any]:
    awb = payload.get("return_awb") or payload.get("return_awb_code") or payload.get("awb")
    status = payload.get("current_status") or payload.get("shipment_status")
    if not awb or not status:
        raise HTTPException(status_code=400, detail="Payload must include 'awb' and 'current_status'")
    try:
        return service.apply_carrier_status(str(awb), str(status))
    except Exception as exc:
        raise _http_error(exc)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
