"""
errors.py
~~~~~~~~~

Error kinds raised by the fulfillment services.  Each carries the HTTP
status the API layer should answer with, so routes can translate them
into ``HTTPException`` without a lookup table.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class FulfillmentError(Exception):
    """Base class for every error the orchestration core raises."""

    status_code = 500
    kind = "fulfillment_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message}


class ValidationError(FulfillmentError):
    """Order data the carrier would reject.  Never sent over the wire."""

    status_code = 422
    kind = "validation_error"

    def __init__(self, errors: List[str]) -> None:
        super().__init__("Order validation failed: " + ", ".join(errors))
        self.errors = list(errors)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class AlreadyExistsError(FulfillmentError):
    status_code = 409
    kind = "already_exists"


class NotFoundError(FulfillmentError):
    status_code = 404
    kind = "not_found"


class PreconditionError(FulfillmentError):
    status_code = 409
    kind = "precondition_failed"


class ProviderError(FulfillmentError):
    """Non-success status code or transport failure from the carrier."""

    status_code = 502
    kind = "provider_error"

    def __init__(self, message: str, response: Optional[Any] = None) -> None:
        super().__init__(message)
        self.response = response


class NoTrackingDataError(ProviderError):
    kind = "no_tracking_data"
