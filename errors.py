"""
Error taxonomy

Every error raised by business code maps to an HTTP status and renders as
{"error": message, ...extra}.
"""
from typing import Any, Dict, Optional


class StoreError(Exception):
    status_code = 500
    default_message = "Something went wrong!"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, **self.extra}


class ValidationError(StoreError):
    status_code = 400
    default_message = "Invalid request"


class InsufficientStock(ValidationError):
    default_message = "Insufficient stock"


class Unauthenticated(StoreError):
    status_code = 401
    default_message = "Authentication required"


class InvalidSignature(Unauthenticated):
    default_message = "Invalid signature"


class Forbidden(StoreError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(StoreError):
    status_code = 404
    default_message = "Not found"


class Conflict(StoreError):
    status_code = 409
    default_message = "Conflict"


class UpstreamError(StoreError):
    status_code = 502
    default_message = "Upstream service failed"


class PaymentError(UpstreamError):
    default_message = "Failed to create payment intent"


class InternalError(StoreError):
    status_code = 500
