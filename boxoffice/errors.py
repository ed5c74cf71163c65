"""Error taxonomy for inventory, pricing, settlement and callbacks.

Every error carries a stable code, a user-safe message and a ``details``
dict that says which field was wrong and what was received vs. expected.
``terminal`` tells callers whether retrying the same request can succeed.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN_TICKET_TYPE = "UNKNOWN_TICKET_TYPE"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    PRICE_MISMATCH = "PRICE_MISMATCH"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    NOT_EVENT_OWNER = "NOT_EVENT_OWNER"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"


class BoxOfficeError(Exception):
    code: ErrorCode = ErrorCode.VALIDATION_ERROR
    terminal: bool = True

    def __init__(self, message: str,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(BoxOfficeError):
    """Bad input shape, missing fields or malformed identifiers."""

    code = ErrorCode.VALIDATION_ERROR

    def __init__(self, field: str, message: str,
                 received: Any = None) -> None:
        details: Dict[str, Any] = {"field": field}
        if received is not None:
            details["received"] = received
        super().__init__(message, details)
        self.field = field


class UnknownTicketType(BoxOfficeError):
    code = ErrorCode.UNKNOWN_TICKET_TYPE

    def __init__(self, ticket_type_id: str) -> None:
        super().__init__(
            "Ticket type does not belong to this event",
            {"ticket_type_id": ticket_type_id},
        )
        self.ticket_type_id = ticket_type_id


class InvalidQuantity(BoxOfficeError):
    code = ErrorCode.INVALID_QUANTITY

    def __init__(self, ticket_type_id: str, quantity: Any) -> None:
        super().__init__(
            "Quantity must be a positive integer",
            {"ticket_type_id": ticket_type_id, "received": quantity},
        )
        self.ticket_type_id = ticket_type_id
        self.quantity = quantity


class PriceMismatch(BoxOfficeError):
    code = ErrorCode.PRICE_MISMATCH

    def __init__(self, expected: int, received: int, tolerance: int) -> None:
        super().__init__(
            "Submitted total does not match current ticket prices",
            {"expected": expected, "received": received,
             "tolerance": tolerance},
        )
        self.expected = expected
        self.received = received


class CapacityExceeded(BoxOfficeError):
    code = ErrorCode.CAPACITY_EXCEEDED

    def __init__(self, ticket_type_id: str, requested: int,
                 available: int) -> None:
        super().__init__(
            f"Only {max(available, 0)} tickets available",
            {"ticket_type_id": ticket_type_id, "requested": requested,
             "available": available},
        )
        self.ticket_type_id = ticket_type_id
        self.requested = requested
        self.available = available


class InvalidSignature(BoxOfficeError):
    code = ErrorCode.INVALID_SIGNATURE

    def __init__(self, received: Optional[str]) -> None:
        # length and prefix only; never the expected value
        super().__init__("Invalid signature", {
            "received_length": len(received or ""),
            "received_prefix": (received or "")[:8],
        })


class GatewayError(BoxOfficeError):
    code = ErrorCode.GATEWAY_ERROR

    def __init__(self, message: str,
                 status_code: Optional[int] = None) -> None:
        details: Dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.status_code = status_code


class EventNotFound(BoxOfficeError):
    code = ErrorCode.EVENT_NOT_FOUND

    def __init__(self, event_id: str) -> None:
        super().__init__("Event not found", {"event_id": event_id})
        self.event_id = event_id


class OrderNotFound(BoxOfficeError):
    code = ErrorCode.ORDER_NOT_FOUND

    def __init__(self, order_id: str) -> None:
        super().__init__("Order not found", {"order_id": order_id})


class NotEventOwner(BoxOfficeError):
    code = ErrorCode.NOT_EVENT_OWNER

    def __init__(self, event_id: str) -> None:
        super().__init__("Unauthorized or event not found",
                         {"event_id": event_id})


class ConcurrencyConflict(BoxOfficeError):
    """Lost the conditional write too many times; safe to redeliver."""

    code = ErrorCode.CONCURRENCY_CONFLICT
    terminal = False

    def __init__(self, event_id: str, attempts: int) -> None:
        super().__init__(
            "Event was modified concurrently, try again",
            {"event_id": event_id, "attempts": attempts},
        )
