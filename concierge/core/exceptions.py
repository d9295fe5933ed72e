"""Custom exception classes for structured error handling."""

from typing import Any


class ConciergeError(Exception):
    """Base exception for all Concierge errors."""

    def __init__(self, code: str, message: str, status_code: int = 500) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message}}


# --- Auth ---


class InvalidAPIKeyError(ConciergeError):
    def __init__(self, message: str = "Invalid or missing API key") -> None:
        super().__init__(code="INVALID_API_KEY", message=message, status_code=401)


class TenantNotFoundError(ConciergeError):
    def __init__(self, message: str = "Tenant not found") -> None:
        super().__init__(code="TENANT_NOT_FOUND", message=message, status_code=404)


class TenantInactiveError(ConciergeError):
    def __init__(self, message: str = "Tenant account is inactive") -> None:
        super().__init__(code="TENANT_INACTIVE", message=message, status_code=401)


# --- Not found ---


class CustomerNotFoundError(ConciergeError):
    def __init__(self, message: str = "Customer not found") -> None:
        super().__init__(code="CUSTOMER_NOT_FOUND", message=message, status_code=404)


class ConversationNotFoundError(ConciergeError):
    def __init__(self, message: str = "Conversation not found") -> None:
        super().__init__(code="CONVERSATION_NOT_FOUND", message=message, status_code=404)


class ProductNotFoundError(ConciergeError):
    def __init__(self, message: str = "Product not found") -> None:
        super().__init__(code="PRODUCT_NOT_FOUND", message=message, status_code=404)


class ReservationNotFoundError(ConciergeError):
    def __init__(self, message: str = "No confirmable reservation found") -> None:
        super().__init__(code="RESERVATION_NOT_FOUND", message=message, status_code=404)


# --- Conflict ---


class SlotConflictError(ConciergeError):
    """The slot was committed by another booking first.

    Callers re-fetch availability and prompt again; never retry the slot.
    """

    def __init__(self, message: str = "Slot is already booked") -> None:
        super().__init__(code="SLOT_CONFLICT", message=message, status_code=409)


class InsufficientStockError(ConciergeError):
    def __init__(self, message: str = "Not enough stock to hold this quantity") -> None:
        super().__init__(code="INSUFFICIENT_STOCK", message=message, status_code=409)


class ConversationExpiredError(ConciergeError):
    def __init__(self, message: str = "Conversation has expired and is read-only") -> None:
        super().__init__(code="CONVERSATION_EXPIRED", message=message, status_code=409)


class ConversationNotIdleError(ConciergeError):
    def __init__(self, message: str = "Conversation has not been idle long enough to expire") -> None:
        super().__init__(code="CONVERSATION_NOT_IDLE", message=message, status_code=409)


class DuplicateMessageError(ConciergeError):
    def __init__(self, message: str = "A message with this id already exists") -> None:
        super().__init__(code="DUPLICATE_MESSAGE", message=message, status_code=409)


# --- Validation ---


class SlotNotOfferedError(ConciergeError):
    def __init__(self, message: str = "Slot is not offered on that date") -> None:
        super().__init__(code="SLOT_NOT_OFFERED", message=message, status_code=422)


# --- Unavailable ---


class AssistantUnavailableError(ConciergeError):
    def __init__(self, message: str = "Assistant is unavailable") -> None:
        super().__init__(code="ASSISTANT_UNAVAILABLE", message=message, status_code=503)


class BookingTimeoutError(ConciergeError):
    def __init__(self, message: str = "Booking did not complete in time") -> None:
        super().__init__(code="BOOKING_TIMEOUT", message=message, status_code=504)


class DatabaseConnectionError(ConciergeError):
    def __init__(self, message: str = "Database connection failed") -> None:
        super().__init__(code="DATABASE_CONNECTION_ERROR", message=message, status_code=503)


class RedisConnectionError(ConciergeError):
    def __init__(self, message: str = "Redis connection failed") -> None:
        super().__init__(code="REDIS_CONNECTION_ERROR", message=message, status_code=503)


# --- Soft failures (logged, never surfaced) ---


class NotificationError(ConciergeError):
    def __init__(self, message: str = "Notification delivery failed") -> None:
        super().__init__(code="NOTIFICATION_FAILED", message=message, status_code=502)
