"""
Custom Exception Hierarchy

Structured exceptions shared by the dialogue engine, the order lifecycle and
the HTTP layer. Every domain error carries a stable ``ErrorCode`` so the API
and the chat replies can be mapped consistently.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    NOT_FOUND = "ERR_1002"
    RATE_LIMITED = "ERR_1006"

    # Order errors (2xxx)
    ORDER_NOT_FOUND = "ERR_2001"
    ORDER_INVALID_TRANSITION = "ERR_2002"
    ORDER_NOT_CANCELLABLE = "ERR_2003"
    ORDER_NUMBER_EXHAUSTED = "ERR_2004"
    ORDER_EMPTY = "ERR_2005"
    INVALID_RATING = "ERR_2006"

    # Inventory errors (3xxx)
    ITEM_NOT_FOUND = "ERR_3001"
    INSUFFICIENT_STOCK = "ERR_3002"
    NO_ACTIVE_PRICE = "ERR_3003"
    WAREHOUSE_NOT_FOUND = "ERR_3004"
    STOCK_NOT_FOUND = "ERR_3005"

    # External service errors (5xxx)
    WHATSAPP_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"

    # Conversation errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"
    SESSION_CONFLICT = "ERR_6002"
    INVALID_STATE = "ERR_6003"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )
        self.resource = resource
        self.identifier = identifier


class OrderNotFoundError(NotFoundException):
    """Raised when an order does not exist"""

    def __init__(self, order_id: Any):
        super().__init__("Order", order_id, ErrorCode.ORDER_NOT_FOUND)


class ItemNotFoundError(NotFoundException):
    """Raised when a catalog item does not exist"""

    def __init__(self, item_id: Any):
        super().__init__("Item", item_id, ErrorCode.ITEM_NOT_FOUND)


class WarehouseNotFoundError(NotFoundException):
    """Raised when a warehouse does not exist"""

    def __init__(self, warehouse_id: Any):
        super().__init__("Warehouse", warehouse_id, ErrorCode.WAREHOUSE_NOT_FOUND)


class InsufficientStockError(AppException):
    """Raised when the requested quantity exceeds the available stock"""

    def __init__(
        self,
        item_name: str,
        available: int,
        requested: int,
        item_id: int | None = None,
    ):
        super().__init__(
            message=(
                f"Insufficient stock for {item_name}. "
                f"Available: {available}, Requested: {requested}"
            ),
            error_code=ErrorCode.INSUFFICIENT_STOCK,
            status_code=409,
            details={
                "item_id": item_id,
                "item_name": item_name,
                "available": available,
                "requested": requested,
            }
        )
        self.item_name = item_name
        self.available = available
        self.requested = requested


class InvalidStateError(AppException):
    """Base for operations that are not allowed in the current state"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INVALID_STATE,
        status_code: int = 400,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )


class NoActivePriceError(InvalidStateError):
    """Raised when an item has no active selling price"""

    def __init__(self, item_name: str, item_id: int | None = None):
        super().__init__(
            message=f"Item {item_name} has no active price",
            error_code=ErrorCode.NO_ACTIVE_PRICE,
            details={"item_id": item_id, "item_name": item_name}
        )


class StockRecordNotFoundError(InvalidStateError):
    """Raised when an item has no stock record in the order's warehouse"""

    def __init__(self, item_name: str, warehouse_id: int | None):
        super().__init__(
            message=f"Stock not found for item {item_name} in warehouse {warehouse_id}",
            error_code=ErrorCode.STOCK_NOT_FOUND,
            status_code=409,
            details={"item_name": item_name, "warehouse_id": warehouse_id}
        )


class EmptyOrderError(InvalidStateError):
    """Raised when an order is requested without any line items"""

    def __init__(self):
        super().__init__(
            message="Order must contain at least one item",
            error_code=ErrorCode.ORDER_EMPTY,
        )


class InvalidOrderTransitionError(InvalidStateError):
    """Raised when an order status change is not allowed"""

    def __init__(self, order_id: int, current_status: str, target_status: str):
        super().__init__(
            message=f"Order {order_id} cannot move from '{current_status}' to '{target_status}'",
            error_code=ErrorCode.ORDER_INVALID_TRANSITION,
            status_code=409,
            details={
                "order_id": order_id,
                "current_status": current_status,
                "target_status": target_status,
            }
        )


class OrderNotCancellableError(InvalidStateError):
    """Raised when trying to cancel an order that was already delivered"""

    def __init__(self, order_id: int):
        super().__init__(
            message="Cannot cancel a delivered order",
            error_code=ErrorCode.ORDER_NOT_CANCELLABLE,
            status_code=409,
            details={"order_id": order_id}
        )


class InvalidRatingError(InvalidStateError):
    """Raised when a rating is outside the 1-5 range"""

    def __init__(self, rating: Any):
        super().__init__(
            message=f"Rating must be between 1 and 5, got {rating}",
            error_code=ErrorCode.INVALID_RATING,
            details={"rating": str(rating)}
        )


class OrderNumberExhaustedError(AppException):
    """Raised when no unique order number could be allocated"""

    def __init__(self, attempts: int):
        super().__init__(
            message=f"Could not allocate a unique order number after {attempts} attempts",
            error_code=ErrorCode.ORDER_NUMBER_EXHAUSTED,
            status_code=503,
            details={"attempts": attempts}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class TransientSendFailure(ExternalServiceException):
    """Outbound message could not be delivered. Always caught at the send site."""


class WhatsAppError(TransientSendFailure):
    """Raised when the WhatsApp transport fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="whatsapp",
            message=f"WhatsApp API error: {message}",
            error_code=ErrorCode.WHATSAPP_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "WhatsAppError":
        """
        יצירת WhatsAppError מתוך HTTP response בצורה עקבית.

        Args:
            operation: שם הפעולה (לדוגמה: send, send-media)
            response: אובייקט response (למשל httpx.Response)
            message: הודעת שגיאה מותאמת (אם לא סופק - נבנית אוטומטית)
            max_response_chars: אורך מקסימלי לשמירת response_text
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class CircuitBreakerOpenError(TransientSendFailure):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


class StateMachineException(AppException):
    """Base exception for conversation state machine errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )


class InvalidStateTransitionError(StateMachineException):
    """Raised when a dialogue handler returns a state outside the transition table"""

    def __init__(self, current_state: str, target_state: str):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={
                "current_state": current_state,
                "target_state": target_state,
            }
        )


class SessionConflictError(StateMachineException):
    """Raised when a session keeps changing underneath concurrent writers"""

    def __init__(self, phone_masked: str, attempts: int):
        super().__init__(
            message=f"Session for {phone_masked} changed concurrently {attempts} times",
            error_code=ErrorCode.SESSION_CONFLICT,
            details={"phone": phone_masked, "attempts": attempts}
        )
