"""Domain error codes for the ticketing core."""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    DUPLICATE_REGISTRANT = "DUPLICATE_REGISTRANT"
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    SALE_WINDOW_CLOSED = "SALE_WINDOW_CLOSED"
    SALE_NOT_ACTIVE = "SALE_NOT_ACTIVE"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    DUPLICATE_GENERATION_EXHAUSTED = "DUPLICATE_GENERATION_EXHAUSTED"
    GATEWAY_COMMUNICATION_FAILURE = "GATEWAY_COMMUNICATION_FAILURE"
    ALREADY_IN_TARGET_STATE = "ALREADY_IN_TARGET_STATE"
    ADMIN_REQUIRED = "ADMIN_REQUIRED"


@dataclass(frozen=True)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(DomainError):
    """Raised when purchase input is malformed."""

    def __init__(self, message: str,
                 code: ErrorCode = ErrorCode.VALIDATION_ERROR) -> None:
        super().__init__(code=code, message=message)


class DuplicateRegistrant(ValidationError):
    """Raised when the registrant already holds a live order."""

    def __init__(self, field: str) -> None:
        super().__init__(
            f"{field} is already registered",
            code=ErrorCode.DUPLICATE_REGISTRANT,
        )
        self.field = field


class TicketNotFound(DomainError):
    def __init__(self, category_id: int) -> None:
        super().__init__(
            code=ErrorCode.TICKET_NOT_FOUND,
            message="Ticket category not found",
        )
        self.category_id = category_id


class InsufficientStock(DomainError):
    """Raised when a reservation would push sold above stock."""

    def __init__(self, category_id: int, requested: int,
                 available: int | None = None) -> None:
        super().__init__(
            code=ErrorCode.INSUFFICIENT_STOCK,
            message="Not enough tickets left",
        )
        self.category_id = category_id
        self.requested = requested
        self.available = available


class SaleWindowClosed(DomainError):
    """Raised when the current time is outside the category's sale window."""

    def __init__(self, category_id: int, message: str = "Ticket sale is closed",
                 code: ErrorCode = ErrorCode.SALE_WINDOW_CLOSED) -> None:
        super().__init__(code=code, message=message)
        self.category_id = category_id


class SaleNotActive(SaleWindowClosed):
    """Raised when the category has been switched off."""

    def __init__(self, category_id: int) -> None:
        super().__init__(
            category_id,
            message="Ticket is not available for purchase",
            code=ErrorCode.SALE_NOT_ACTIVE,
        )


class OrderNotFound(DomainError):
    def __init__(self, order_number: str) -> None:
        super().__init__(
            code=ErrorCode.ORDER_NOT_FOUND,
            message="Order not found",
        )
        self.order_number = order_number


class InvalidTransition(DomainError):
    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.INVALID_TRANSITION, message=message)


class DuplicateGenerationExhausted(DomainError):
    """Raised when no free order/bib number was found within the retry cap."""

    def __init__(self, what: str, attempts: int) -> None:
        super().__init__(
            code=ErrorCode.DUPLICATE_GENERATION_EXHAUSTED,
            message=f"Could not generate a free {what} "
                    f"after {attempts} attempts",
        )


class GatewayCommunicationFailure(DomainError):
    """Transient payment gateway failure. Safe to retry."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code=ErrorCode.GATEWAY_COMMUNICATION_FAILURE, message=message
        )


class AlreadyInTargetState(DomainError):
    """Not a failure: the order already has the requested status."""

    def __init__(self, order_number: str, status: str) -> None:
        super().__init__(
            code=ErrorCode.ALREADY_IN_TARGET_STATE,
            message=f"Order is already {status}",
        )
        self.order_number = order_number
        self.status = status


class AdminRequired(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.ADMIN_REQUIRED,
            message="Admin token required",
        )
