"""Domain error codes for checkout, settlement and back-office operations."""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN_TICKET_TYPE = "UNKNOWN_TICKET_TYPE"
    INVALID_DISCOUNT_CODE = "INVALID_DISCOUNT_CODE"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    PAYMENT_INIT_FAILED = "PAYMENT_INIT_FAILED"
    VERIFICATION_UNAVAILABLE = "VERIFICATION_UNAVAILABLE"
    PAYMENT_DECLINED = "PAYMENT_DECLINED"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ALREADY_DEACTIVATED = "ALREADY_DEACTIVATED"
    NOT_PAID = "NOT_PAID"
    NOT_CONFIRMED = "NOT_CONFIRMED"
    DISCOUNT_NOT_FOUND = "DISCOUNT_NOT_FOUND"
    DUPLICATE_DISCOUNT_CODE = "DUPLICATE_DISCOUNT_CODE"
    AFFILIATE_NOT_FOUND = "AFFILIATE_NOT_FOUND"
    REF_CODE_UNAVAILABLE = "REF_CODE_UNAVAILABLE"


@dataclass(frozen=True)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(DomainError):
    """Raised when checkout or admin input is malformed."""

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.VALIDATION_ERROR, message=message)


class UnknownTicketType(DomainError):
    def __init__(self, name: str) -> None:
        super().__init__(
            code=ErrorCode.UNKNOWN_TICKET_TYPE,
            message="Unknown ticket type",
        )
        self.name = name


class InvalidDiscountCode(DomainError):
    """Raised for unknown, inactive or out-of-range discount codes."""

    def __init__(self, message: str = "Invalid or inactive discount code") -> None:
        super().__init__(code=ErrorCode.INVALID_DISCOUNT_CODE, message=message)


class GatewayUnavailable(DomainError):
    """The payment provider could not be reached or answered non-2xx."""

    def __init__(self, message: str = "Payment provider unavailable") -> None:
        super().__init__(code=ErrorCode.GATEWAY_UNAVAILABLE, message=message)


class PaymentInitFailed(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.PAYMENT_INIT_FAILED,
            message="Could not start payment, please try again",
        )


class VerificationUnavailable(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.VERIFICATION_UNAVAILABLE,
            message="Could not verify payment right now, please retry",
        )


class PaymentDeclined(DomainError):
    """Terminal for the order; the customer must start a new checkout."""

    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.PAYMENT_DECLINED,
            message="Payment was not successful",
        )


class OrderNotFound(DomainError):
    def __init__(self, order_id: str) -> None:
        super().__init__(code=ErrorCode.ORDER_NOT_FOUND, message="Order not found")
        self.order_id = order_id


class AlreadyDeactivated(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.ALREADY_DEACTIVATED,
            message="Ticket has already been used",
        )


class NotPaid(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.NOT_PAID,
            message="Order payment is not confirmed",
        )


class NotConfirmed(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.NOT_CONFIRMED,
            message="Order is not confirmed",
        )


class DiscountNotFound(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.DISCOUNT_NOT_FOUND,
            message="Discount not found",
        )


class DuplicateDiscountCode(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.DUPLICATE_DISCOUNT_CODE,
            message="Discount code already exists",
        )


class AffiliateNotFound(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.AFFILIATE_NOT_FOUND,
            message="Affiliate not found",
        )


class RefCodeUnavailable(DomainError):
    """Every generated referral code was already taken."""

    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.REF_CODE_UNAVAILABLE,
            message="Could not allocate a referral code, please retry",
        )
