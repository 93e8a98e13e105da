"""
Billing service exceptions.

Every error the service raises on purpose derives from BaseCustomException and
carries an HTTP status, a stable error code and optional details; the API turns
them into the standard error body. Cashier-facing payment errors keep distinct
codes so the UI can tell an overpayment from a short cash tender.
"""

from typing import Dict, Any, Optional
from datetime import datetime
from decimal import Decimal
from fastapi import status
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
import logging

logger = logging.getLogger(__name__)


class BaseCustomException(Exception):
    """Base class for custom exceptions"""
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal error"
    default_code: Optional[str] = None

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        self.message = message or self.default_message
        self.details = details or {}
        self.error_code = error_code or self.default_code
        super().__init__(self.message)


class ValidationError(BaseCustomException):
    """Malformed amounts, discounts or insurance coverage"""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Validation failed"
    default_code = "VALIDATION_ERROR"


class NotFoundError(BaseCustomException):
    """Visit or billing does not exist"""
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"
    default_code = "NOT_FOUND_ERROR"


class ConflictError(BaseCustomException):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource conflict"
    default_code = "CONFLICT_ERROR"


class ConcurrentUpdateError(ConflictError):
    """Billing header changed by another transaction between read and write"""
    default_message = "Billing was modified by another transaction"
    default_code = "CONCURRENT_UPDATE"


class PaymentErrorCode:
    EXCEEDS_BALANCE = "PAYMENT_EXCEEDS_BALANCE"
    INSUFFICIENT_AMOUNT_RECEIVED = "INSUFFICIENT_AMOUNT_RECEIVED"


class InvalidPaymentError(BaseCustomException):
    """Payment rejected against the billing balance; never retried"""
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid payment"
    default_code = "INVALID_PAYMENT"

    @classmethod
    def exceeds_balance(cls, amount: Decimal, balance: Decimal) -> "InvalidPaymentError":
        return cls(
            f"Payment amount exceeds remaining balance of {balance}",
            details={"amount": str(amount), "remaining_amount": str(balance)},
            error_code=PaymentErrorCode.EXCEEDS_BALANCE
        )

    @classmethod
    def insufficient_received(cls, amount: Decimal, received: Decimal) -> "InvalidPaymentError":
        return cls(
            "Amount received is less than the payment amount",
            details={"amount": str(amount), "amount_received": str(received)},
            error_code=PaymentErrorCode.INSUFFICIENT_AMOUNT_RECEIVED
        )


class DatabaseError(BaseCustomException):
    default_message = "Database operation failed"
    default_code = "DATABASE_ERROR"


# Response models for errors
class ErrorResponse(BaseModel):
    """Standard error response model"""
    error: str
    message: str
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None
    request_id: Optional[str] = None


def create_error_response(
    exception: BaseCustomException,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Create standardized error response"""
    response = {
        "error": exception.__class__.__name__.replace("Error", " Error"),
        "message": exception.message,
        "error_code": exception.error_code,
        "timestamp": datetime.utcnow().isoformat(),
        "request_id": request_id
    }

    if exception.details:
        response["details"] = exception.details

    return response


def handle_database_error(error: Exception, operation: str = "database operation") -> BaseCustomException:
    """Translate a SQLAlchemy failure into the service's error hierarchy"""
    logger.error(f"Database error during {operation}: {error}")

    if isinstance(error, StaleDataError):
        return ConcurrentUpdateError(details={"operation": operation})

    # Two writers racing to create the same visit's billing
    if isinstance(error, IntegrityError) and "billings" in str(error).lower():
        return ConflictError(
            "Billing already exists for this visit",
            details={"operation": operation}
        )

    error_message = "Database operation failed"
    if "connection" in str(error).lower():
        error_message = "Database connection failed"
    elif "timeout" in str(error).lower():
        error_message = "Database operation timed out"
    elif "constraint" in str(error).lower():
        error_message = "Database constraint violation"

    return DatabaseError(
        message=error_message,
        details={"operation": operation, "original_error": str(error)},
        error_code="DATABASE_OPERATION_ERROR"
    )
