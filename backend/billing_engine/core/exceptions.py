"""
Custom exception hierarchy for structured error handling.

WHY: Custom exceptions provide:
1. Consistent error handling across services and the API
2. HTTP status code mapping for FastAPI
3. Structured error responses with contextual data
4. No sensitive data (API keys, webhook secrets) in error messages

IMPORTANT: Declined payments are NOT exceptions. They travel as failed
PaymentResponse objects. Exceptions are reserved for invalid input, missing
records and infrastructure failures.
"""

from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Base exception class for all application exceptions.

    WHY: Centralizing exception handling in a base class ensures consistent
    error responses, HTTP status code mapping, and prevents sensitive data
    leaks in error messages.

    All custom exceptions should inherit from this class.
    """

    status_code: int = 500
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        """
        Initialize exception with message and context.

        Args:
            message: Human-readable error message
            status_code: HTTP status code (overrides class default)
            **context: Additional context for debugging (filtered in to_dict)
        """
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize exception to dictionary for JSON response.

        Returns:
            Dictionary with error details (sensitive fields filtered out)
        """
        sensitive_fields = {"password", "token", "secret", "key", "api_key", "signature"}
        filtered_context = {
            k: v for k, v in self.context.items() if k.lower() not in sensitive_fields
        }

        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "status_code": self.status_code,
            "details": filtered_context if filtered_context else None,
        }


# ============================================================================
# Validation & Input Exceptions
# ============================================================================


class ValidationError(AppException):
    """
    Raised when input validation fails.

    WHY: Malformed monetary amounts, unsupported currencies and bad metadata
    are rejected at the call boundary and never persisted.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Validation failed"


# ============================================================================
# Resource Exceptions
# ============================================================================


class ResourceNotFoundError(AppException):
    """
    Raised when a requested resource doesn't exist.

    WHY: Operating on a missing invoice, schedule, event or subscription
    must fail loudly with no partial state change.

    HTTP Status: 404 Not Found
    """

    status_code = 404
    default_message = "Resource not found"


class InvoiceNotFoundError(ResourceNotFoundError):
    """Raised when an invoice id does not exist."""

    default_message = "Invoice not found"


class SubscriptionNotFoundError(ResourceNotFoundError):
    """Raised when a subscription id does not exist."""

    default_message = "Subscription not found"


class BillingScheduleNotFoundError(ResourceNotFoundError):
    """Raised when a billing schedule id does not exist."""

    default_message = "Billing schedule not found"


class DunningEventNotFoundError(ResourceNotFoundError):
    """Raised when a dunning event id does not exist."""

    default_message = "Dunning event not found"


class ResourceAlreadyExistsError(AppException):
    """
    Raised when attempting to create a resource that already exists.

    WHY: A subscription may only have one active billing schedule.
    409 Conflict tells the caller the existing record wins.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "Resource already exists"


# ============================================================================
# Business Logic Exceptions
# ============================================================================


class BusinessRuleViolation(AppException):
    """
    Raised when a business rule is violated.

    HTTP Status: 422 Unprocessable Entity
    """

    status_code = 422
    default_message = "Business rule violation"


class InvalidStateTransitionError(BusinessRuleViolation):
    """
    Raised when an invalid state transition is attempted.

    WHY: Invoice status only moves forward (draft -> sent -> paid).
    Attempting to reopen a paid or cancelled invoice must fail clearly.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid state transition"


# ============================================================================
# External Service Exceptions
# ============================================================================


class ExternalServiceError(AppException):
    """
    Base exception for external service failures.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    default_message = "External service error"


class PaymentGatewayError(ExternalServiceError):
    """
    Raised when a payment provider cannot be reached or answers garbage.

    WHY: Infrastructure failures (network errors, 5xx answers, malformed
    payloads) are the only trigger for cross-provider failover. The router
    catches this exception; it never escapes process_payment.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Payment gateway error"


class GatewayOperationNotSupportedError(ExternalServiceError):
    """
    Raised when an adapter does not implement an optional operation.

    WHY: Not every provider has a separate capture step. Asking for one
    is an unsupported operation, not a provider failure.

    HTTP Status: 501 Not Implemented
    """

    status_code = 501
    default_message = "Operation not supported by payment gateway"


class GatewayNotConfiguredError(ResourceNotFoundError):
    """Raised when an operation names a gateway that is not registered."""

    default_message = "Payment gateway not configured"


class EmailServiceError(ExternalServiceError):
    """
    Raised when email sending fails.

    WHY: Billing notices are best-effort. The notification layer catches
    this, logs it, and never lets it fail a billing operation.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Email service error"


class DocumentRenderError(AppException):
    """Raised when an invoice document cannot be rendered."""

    status_code = 500
    default_message = "Invoice document rendering failed"


# ============================================================================
# Database Exceptions
# ============================================================================


class DatabaseError(AppException):
    """
    Raised when database operations fail.

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    default_message = "Database error"


class ConcurrencyConflictError(DatabaseError):
    """
    Raised when a conditional write loses a race.

    WHY: Invoice numbering and single-active-record rules are enforced by
    database constraints. When another engine instance wins, the loser gets
    this instead of a raw IntegrityError.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "Concurrent update conflict"
