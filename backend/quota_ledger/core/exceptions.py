"""
Custom exception hierarchy for structured error handling.

WHY: Custom exceptions provide:
1. Consistent error handling across the API
2. HTTP status code mapping for FastAPI
3. Structured error responses with contextual data
4. No sensitive data leaks in error messages (OWASP A04)
5. A closed taxonomy for ledger, provisioning and billing failures

IMPORTANT: NEVER use base Exception class. Always use custom exceptions.
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
# Authentication & Authorization Exceptions (OWASP A07)
# ============================================================================


class AuthenticationError(AppException):
    """
    Raised when authentication fails.

    HTTP Status: 401 Unauthorized
    """

    status_code = 401
    default_message = "Authentication failed"


class AuthorizationError(AppException):
    """
    Raised when the caller lacks a capability for an action.

    WHY: Distinguishing authorization (403) from authentication (401) lets
    clients tell "log in again" apart from "ask an administrator".

    HTTP Status: 403 Forbidden
    """

    status_code = 403
    default_message = "You do not have permission to perform this action"


class TokenExpiredError(AuthenticationError):
    """
    Raised when JWT token has expired.

    HTTP Status: 401 Unauthorized
    """

    default_message = "Token has expired"


class TokenInvalidError(AuthenticationError):
    """
    Raised when JWT token is malformed or has invalid signature.

    HTTP Status: 401 Unauthorized
    """

    default_message = "Token is invalid"


# ============================================================================
# Validation & Resource Exceptions
# ============================================================================


class ValidationError(AppException):
    """
    Raised when input fails a rule that Pydantic cannot express.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Validation failed"


class ResourceNotFoundError(AppException):
    """
    Raised when an entity is absent or not owned by the caller.

    WHY: Reporting "not owned" as 404 instead of 403 prevents callers from
    probing which partner or organization ids exist.

    HTTP Status: 404 Not Found
    """

    status_code = 404
    default_message = "Resource not found"


class ResourceAlreadyExistsError(AppException):
    """
    Raised when a unique name (domain, mailbox address) is already taken.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "Resource already exists"


# ============================================================================
# Business Logic Exceptions
# ============================================================================


class BusinessRuleViolation(AppException):
    """
    Raised when an operation violates a business rule.

    HTTP Status: 422 Unprocessable Entity
    """

    status_code = 422
    default_message = "Business rule violation"


class InvalidStateTransitionError(BusinessRuleViolation):
    """
    Raised when an entity cannot move to the requested state.

    Examples: verifying a suspended domain, settling a cancelled invoice.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid state transition"


class InsufficientCapacityError(BusinessRuleViolation):
    """
    Raised when requested bytes exceed the parent pool's available capacity.

    WHY: User-correctable (buy more storage or shrink a sibling) and never
    retried automatically. Context carries requested and available bytes
    so clients can explain the shortfall.

    HTTP Status: 422 Unprocessable Entity
    """

    default_message = "Insufficient storage capacity"


class QuotaBelowUsageError(BusinessRuleViolation):
    """
    Raised when a pool would shrink below what its children already consume.

    HTTP Status: 422 Unprocessable Entity
    """

    default_message = "Quota cannot be reduced below current usage"


class DomainNotActiveError(BusinessRuleViolation):
    """
    Raised when a mailbox is requested on a domain that has not passed
    DNS verification.

    HTTP Status: 422 Unprocessable Entity
    """

    default_message = "Domain is not active"


class InactiveAccountError(BusinessRuleViolation):
    """
    Raised when a suspended partner or organization attempts to allocate.

    HTTP Status: 422 Unprocessable Entity
    """

    default_message = "Account is suspended"


# ============================================================================
# External Service Exceptions
# ============================================================================


class ExternalServiceError(AppException):
    """
    Raised when an external collaborator fails or times out.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    default_message = "External service error"


class MailcowError(ExternalServiceError):
    """
    Raised by the mail-hosting client for non-2xx responses, timeouts,
    transport errors, or an error/danger payload.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Mail hosting API error"


class ExternalProvisioningError(ExternalServiceError):
    """
    Raised when provisioning could not bring the mail host in line with
    the ledger.

    WHY: The ledger records the failure durably (failed status or an
    untouched reservation), so the caller gets a retryable error instead
    of a silent drop. ``retryable`` is exposed in the response details.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Mail hosting provisioning failed"

    def __init__(self, message: Optional[str] = None, retryable: bool = True, **context: Any):
        self.retryable = retryable
        super().__init__(message=message, retryable=retryable, **context)


class PaymentGatewayError(ExternalServiceError):
    """
    Raised when the payment gateway API fails or times out.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Payment gateway error"


# ============================================================================
# Billing Integrity Exceptions
# ============================================================================


class InvalidSignatureError(AppException):
    """
    Raised when a payment or webhook signature does not match.

    WHY: Hard failure, never retried. Mismatches are logged for manual
    review since they indicate tampering or a misconfigured secret.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid payment signature"


class PaymentNotCapturedError(AppException):
    """
    Raised when the gateway does not confirm capture for a payment.

    HTTP Status: 402 Payment Required
    """

    status_code = 402
    default_message = "Payment has not been captured"
