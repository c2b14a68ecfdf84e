"""
Error taxonomy for the payment service.

Every error carries a stable error code and the HTTP status it maps to, so a
single exception handler in main.py can render them.
"""
from typing import Any, Dict, Optional


class ZetechError(Exception):
    """Base exception for all service errors."""

    status_code = 500

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class UnauthenticatedError(ZetechError):
    """Bearer credential missing, malformed or rejected."""

    status_code = 401

    def __init__(self, message: str = "Invalid or missing token", details: Optional[Dict[str, Any]] = None):
        super().__init__("auth:unauthenticated", message, details)


class GatewayConfigurationError(ZetechError):
    """Daraja credentials are not configured."""

    status_code = 503

    def __init__(self, message: str = "Missing Daraja API credentials", details: Optional[Dict[str, Any]] = None):
        super().__init__("gateway:not_configured", message, details)


class UpstreamAuthError(ZetechError):
    """
    Daraja rejected the OAuth client-credentials request.

    Examples:
    - Wrong consumer key/secret
    - Token response without access_token
    """

    status_code = 503

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("gateway:auth_failed", message, details)


class UpstreamRequestError(ZetechError):
    """
    An STK push or STK query call failed.

    Examples:
    - Network error or timeout
    - Non-2xx status from the gateway
    - Spike arrest (rate limiting)
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        rate_limited: bool = False,
    ):
        self.rate_limited = rate_limited
        super().__init__(
            "gateway:request_failed",
            message,
            details,
            status_code=429 if rate_limited else None,
        )


class UpstreamSchemaError(ZetechError):
    """A gateway body did not match the expected shape."""

    status_code = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, status_code: Optional[int] = None):
        super().__init__("gateway:invalid_response", message, details, status_code=status_code)


class NotFoundError(ZetechError):
    """No local row matches the requested identifier."""

    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("store:not_found", message, details)


class PersistenceError(ZetechError):
    """A row insert or update could not be committed."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("store:persistence_failed", message, details)


class PaymentInitiationError(ZetechError):
    """Unexpected failure while initiating a payment."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:initiation_failed", message, details)


class DuplicateTransactionError(ZetechError):
    """The caller-generated transaction id belongs to another user."""

    status_code = 409

    def __init__(self, message: str = "Transaction id already in use", details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:duplicate_transaction", message, details)
