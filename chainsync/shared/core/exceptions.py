from typing import Optional, Dict, Any


class ChainSyncException(Exception):
    """Base exception for all ChainSync errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class WebhookAuthenticationError(ChainSyncException):
    """Raised for a missing/invalid signature or a missing/out-of-window timestamp."""
    def __init__(self, message: str, code: str = "webhook_unauthenticated", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=401, details=details)


class WebhookValidationError(ChainSyncException):
    """Raised when an authenticated delivery cannot be processed as sent."""
    def __init__(self, message: str, code: str = "webhook_invalid", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)


class MalformedPayloadError(WebhookValidationError):
    """Raised when the body is not a JSON object."""
    def __init__(self, message: str = "Invalid JSON payload", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="malformed_payload", details=details)


class MissingDeliveryIdError(WebhookValidationError):
    """Raised when the delivery/event id header is absent."""
    def __init__(self, message: str = "Missing event id", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="missing_delivery_id", details=details)


class UnsupportedEventError(WebhookValidationError):
    """Raised for event types outside the provider allow-list."""
    def __init__(self, message: str = "Unsupported event type", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="unsupported_event", details=details)


class MissingIdentifiersError(WebhookValidationError):
    """Raised when neither metadata nor a fallback reference names the subscription."""
    def __init__(self, message: str = "Missing subscription identifiers", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="missing_identifiers", details=details)


class InvalidStateTransition(ChainSyncException):
    """Raised when a charge outcome is applied to a subscription that cannot accept it."""
    def __init__(self, message: str, code: str = "invalid_state_transition", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=409, details=details)


class BillingError(ChainSyncException):
    """Raised when payment or subscription processing fails."""
    def __init__(self, message: str, code: str = "billing_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)


class ResourceNotFoundError(ChainSyncException):
    """Raised when a requested resource is not found."""
    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)


class ConfigurationError(ChainSyncException):
    """Raised when application configuration is invalid or missing."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)
