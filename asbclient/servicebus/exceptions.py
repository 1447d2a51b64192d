"""
Service Bus Exception Hierarchy

Exception types raised by the Service Bus client, with error codes and context.
No operation retries internally; every error reaches the immediate caller.
"""

from typing import Optional, Dict, Any, Union


class ServiceBusError(Exception):
    """
    Base exception for all Service Bus client errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., 'ProtocolError')
        details: Additional context (entity_name, status_code, etc.)
    """

    error_code: str = "ServiceBusError"
    is_transient: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for logs and reports."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# ========== Configuration Errors ==========

class ConfigurationError(ServiceBusError):
    """Raised for client misconfiguration detected before any network call."""
    error_code = "ConfigurationError"


class SubscriptionRequiredError(ConfigurationError):
    """Raised when a topic receive is attempted without a subscription."""
    error_code = "SubscriptionRequired"

    def __init__(self, topic_name: str, message: Optional[str] = None):
        message = message or (
            f"A subscription is required for Service Bus Topic operations (topic '{topic_name}')"
        )
        super().__init__(message, details={"entity_type": "topic", "entity_name": topic_name})


class InvalidEntityNameError(ConfigurationError):
    """Raised when a queue, topic or subscription name is invalid."""
    error_code = "InvalidEntityName"

    def __init__(
        self,
        entity_type: str,
        entity_name: str,
        reason: str,
        message: Optional[str] = None
    ):
        message = message or f"Invalid {entity_type} name '{entity_name}': {reason}"
        details = {
            "entity_type": entity_type,
            "entity_name": entity_name,
            "reason": reason
        }
        super().__init__(message, details=details)


class InvalidUriError(ConfigurationError):
    """Raised when a request URI cannot be built or parsed."""
    error_code = "InvalidUri"

    def __init__(self, uri: str, reason: str, message: Optional[str] = None):
        message = message or f"Invalid request URI '{uri}': {reason}"
        super().__init__(message, details={"uri": uri, "reason": reason})


# ========== Transport Errors ==========

class TransportError(ServiceBusError):
    """Raised when the HTTPS call itself fails (DNS, TLS, reset, timeout)."""
    error_code = "TransportError"
    is_transient = True

    def __init__(self, method: str, url: str, reason: str, message: Optional[str] = None):
        message = message or f"{method} {url} failed: {reason}"
        super().__init__(message, details={"method": method, "url": url, "reason": reason})


# ========== Protocol Errors ==========

class ProtocolError(ServiceBusError):
    """
    Raised when the service answers with a non-success status.

    Attributes:
        status_code: HTTP status of the response
        code: Code decoded from the error body (numeric for Service Bus), if any
        detail: Detail text decoded from the error body, if any
        raw_body: Undecoded response body text
    """
    error_code = "ProtocolError"

    def __init__(
        self,
        status_code: int,
        code: Optional[Union[int, str]] = None,
        detail: Optional[str] = None,
        raw_body: str = "",
        message: Optional[str] = None
    ):
        if message is None:
            if detail is not None or code is not None:
                message = f"{detail or ''} (Code: {code if code is not None else status_code})"
            else:
                message = f"returned code: {status_code}"
        details: Dict[str, Any] = {"status_code": status_code}
        if code is not None:
            details["code"] = code
        if detail is not None:
            details["detail"] = detail
        super().__init__(message, details=details)
        self.status_code = status_code
        self.code = code
        self.detail = detail
        self.raw_body = raw_body
        self.is_transient = status_code >= 500 or status_code == 429


# ========== Decode Errors ==========

class DecodeError(ServiceBusError):
    """Raised when a success response cannot be turned into a message."""
    error_code = "DecodeError"

    def __init__(self, reason: str, message: Optional[str] = None):
        message = message or f"Error decoding response: {reason}"
        super().__init__(message, details={"reason": reason})


# ========== Lifecycle Errors ==========

class InvalidOperationError(ServiceBusError):
    """Raised when an operation is invalid for the message in hand."""
    error_code = "InvalidOperation"

    def __init__(
        self,
        operation: str,
        reason: str,
        message: Optional[str] = None
    ):
        message = message or f"Invalid operation '{operation}': {reason}"
        details = {"operation": operation, "reason": reason}
        super().__init__(message, details=details)


# ========== Utility Functions ==========

def is_transient_error(error: Exception) -> bool:
    """
    Determine if an error is transient and the caller may retry.

    Args:
        error: Exception to check

    Returns:
        True for transport failures, throttling and server-side errors
    """
    if isinstance(error, ServiceBusError):
        return error.is_transient

    if isinstance(error, (
        ConnectionError,
        ConnectionRefusedError,
        ConnectionResetError,
        TimeoutError,
    )):
        return True

    return False
