# Structured exception hierarchy for the Dhan feed client

from typing import Dict, Any, Optional, Union
from datetime import datetime, timezone


class DhanFeedException(Exception):
    """Base exception for all feed client errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 correlation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.correlation_id = correlation_id
        self.timestamp = datetime.now(timezone.utc)


class TransientError(DhanFeedException):
    """Base class for transient errors that the reconnect loop may recover from"""

    def __init__(self, message: str, retry_count: int = 0, max_retries: int = 10,
                 details: Optional[Dict[str, Any]] = None, correlation_id: Optional[str] = None):
        super().__init__(message, details, correlation_id)
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.retryable = retry_count < max_retries


class PermanentError(DhanFeedException):
    """Base class for errors the caller must fix; never retried"""
    pass


# Configuration Errors
class ConfigurationError(PermanentError):
    """Configuration validation errors"""

    def __init__(self, message: str, config_field: str, config_value: Any = None,
                 **kwargs):
        super().__init__(message, **kwargs)
        self.config_field = config_field
        self.config_value = config_value


# Validation Errors
class FeedValidationError(PermanentError):
    """Invalid subscription request (empty list, malformed instrument, bad request code)"""

    def __init__(self, message: str, field: str, value: Any = None,
                 expected_type: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value
        self.expected_type = expected_type


class CapacityExceededError(FeedValidationError):
    """Subscription cannot be placed in the bounded connection pool"""

    def __init__(self, message: str, requested: int, capacity: int, **kwargs):
        super().__init__(message, field="instruments", value=requested, **kwargs)
        self.requested = requested
        self.capacity = capacity


class PacketDecodeError(PermanentError):
    """Inbound binary frame is too short or inconsistent for its response code"""

    def __init__(self, message: str, response_code: Optional[int], length: int,
                 required: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.response_code = response_code
        self.length = length
        self.required = required


# Transport Errors
class FeedConnectionError(TransientError):
    """Socket could not be opened or was lost"""

    def __init__(self, message: str, connection_id: int, url: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.connection_id = connection_id
        self.url = url


class FeedSendError(TransientError):
    """A subscription frame could not be written to the socket"""

    def __init__(self, message: str, connection_id: int, request_code: Optional[int] = None,
                 **kwargs):
        super().__init__(message, **kwargs)
        self.connection_id = connection_id
        self.request_code = request_code


# Protocol / server errors
class FeedApiError(TransientError):
    """Server-reported Data API (800-814) or Trading API (DH-9xx) error"""

    def __init__(self, message: str, error_type: str, code: Union[int, str],
                 critical: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.error_type = error_type
        self.code = code
        self.critical = critical
        if critical:
            self.retryable = False

    def __str__(self) -> str:
        return f"{self.error_type} error [{self.code}]: {self.message}"


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error may be recovered by reconnecting

    Returns:
        True if error is transient and retryable, False otherwise
    """
    if isinstance(error, TransientError):
        return error.retryable
    return False


def create_error_context(error: Exception, operation: str,
                         additional_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Create structured error context for logging and monitoring

    Args:
        error: The exception that occurred
        operation: The operation that failed
        additional_context: Additional context information

    Returns:
        Structured error context dictionary
    """
    context = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "operation": operation,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "retryable": is_retryable_error(error)
    }

    if isinstance(error, DhanFeedException):
        if error.correlation_id:
            context["correlation_id"] = error.correlation_id
        if error.details:
            context["error_details"] = error.details

        if isinstance(error, TransientError):
            context["retry_count"] = error.retry_count
            context["max_retries"] = error.max_retries

        if isinstance(error, (FeedConnectionError, FeedSendError)):
            context["connection_id"] = error.connection_id

        if isinstance(error, FeedApiError):
            context["api_error_type"] = error.error_type
            context["api_error_code"] = error.code
            context["critical"] = error.critical

        if isinstance(error, PacketDecodeError):
            context["response_code"] = error.response_code
            context["packet_length"] = error.length

    if additional_context:
        context.update(additional_context)

    return context
