"""
Custom exceptions for the resumable upload client.
Provides specific error types for transfer, retry and processing failures.
"""
from typing import Optional


class UploadClientException(Exception):
    """Base exception for all application errors."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ValidationException(UploadClientException):
    """Raised when input validation fails."""
    pass


class ItemNotFoundException(UploadClientException):
    """Raised when an upload item id is unknown."""
    pass


class InvalidTransitionException(UploadClientException):
    """Raised when an upload item is moved along an illegal status edge."""
    pass


class UploadBackendException(UploadClientException):
    """Raised when the transfer backend rejects a request."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientNetworkError(UploadBackendException):
    """Raised on transport failures and timeouts talking to the backend."""
    pass


class SessionNotFoundException(UploadBackendException):
    """Raised when the backend no longer knows an upload session."""
    pass


class RateLimitError(UploadBackendException):
    """Raised when the backend answers with a rate-limit response."""
    def __init__(self, message: str, retry_after: Optional[float] = None, code: Optional[str] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after
        self.code = code


class QuotaExceededError(RateLimitError):
    """Raised when the session quota is held by stale reservations."""
    pass


class RetryExhaustedError(UploadClientException):
    """Raised when an operation used up its retry budget."""
    def __init__(self, message: str, operation: str, last_error: Exception):
        super().__init__(message)
        self.operation = operation
        self.last_error = last_error


class ProcessingFailure(UploadClientException):
    """Raised when the backend reports that processing of a file failed."""
    pass


class ProcessingTimeout(UploadClientException):
    """Raised when the backend does not finish processing in time."""
    pass


class OperationAborted(Exception):
    """
    Raised inside an item's operation after a user pause or cancel.
    Not an error: the operation exits and the item keeps its user-set status.
    """
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Operation aborted: {reason}")
