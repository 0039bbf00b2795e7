"""
Lineflux Exceptions

Error taxonomy for the write pipeline:

- ConfigurationError: invalid client configuration (fatal at construction)
- EncodingError: a point could not be turned into line protocol
- TransportError: network failure, timeout or retryable HTTP status
- ServerRejectionError: non-retryable response from the server
- RetryExhaustedError: retryable failures persisted past max attempts
- ClientClosedError: write attempted after close()
"""

from typing import Any, Dict, List, Optional, Tuple


class LinefluxError(Exception):
    """Base class for all lineflux errors"""


class ConfigurationError(LinefluxError):
    """Raised when the client configuration is invalid"""


class EncodingError(LinefluxError):
    """
    Raised when a point (or raw record) cannot be encoded as line protocol.

    When several points of one write() call are rejected, `rejected` holds
    (point, error) pairs for each of them.
    """

    def __init__(self, message: str, point: Any = None, rejected: Optional[List[Tuple[Any, "EncodingError"]]] = None):
        super().__init__(message)
        self.point = point
        self.rejected = rejected or []


class ClientClosedError(LinefluxError):
    """Raised when writing to a client that is closing or closed"""


class WriteError(LinefluxError):
    """Base class for failures of a batch write"""

    def __init__(self, message: str, batch_id: Optional[str] = None):
        super().__init__(message)
        self.batch_id = batch_id


class TransportError(WriteError):
    """
    Network failure, timeout or retryable status (HTTP 429, 5xx).

    `status` is None for network-level failures. `retryable` is False for
    failures that cannot succeed on a later attempt (TLS certificate
    errors, invalid URLs); those fail the batch on the first attempt.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
        batch_id: Optional[str] = None,
        retryable: bool = True
    ):
        super().__init__(message, batch_id=batch_id)
        self.status = status
        self.retry_after = retry_after
        self.retryable = retryable


class ServerRejectionError(WriteError):
    """Non-retryable response from the server (4xx other than 429, unfollowed 3xx)"""

    def __init__(
        self,
        status: int,
        message: str,
        body: str = "",
        headers: Optional[Dict[str, str]] = None,
        batch_id: Optional[str] = None
    ):
        super().__init__(f"HTTP {status}: {message}", batch_id=batch_id)
        self.status = status
        self.message = message
        self.body = body
        self.headers = headers or {}


class RetryExhaustedError(WriteError):
    """Retryable failures persisted past the configured number of retries"""

    def __init__(self, attempts: int, last_error: TransportError, batch_id: Optional[str] = None):
        super().__init__(
            f"Write failed after {attempts} attempts: {last_error}",
            batch_id=batch_id
        )
        self.attempts = attempts
        self.last_error = last_error
