# =============================================================================
# d3_core/errors/exceptions.py
# Custom Exception Hierarchy for the D3 offline core
# =============================================================================

from typing import Optional, Dict, Any


class D3Error(Exception):
    """
    Base exception for all D3 offline-core errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "STORE_001")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "D3_000"
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# LOCAL STORAGE EXCEPTIONS
# =============================================================================

class StorageUnavailable(D3Error):
    """Raised when the local durable store cannot be read or written"""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        partition: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        if partition:
            details["partition"] = partition

        super().__init__(
            message=message,
            code="STORE_001",
            details=details,
            **kwargs,
        )


class QueueCorrupt(D3Error):
    """Raised when a queued mutation cannot be decoded"""

    def __init__(
        self,
        message: str,
        queue_id: Optional[int] = None,
        kind: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if queue_id is not None:
            details["queue_id"] = queue_id
        if kind:
            details["kind"] = kind

        super().__init__(
            message=message,
            code="QUEUE_001",
            details=details,
            **kwargs,
        )


# =============================================================================
# REMOTE STORE EXCEPTIONS
# =============================================================================

class RemoteError(D3Error):
    """
    Base class for failures at the remote boundary.

    Every exception leaving the remote store or the passage connector is one of
    the three subclasses below, so callers branch on type, never on message.
    """

    default_code = "REMOTE_000"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        if status_code is not None:
            details["status_code"] = status_code
        self.status_code = status_code

        super().__init__(
            message=message,
            code=kwargs.pop("code", self.default_code),
            details=details,
            **kwargs,
        )

    @property
    def retryable(self) -> bool:
        return False


class NetworkUnreachable(RemoteError):
    """Transient connectivity failure (no route, DNS, timeout, 5xx, 429)"""

    default_code = "REMOTE_001"

    @property
    def retryable(self) -> bool:
        return True


class RemoteRejected(RemoteError):
    """The remote answered and refused the request (validation, auth, conflict)"""

    default_code = "REMOTE_002"


class RemoteUnknown(RemoteError):
    """A remote call failed in a way that could not be classified"""

    default_code = "REMOTE_003"


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(D3Error):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )
