# =============================================================================
# d3_core/errors/__init__.py
# Centralized Error Handling for the D3 offline core
# =============================================================================

from .exceptions import (
    D3Error,
    StorageUnavailable,
    QueueCorrupt,
    RemoteError,
    NetworkUnreachable,
    RemoteRejected,
    RemoteUnknown,
    ConfigurationError,
)

from .classification import (
    classify_error,
    is_network_error,
)

__all__ = [
    # Exceptions
    "D3Error",
    "StorageUnavailable",
    "QueueCorrupt",
    "RemoteError",
    "NetworkUnreachable",
    "RemoteRejected",
    "RemoteUnknown",
    "ConfigurationError",
    # Classification
    "classify_error",
    "is_network_error",
]
