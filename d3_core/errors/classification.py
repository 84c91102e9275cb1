# =============================================================================
# d3_core/errors/classification.py
# Typed classification of failures at the network boundary
# =============================================================================
"""
Map exceptions raised by supabase-py (httpx / postgrest) and requests into the
RemoteError sum type: NetworkUnreachable | RemoteRejected | RemoteUnknown.

Classification looks at exception types and HTTP status codes only.
"""

from __future__ import annotations
import socket
from typing import Optional

import httpx
import requests
from postgrest.exceptions import APIError

from .exceptions import (
    NetworkUnreachable,
    RemoteError,
    RemoteRejected,
    RemoteUnknown,
)

# Statuses that mean "try again later" rather than "you sent something wrong"
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

# PostgREST connection errors (database unreachable, pool timeout)
POSTGREST_CONNECTION_CODES = frozenset({"PGRST000", "PGRST001", "PGRST002", "PGRST003"})


def _classify_status(
    status_code: Optional[int],
    message: str,
    operation: Optional[str],
) -> RemoteError:
    if status_code is None:
        return RemoteUnknown(message, operation=operation)
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return NetworkUnreachable(message, operation=operation, status_code=status_code)
    if 400 <= status_code < 500:
        return RemoteRejected(message, operation=operation, status_code=status_code)
    return RemoteUnknown(message, operation=operation, status_code=status_code)


def _http_status(code: object) -> Optional[int]:
    """HTTP status carried in an APIError code; SQLSTATE codes like "23505" are not one."""
    if isinstance(code, bool):
        return None
    if isinstance(code, str) and len(code) == 3 and code.isdigit():
        code = int(code)
    if isinstance(code, int) and 100 <= code <= 599:
        return code
    return None


def _classify_api_error(exc: APIError, message: str, operation: Optional[str]) -> RemoteError:
    code = getattr(exc, "code", None)
    text = getattr(exc, "message", None) or message

    status = _http_status(code)
    if status is not None:
        return _classify_status(status, text, operation)

    details = {"pg_code": code} if code else {}
    # PostgREST could not reach its database (served as 503)
    if isinstance(code, str) and code in POSTGREST_CONNECTION_CODES:
        return NetworkUnreachable(text, operation=operation, status_code=503, details=details)

    # Constraint, RLS, bad column...
    return RemoteRejected(text, operation=operation, details=details)


def classify_error(exc: BaseException, operation: Optional[str] = None) -> RemoteError:
    """
    Convert any exception raised by a remote call into a RemoteError.

    Args:
        exc: The exception caught at the boundary
        operation: Name of the remote operation, kept in the error details

    Returns:
        NetworkUnreachable, RemoteRejected or RemoteUnknown
    """
    if isinstance(exc, RemoteError):
        return exc

    message = str(exc) or exc.__class__.__name__

    # postgrest-py raises APIError for every non-2xx answer, including gateway
    # pages whose code is the bare HTTP status
    if isinstance(exc, APIError):
        return _classify_api_error(exc, message, operation)

    # httpx (used by supabase-py)
    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(exc.response.status_code, message, operation)
    if isinstance(exc, httpx.TransportError):
        return NetworkUnreachable(message, operation=operation)

    # requests (used by the passage connector). RequestException subclasses
    # OSError, so it has to be handled before the builtin checks below.
    if isinstance(exc, requests.HTTPError):
        status = exc.response.status_code if exc.response is not None else None
        return _classify_status(status, message, operation)
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return NetworkUnreachable(message, operation=operation)
    if isinstance(exc, requests.RequestException):
        return RemoteUnknown(message, operation=operation)

    if isinstance(exc, (ConnectionError, TimeoutError, socket.timeout, socket.gaierror)):
        return NetworkUnreachable(message, operation=operation)

    return RemoteUnknown(message, operation=operation)


def is_network_error(exc: BaseException) -> bool:
    """True when the failure is a transient connectivity problem."""
    return isinstance(classify_error(exc), NetworkUnreachable)
