"""
Typed errors for the KSeF gateway.

Every failure that crosses the client boundary is a GatewayError built by
``classify`` (HTTP and transport failures) or ``session_error`` (operation
attempted without a bearer token). Retry policy is decided here and
nowhere else.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Optional


class GatewayErrorKind(str, Enum):
    AUTHENTICATION = "AUTHENTICATION"
    VALIDATION = "VALIDATION"
    SESSION = "SESSION"
    DUPLICATE_INVOICE = "DUPLICATE_INVOICE"
    RATE_LIMIT = "RATE_LIMIT"
    SERVER = "SERVER"
    NETWORK = "NETWORK"


# status -> (kind, retryable); anything else is NETWORK
_STATUS_TABLE: dict[int, tuple[GatewayErrorKind, bool]] = {
    400: (GatewayErrorKind.VALIDATION, False),
    401: (GatewayErrorKind.AUTHENTICATION, False),
    403: (GatewayErrorKind.AUTHENTICATION, False),
    409: (GatewayErrorKind.DUPLICATE_INVOICE, False),
    429: (GatewayErrorKind.RATE_LIMIT, True),
    500: (GatewayErrorKind.SERVER, True),
    501: (GatewayErrorKind.SERVER, True),
    502: (GatewayErrorKind.SERVER, True),
    503: (GatewayErrorKind.SERVER, True),
    504: (GatewayErrorKind.SERVER, True),
}


class GatewayError(Exception):
    """A classified gateway failure."""

    def __init__(
        self,
        kind: GatewayErrorKind,
        http_status: int,
        message: str,
        retryable: bool,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.http_status = http_status
        self.message = message
        self.retryable = retryable
        self.details = details

    def __repr__(self) -> str:
        return (
            f"GatewayError(kind={self.kind.value}, http_status={self.http_status}, "
            f"retryable={self.retryable}, message={self.message!r})"
        )


class PackageError(Exception):
    """A downloaded package, manifest or invoice file could not be processed."""

    retryable = False

    def __init__(self, message: str, filename: Optional[str] = None):
        super().__init__(f"{filename}: {message}" if filename else message)
        self.message = message
        self.filename = filename


def _parse_body(response_body: Any) -> Optional[dict]:
    if response_body is None:
        return None
    if isinstance(response_body, dict):
        return response_body
    if isinstance(response_body, (bytes, bytearray)):
        try:
            response_body = bytes(response_body).decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(response_body, str) or not response_body.strip():
        return None
    try:
        parsed = json.loads(response_body)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def classify(
    http_status: int,
    response_body: Any = None,
    default_message: str = "KSeF request failed",
) -> GatewayError:
    """
    Map an HTTP status and error body to a GatewayError.

    Args:
        http_status: Response status, or 0 when no response was received
        response_body: Raw body (bytes/str) or an already-decoded dict
        default_message: Used when the body carries no message

    Returns:
        GatewayError with kind and retryable taken from the status table
    """
    kind, retryable = _STATUS_TABLE.get(
        http_status, (GatewayErrorKind.NETWORK, http_status >= 500)
    )

    details = _parse_body(response_body)
    message = None
    if details is not None:
        message = details.get("message") or details.get("error")
    if not message or not isinstance(message, str):
        message = f"{default_message} (HTTP {http_status})"

    return GatewayError(kind, http_status, message, retryable, details)


def session_error(message: str = "Session not initialized. Call init_session first.") -> GatewayError:
    """Error for an operation attempted without an active session."""
    return GatewayError(GatewayErrorKind.SESSION, 0, message, False)
