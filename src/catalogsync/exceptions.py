"""
Exceptions raised by catalogsync.

Every error coming back from the marketplace API is mapped onto one of these
classes so callers can react to quota, auth and cursor problems without
inspecting raw HTTP responses.
"""

from typing import Any, Dict, Mapping, Optional


class CatalogSyncError(Exception):
    """Base class for all catalogsync errors"""
    pass


class ConfigError(CatalogSyncError):
    """Raised when configuration cannot be loaded or validated"""

    def __init__(self, message: str, path: Optional[str] = None, details: Optional[str] = None):
        self.path = path
        self.details = details
        super().__init__(message)


class CatalogAPIError(CatalogSyncError):
    """
    Non-successful response from the marketplace API.

    Attributes:
        status_code: HTTP status code (None for network level failures)
        message: Human-readable error message
        payload: Decoded response body, if any
    """

    status_code: Optional[int] = None

    def __init__(
        self,
        message: str = "Marketplace API error",
        status_code: Optional[int] = None,
        payload: Any = None,
    ):
        if status_code is not None:
            self.status_code = status_code
        self.message = message
        self.payload = payload
        super().__init__(message)


class QuotaExceededError(CatalogAPIError):
    """Raised on HTTP 429; carries the server's Retry-After hint in seconds"""

    status_code = 429

    def __init__(
        self,
        message: str = "Request quota exceeded",
        retry_after: Optional[float] = None,
        payload: Any = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, payload=payload)


class AuthExpiredError(CatalogAPIError):
    """Raised on HTTP 401, or when the bearer token could not be refreshed"""

    status_code = 401

    def __init__(self, message: str = "Bearer token expired or invalid", payload: Any = None):
        super().__init__(message, payload=payload)


class CursorExpiredError(CatalogAPIError):
    """Raised when the remote rejects a scroll cursor as expired or unknown"""

    def __init__(
        self,
        message: str = "Scroll cursor expired",
        status_code: Optional[int] = 400,
        payload: Any = None,
    ):
        super().__init__(message, status_code=status_code, payload=payload)


class TransientAPIError(CatalogAPIError):
    """5xx responses, timeouts and connection failures"""
    pass


_CURSOR_MARKERS = ("scroll", "cursor")


def _error_message(payload: Any, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("message", "error", "cause"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    elif isinstance(payload, str) and payload:
        return payload[:200]
    return default


def _parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    value = headers.get("Retry-After") or headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def raise_for_status(
    status: int,
    payload: Any = None,
    headers: Optional[Mapping[str, str]] = None,
) -> None:
    """
    Raise the exception matching an HTTP response status.

    Args:
        status: HTTP status code
        payload: Decoded body (dict, list or text)
        headers: Response headers

    Raises:
        CatalogAPIError: Or one of its subclasses, for any status >= 400
    """
    if status < 400:
        return

    headers = headers or {}
    message = _error_message(payload, f"HTTP {status}")

    if status == 429:
        raise QuotaExceededError(
            message,
            retry_after=_parse_retry_after(headers),
            payload=payload,
        )

    if status == 401:
        raise AuthExpiredError(message, payload=payload)

    if status in (400, 404) and any(marker in message.lower() for marker in _CURSOR_MARKERS):
        raise CursorExpiredError(message, status_code=status, payload=payload)

    if status >= 500:
        raise TransientAPIError(message, status_code=status, payload=payload)

    raise CatalogAPIError(message, status_code=status, payload=payload)


def error_details(error: Exception) -> Dict[str, Any]:
    """Flatten an exception into log/JSON friendly fields"""
    details: Dict[str, Any] = {
        "error_type": type(error).__name__,
        "error": str(error),
    }
    status_code = getattr(error, "status_code", None)
    if status_code is not None:
        details["status_code"] = status_code
    return details
