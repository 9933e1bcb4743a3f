"""
Error Definitions

Defines the typed error taxonomy raised by frontends, backends, middleware and the router.
Every error carries a stable code, a retryability flag and provenance (which adapter raised it).
"""

from typing import Any, Optional


class AdapterError(Exception):
    """
    Adapter Base Exception

    Base class for all library errors. Retry middleware and the router only
    look at ``is_retryable``; they never inspect the concrete subclass.
    """

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        is_retryable: bool = False,
        provenance: Optional[dict[str, str]] = None,
        details: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        """
        Initialize exception

        Args:
            message: Error message
            code: Stable error code
            is_retryable: Whether repeating the same request may succeed
            provenance: Origin of the error, e.g. {"backend": "openai"}
            details: Extra error details (provider body, request id ...)
            status_code: Upstream HTTP status code, if any
            cause: Underlying exception
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.is_retryable = is_retryable
        self.provenance = provenance or {}
        self.details = details or {}
        self.status_code = status_code
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary format

        Returns:
            dict: Error information dictionary
        """
        result: dict[str, Any] = {
            "error": {
                "message": self.message,
                "type": type(self).__name__,
                "code": self.code,
                "retryable": self.is_retryable,
            }
        }
        if self.provenance:
            result["error"]["provenance"] = self.provenance
        if self.status_code is not None:
            result["error"]["status_code"] = self.status_code
        if self.details:
            result["error"]["details"] = self.details
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(AdapterError):
    """
    Validation Error

    Raised when a request is malformed or incomplete. Never retried.
    """

    def __init__(
        self,
        message: str = "Invalid request",
        provenance: Optional[dict[str, str]] = None,
        details: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            is_retryable=False,
            provenance=provenance,
            details=details,
            status_code=status_code,
        )


class AuthenticationError(AdapterError):
    """
    Authentication Error

    Raised when credentials are missing or rejected by the provider.
    """

    def __init__(
        self,
        message: str = "Authentication failed",
        provenance: Optional[dict[str, str]] = None,
        details: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(
            message=message,
            code="AUTHENTICATION_ERROR",
            is_retryable=False,
            provenance=provenance,
            details=details,
            status_code=status_code,
        )


class RateLimitError(AdapterError):
    """Provider backpressure (HTTP 429)."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        provenance: Optional[dict[str, str]] = None,
        details: Optional[dict[str, Any]] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(
            message=message,
            code="RATE_LIMIT_EXCEEDED",
            is_retryable=True,
            provenance=provenance,
            details=details,
            status_code=429,
        )
        self.retry_after = retry_after


class NetworkError(AdapterError):
    """Transport failure or timeout."""

    def __init__(
        self,
        message: str = "Network error",
        provenance: Optional[dict[str, str]] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(
            message=message,
            code="NETWORK_ERROR",
            is_retryable=True,
            provenance=provenance,
            details=details,
            cause=cause,
        )


class ProviderError(AdapterError):
    """
    Provider Error

    Raised for non-2xx provider responses. Retryable for 5xx (or unknown)
    statuses; 4xx statuses are permanent.
    """

    def __init__(
        self,
        message: str = "Provider error",
        provenance: Optional[dict[str, str]] = None,
        details: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = None,
        is_retryable: Optional[bool] = None,
    ):
        if is_retryable is None:
            is_retryable = status_code is None or status_code >= 500
        super().__init__(
            message=message,
            code="PROVIDER_ERROR",
            is_retryable=is_retryable,
            provenance=provenance,
            details=details,
            status_code=status_code,
        )


class StreamError(AdapterError):
    """Malformed framing in the middle of a stream. Fatal to that stream only."""

    def __init__(
        self,
        message: str = "Malformed stream",
        provenance: Optional[dict[str, str]] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            code="STREAM_ERROR",
            is_retryable=False,
            provenance=provenance,
            details=details,
        )


class RouterError(AdapterError):
    """
    Router Error

    Raised for registration mistakes and when no backend could serve a request.
    ``attempted_backends`` lists the backends tried, in order.
    """

    def __init__(
        self,
        message: str,
        code: str = "ROUTING_FAILED",
        attempted_backends: Optional[list[str]] = None,
        is_retryable: bool = False,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(
            message=message,
            code=code,
            is_retryable=is_retryable,
            provenance={"router": "router"},
            details={"attempted_backends": list(attempted_backends or [])},
            cause=cause,
        )
        self.attempted_backends = list(attempted_backends or [])


class MiddlewareError(AdapterError):
    """Unexpected failure inside a middleware."""

    def __init__(
        self,
        message: str,
        middleware: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(
            message=message,
            code="MIDDLEWARE_ERROR",
            is_retryable=False,
            provenance={"middleware": middleware},
            cause=cause,
        )


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def error_from_status(
    status_code: int,
    body: Any = None,
    provenance: Optional[dict[str, str]] = None,
    headers: Optional[dict[str, str]] = None,
) -> AdapterError:
    """
    Classify a non-2xx provider response into a typed error

    Args:
        status_code: HTTP status code
        body: Response body (parsed JSON or text), surfaced as error detail
        provenance: Origin of the error
        headers: Response headers (used for retry-after)

    Returns:
        AdapterError: The classified error (not raised)
    """
    message = _extract_error_message(body) or f"HTTP {status_code}"
    details = {"body": body} if body not in (None, "", b"") else {}

    if status_code in (401, 403):
        return AuthenticationError(
            message=message, provenance=provenance, details=details, status_code=status_code
        )
    if status_code == 429:
        retry_after = None
        if headers:
            lowered = {k.lower(): v for k, v in headers.items()}
            retry_after = _parse_retry_after(lowered.get("retry-after"))
        return RateLimitError(
            message=message, provenance=provenance, details=details, retry_after=retry_after
        )
    if status_code in (400, 404, 422):
        return ValidationError(
            message=message, provenance=provenance, details=details, status_code=status_code
        )
    return ProviderError(
        message=message, provenance=provenance, details=details, status_code=status_code
    )


def _extract_error_message(body: Any) -> Optional[str]:
    """Pull a human readable message out of the common provider error envelopes."""
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        if isinstance(body.get("message"), str):
            return body["message"]
        return None
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str) and body.strip():
        return body.strip()[:500]
    return None
