"""
Data Sanitization Module

Masks credentials in headers, URLs and payloads so that debug logs never
contain plain text API keys.
"""

import re
from typing import Any

# Header / payload keys treated as secrets (lowercase)
SENSITIVE_KEYS = {"authorization", "x-api-key", "api-key", "api_key", "apikey", "x-goog-api-key"}

_KEY_QUERY_PATTERN = re.compile(r"([?&]key=)([^&]+)")


def sanitize_authorization(value: str) -> str:
    """
    Sanitize a credential value

    Keeps a prefix and some characters for identification.

    Examples:
        >>> sanitize_authorization("Bearer sk-1234567890abcdef")
        'Bearer sk-1***...***ef'
        >>> sanitize_authorization("short")
        '***'
    """
    if not value:
        return value

    prefix = ""
    token = value
    if value.lower().startswith("bearer "):
        prefix = "Bearer "
        token = value[7:]

    if len(token) <= 8:
        return f"{prefix}***"

    # Keep first 4 and last 2 characters, mask middle
    return f"{prefix}{token[:4]}***...***{token[-2:]}"


def sanitize_headers(headers: dict[str, Any]) -> dict[str, Any]:
    """
    Sanitize request headers

    Returns a new dictionary; the original headers are not modified.
    """
    if not headers:
        return {}

    sanitized = {}
    for key, value in headers.items():
        if key.lower() in SENSITIVE_KEYS and isinstance(value, str):
            sanitized[key] = sanitize_authorization(value)
        else:
            sanitized[key] = value
    return sanitized


def sanitize_url(url: str) -> str:
    """Mask a ``key=`` query parameter (Gemini style authentication)."""
    return _KEY_QUERY_PATTERN.sub(lambda m: m.group(1) + sanitize_authorization(m.group(2)), url)


def sanitize_payload(payload: Any) -> Any:
    """
    Recursively sanitize a JSON-like payload

    Args:
        payload: dict / list / scalar

    Returns:
        Any: Copy of the payload with sensitive keys masked
    """
    if isinstance(payload, dict):
        result = {}
        for key, value in payload.items():
            if isinstance(key, str) and key.lower() in SENSITIVE_KEYS and isinstance(value, str):
                result[key] = sanitize_authorization(value)
            else:
                result[key] = sanitize_payload(value)
        return result
    if isinstance(payload, (list, tuple)):
        return [sanitize_payload(item) for item in payload]
    return payload
