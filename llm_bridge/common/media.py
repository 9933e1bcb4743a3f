"""
Image payload helpers

Backends need base64 text plus a MIME type. Callers may hand over base64
text (optionally as a data URI) or raw bytes; both end up as the same pair.
"""

import base64
from typing import Any, Optional, Tuple

from llm_bridge.common.errors import ValidationError
from llm_bridge.ir.types import DEFAULT_IMAGE_MIME_TYPE, ImagePart


def parse_data_uri(value: str) -> Optional[Tuple[str, str]]:
    """
    Split a ``data:<mime>;base64,<data>`` URI

    Returns:
        Optional[tuple]: (mime_type, base64_data), or None if not a data URI
    """
    if not value.startswith("data:"):
        return None
    header, sep, data = value.partition(",")
    if not sep:
        return None
    mime_type = header[5:].split(";", 1)[0] or DEFAULT_IMAGE_MIME_TYPE
    return mime_type, data


def to_base64(data: Any) -> str:
    """
    Base64-encode a binary-like object

    Accepts bytes, bytearray, memoryview or any object exposing ``read()``.
    """
    if hasattr(data, "read"):
        data = data.read()
    if isinstance(data, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(data)).decode("ascii")
    raise ValidationError(f"Unsupported image data type: {type(data).__name__}")


def resolve_image_data(part: ImagePart) -> Tuple[str, str]:
    """
    Resolve an image part into (mime_type, base64_data)

    Args:
        part: Image part with inline data

    Returns:
        tuple: MIME type (explicit, from the data URI, or image/jpeg) and base64 text
    """
    data = part.data
    if data is None:
        raise ValidationError("Image part has no inline data")
    if isinstance(data, str):
        parsed = parse_data_uri(data)
        if parsed is not None:
            uri_mime, payload = parsed
            mime = part.mime_type if part.mime_type != DEFAULT_IMAGE_MIME_TYPE else uri_mime
            return mime, payload
        return part.mime_type or DEFAULT_IMAGE_MIME_TYPE, data
    return part.mime_type or DEFAULT_IMAGE_MIME_TYPE, to_base64(data)


def to_data_uri(part: ImagePart) -> str:
    mime_type, data = resolve_image_data(part)
    return f"data:{mime_type};base64,{data}"
