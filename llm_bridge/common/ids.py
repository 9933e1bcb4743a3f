"""
Identifier helpers

Request ids are random; response envelope ids are a stable prefix plus a
monotonically increasing suffix, so rendered responses are reproducible.
"""

import itertools
import uuid


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"


class ResponseIdGenerator:
    """
    Deterministic response id generator

    Example:
        >>> ids = ResponseIdGenerator("chatcmpl-")
        >>> ids.next_id()
        'chatcmpl-000001'
    """

    def __init__(self, prefix: str, start: int = 1, width: int = 6):
        self.prefix = prefix
        self.width = width
        self._counter = itertools.count(start)

    def next_id(self) -> str:
        # itertools.count is atomic under the GIL
        return f"{self.prefix}{next(self._counter):0{self.width}d}"
