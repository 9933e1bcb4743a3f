"""
Frontend Adapter Base Class

A frontend parses one provider-shaped input request into IR and renders
IR responses and chunks back into that provider's output shape.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

from llm_bridge.common.errors import AdapterError, StreamError, ValidationError
from llm_bridge.common.ids import ResponseIdGenerator
from llm_bridge.ir.types import ErrorChunk, IRChatRequest, IRChatResponse, IRStreamChunk


class FrontendAdapter(ABC):
    """
    Frontend Adapter Abstract Base Class

    Subclasses set ``name`` and ``id_prefix``. Response ids come from a
    per-instance counter, so the same adapter renders ``prefix000001``,
    ``prefix000002`` ... in call order.
    """

    name: str = "frontend"
    id_prefix: str = "resp_"

    def __init__(self, id_generator: Optional[ResponseIdGenerator] = None):
        self.ids = id_generator or ResponseIdGenerator(self.id_prefix)

    @property
    def provenance(self) -> dict[str, str]:
        return {"frontend": self.name}

    @abstractmethod
    def to_ir(self, request: Any) -> IRChatRequest:
        """
        Parse a provider-shaped request

        Raises:
            ValidationError: Missing model, no messages, or malformed shape
        """

    @abstractmethod
    def from_ir(self, response: IRChatResponse) -> Any:
        """Render an IR response; usage numbers are copied verbatim."""

    @abstractmethod
    def from_ir_stream(self, chunks: AsyncIterator[IRStreamChunk]) -> AsyncIterator[Any]:
        """
        Render an IR chunk stream

        An error chunk ends rendering by raising the error it carries.
        """

    def _require_mapping(self, request: Any) -> dict[str, Any]:
        if not isinstance(request, dict):
            raise ValidationError(
                f"{self.name} request must be a JSON object, got {type(request).__name__}",
                provenance=self.provenance,
            )
        return request

    def _validate(self, model: Any, messages: Any) -> None:
        if not model or not isinstance(model, str):
            raise ValidationError("Request is missing a model identifier", provenance=self.provenance)
        if not messages:
            raise ValidationError("Request must contain at least one message", provenance=self.provenance)
        if not isinstance(messages, (list, tuple)):
            raise ValidationError("Request messages must be a list", provenance=self.provenance)

    def _stream_failure(self, chunk: ErrorChunk) -> AdapterError:
        return chunk.error or StreamError("Stream failed", provenance=self.provenance)
