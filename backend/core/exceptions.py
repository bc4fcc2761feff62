"""
Error taxonomy for the retrieval engine.

Every error carries a short machine-readable `kind` so callers can tell
"the document had no usable content" apart from "the embedding provider is
down" without parsing messages.
"""

from typing import Optional


class RetrievalEngineError(Exception):
    """Base class for all engine errors."""

    kind = "engine_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ChunkingError(RetrievalEngineError):
    """Raised for invalid chunking parameters."""

    kind = "chunking_error"


class EmptyDocument(RetrievalEngineError):
    """The document produced no chunks worth indexing."""

    kind = "empty_document"


class DimensionMismatch(RetrievalEngineError):
    """Two vectors of unequal length met, usually model drift in a collection."""

    kind = "dimension_mismatch"


class ProviderError(RetrievalEngineError):
    """The embedding provider rejected or failed a call."""

    kind = "provider_error"

    def __init__(
        self,
        message: str = "",
        status_code: Optional[int] = None,
        retryable: bool = False,
        reason: str = "provider",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
        self.reason = reason  # auth, rate_limit, timeout, transport, provider

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reason"] = self.reason
        if self.status_code is not None:
            data["status_code"] = self.status_code
        return data


class InputTooLarge(RetrievalEngineError):
    """Nothing usable remains after truncating the input to the provider limit."""

    kind = "input_too_large"


class ScopeViolation(RetrievalEngineError):
    """A chunk crossed an owner/collection boundary. Never expected."""

    kind = "scope_violation"


class InvalidTransition(RetrievalEngineError):
    """Disallowed processing status change."""

    kind = "invalid_transition"


class FileNotFound(RetrievalEngineError):
    kind = "file_not_found"


class ProcessingCancelled(RetrievalEngineError):
    kind = "cancelled"
