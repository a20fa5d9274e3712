from __future__ import annotations


class DocRagError(RuntimeError):
    pass


class SourceReadError(DocRagError):
    """A source could not be read or its text could not be extracted."""


class ProviderError(DocRagError):
    """An embedding or chat provider call failed (transport, quota, payload)."""


class RateLimited(ProviderError):
    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class InvalidInput(DocRagError):
    """The provider rejected the request itself; retrying will not help."""


class EmbeddingClientError(ProviderError):
    pass


class LLMClientError(ProviderError):
    pass


class IndexWriteError(DocRagError):
    """A vector store write was rolled back."""


class StoreCorruptionError(DocRagError):
    """Persisted index state violates an invariant; not recoverable at runtime."""


class EmbeddingDimensionMismatch(DocRagError):
    """A query vector does not match the dimension the index was built with."""
