"""
Error taxonomy shared by the retrieval pipeline clients and services.
"""

from typing import Optional


class RetrievalError(Exception):
    """Base class for all retrieval pipeline errors."""
    pass


class InputError(RetrievalError, ValueError):
    """Rejected input (empty text, invalid config, missing tenant scope)."""
    pass


class BackendUnavailable(RetrievalError):
    """A managed backend could not be reached after retries."""
    pass


class ModelUnavailable(BackendUnavailable):
    """Embedding or language model backend is unreachable."""
    pass


class VectorIndexUnavailable(BackendUnavailable):
    """Vector index or record store is unreachable."""
    pass


class InvalidResponse(RetrievalError):
    """Backend answered with a body that violates its contract."""
    pass


class DimensionMismatch(InvalidResponse):
    """Embedding length differs from the configured dimensionality."""

    def __init__(self, expected: int, actual: int, position: Optional[int] = None):
        self.expected = expected
        self.actual = actual
        self.position = position
        where = f' at position {position}' if position is not None else ''
        super().__init__(f'Expected {expected} dimensions, got {actual}{where}')


class PartialBatchFailure(RetrievalError):
    """A batched write stopped part way through.

    Attributes:
        processed: Records committed before the first failure
        failed: Records that failed in the failing sub-batch
        next_offset: Offset to resume from
    """

    def __init__(self, message: str, processed: int, failed: int, next_offset: int):
        self.processed = processed
        self.failed = failed
        self.next_offset = next_offset
        super().__init__(message)


class ActivationError(RetrievalError):
    """An activation pass could not gather any entries."""
    pass
