"""Typed failures raised by the retrieval engine.

Every error carries a short ``kind`` so batch results and HTTP payloads can report the cause
without leaking exception classes. Errors that describe bad input subclass ``ValueError`` and
missing records subclass ``LookupError`` so generic callers can still catch them.
"""

from __future__ import annotations


class RetrievalError(Exception):
    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class DimensionMismatch(RetrievalError, ValueError):
    kind = "dimension_mismatch"

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Vector dimension {actual} does not match expected dimension {expected}")
        self.expected = expected
        self.actual = actual


class NotFound(RetrievalError, LookupError):
    kind = "not_found"


class ValidationError(RetrievalError, ValueError):
    kind = "validation_error"


class ProviderError(RetrievalError):
    kind = "provider_error"


class RateLimited(ProviderError):
    kind = "rate_limited"


class ProviderTimeout(ProviderError):
    kind = "timeout"


class ProviderNotImplemented(ProviderError, NotImplementedError):
    kind = "not_implemented"


class Busy(RetrievalError):
    kind = "busy"


__all__ = [
    "RetrievalError",
    "DimensionMismatch",
    "NotFound",
    "ValidationError",
    "ProviderError",
    "RateLimited",
    "ProviderTimeout",
    "ProviderNotImplemented",
    "Busy",
]
