"""Exception types shared by the sources and caches."""

from typing import Optional

__all__ = [
    "SpecBuilderError",
    "FetchError",
    "ResponseFormatError",
    "MissingBrandError",
    "FetchCancelled",
]


class SpecBuilderError(Exception):
    """Base class for Spec Builder errors."""
    pass


class FetchError(SpecBuilderError):
    """A request to a product or specification source failed.

    Covers network errors and non-2xx responses. ``status_code`` is None
    when no response was received.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ResponseFormatError(FetchError):
    """A response did not have the expected shape."""
    pass


class MissingBrandError(ResponseFormatError):
    """A Shopify product lacks a usable custom.brands metafield."""
    pass


class FetchCancelled(SpecBuilderError):
    """A response arrived for a request that was superseded by a reset."""
    pass
