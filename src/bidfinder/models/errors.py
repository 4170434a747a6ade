"""
Error Taxonomy

Exceptions raised by the fetch, mapping and persistence layers. Fetch errors
are absorbed at page or partition level; only StoreReadError is meant to
reach the caller of a search.
"""
from typing import Optional


class BidFinderError(Exception):
    """Base class for all pipeline errors."""


class FetchError(BidFinderError):
    """A single upstream request could not produce a page."""

    kind = "fetch_error"


class FetchTimeoutError(FetchError):
    """The request exceeded its timeout on every allowed attempt."""

    kind = "timeout"


class RateLimitedError(FetchError):
    """The upstream kept answering 429 after the backoff budget was spent."""

    kind = "rate_limited"


class UpstreamError(FetchError):
    """Non-success status (other than 204/429) returned by the upstream."""

    kind = "upstream_error"

    def __init__(self, status: Optional[int], body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"upstream returned {status}: {body[:200]}")


class UpstreamFormatError(UpstreamError):
    """The response body is not JSON or does not have the expected shape."""

    kind = "upstream_format"


class RecordMappingError(BidFinderError):
    """A raw upstream record cannot be mapped (no stable identifier)."""


class StoreError(BidFinderError):
    """Base class for persistence failures."""


class StoreWriteError(StoreError):
    """No upsert batch could be committed."""

    def __init__(self, message: str, failed: int = 0):
        self.failed = failed
        super().__init__(message)


class StoreReadError(StoreError):
    """The local store could not be read; the query has nothing to serve."""
