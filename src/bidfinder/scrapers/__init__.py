"""
Scrapers Package

Upstream access for PNCP: single-page fetching and per-partition pagination.
"""

from .pncp_fetcher import PncpFetcher, RequestThrottle
from .paginator import SegmentedPaginator

__all__ = [
    "PncpFetcher",
    "RequestThrottle",
    "SegmentedPaginator",
]
