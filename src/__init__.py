"""
BidFinder - Core Package

Aggregation pipeline for PNCP procurement opportunities: rate-limited
fetching across modality partitions, a durable local store and
freshness-aware query answering.
"""

__version__ = "0.1.0"
