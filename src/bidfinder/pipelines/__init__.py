"""
Pipelines Package

- Aggregation: bounded fan-out across modality partitions
- Finalization: dedup, keyword filter, sort and page slicing
"""
from src.bidfinder.pipelines.aggregator import FanOutAggregator
from src.bidfinder.pipelines.finalize import ResultFinalizer, keyword_matches

__all__ = ["FanOutAggregator", "ResultFinalizer", "keyword_matches"]
