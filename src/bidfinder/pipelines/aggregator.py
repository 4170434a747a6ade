"""
Fan-Out Aggregator

Runs the segmented paginator for every partition of a query on a bounded
thread pool and merges whatever comes back before the deadline.
"""
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Iterable, List, Optional

from config.settings import settings
from src.bidfinder.models.errors import FetchError
from src.bidfinder.models.procurement import (
    AggregateResult,
    PartitionError,
    PartitionResult,
    QuerySpec,
)
from src.bidfinder.scrapers.paginator import SegmentedPaginator
from src.bidfinder.utils.logger import get_logger

logger = get_logger(__name__)


class FanOutAggregator:
    """
    Aggregates upstream records across partition keys.

    A failing partition is recorded in ``partition_errors``; the records of
    every other partition are still returned.
    """

    def __init__(
        self,
        paginator: Optional[SegmentedPaginator] = None,
        partition_keys: Optional[Iterable[str]] = None,
        max_workers: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
    ):
        """
        Initialize the aggregator.

        Args:
            paginator: Paginator shared by all worker threads
            partition_keys: Full partition set used when a query names none
            max_workers: Partitions fetched concurrently
            deadline_seconds: Overall time budget for one aggregation
        """
        self.paginator = paginator or SegmentedPaginator()
        self.partition_keys = list(partition_keys or settings.pncp_modality_codes)
        self.max_workers = max_workers or settings.max_concurrent_partitions
        self.deadline_seconds = deadline_seconds or settings.query_deadline_seconds
        logger.info(
            "fan_out_aggregator_initialized",
            partitions=len(self.partition_keys),
            max_workers=self.max_workers,
            deadline_seconds=self.deadline_seconds,
        )

    def resolve_partitions(self, query: QuerySpec) -> List[str]:
        """Explicit keys from the query, or the full known set."""
        if query.partition_keys:
            return sorted(query.partition_keys, key=lambda k: (len(k), k))
        return list(self.partition_keys)

    def aggregate(self, query: QuerySpec) -> AggregateResult:
        """
        Fetch every effective partition with bounded concurrency.

        Args:
            query: Query whose partitions, geography and keyword are fetched

        Returns:
            AggregateResult with records, summed totals and per-partition errors.
            A partition cut off by the deadline contributes the pages it had
            already fetched and is listed as incomplete.
        """
        keys = self.resolve_partitions(query)
        result = AggregateResult()
        if not keys:
            logger.warning("aggregation_without_partitions")
            return result

        logger.info("aggregation_started", partitions=keys, geography=query.geography, keyword=query.keyword)

        cancel_event = threading.Event()
        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(keys)),
            thread_name_prefix="pncp-partition",
        )
        partials = {key: PartitionResult(partition_key=key) for key in keys}
        futures = {
            executor.submit(self.paginator.paginate, key, query, cancel_event, partials[key]): key
            for key in keys
        }

        done, not_done = wait(futures, timeout=self.deadline_seconds)
        if not_done:
            cancel_event.set()
            logger.warning(
                "aggregation_deadline_exceeded",
                deadline_seconds=self.deadline_seconds,
                pending=sorted(futures[f] for f in not_done),
            )
        # In-flight partitions are abandoned; their threads stop at the next page boundary
        executor.shutdown(wait=False, cancel_futures=True)

        for future, key in futures.items():
            if future in not_done:
                partial = partials[key]
                collected = list(partial.records)
                result.partition_errors.append(
                    PartitionError(
                        partition_key=key,
                        kind="deadline_exceeded",
                        message=f"partition still running after {self.deadline_seconds}s",
                    )
                )
                if collected:
                    result.records.extend(collected)
                    result.total_count_approx += partial.total_count
                    result.incomplete_partitions.append(key)
                    logger.info("partition_partial_kept", partition_key=key, records=len(collected))
                continue

            try:
                partition = future.result()
            except FetchError as e:
                logger.warning("partition_failed", partition_key=key, error=str(e), kind=e.kind)
                result.partition_errors.append(
                    PartitionError(partition_key=key, kind=e.kind, message=str(e))
                )
                continue
            except Exception as e:
                logger.exception("partition_crashed", partition_key=key, error_type=type(e).__name__)
                result.partition_errors.append(
                    PartitionError(partition_key=key, kind="unexpected", message=str(e))
                )
                continue

            result.partitions_succeeded += 1
            result.records.extend(partition.records)
            result.total_count_approx += partition.total_count
            if partition.capped or partition.page_errors:
                result.incomplete_partitions.append(key)

        logger.info(
            "aggregation_complete",
            records=len(result.records),
            total_count_approx=result.total_count_approx,
            partitions_succeeded=result.partitions_succeeded,
            partitions_failed=len(result.partition_errors),
            partitions_incomplete=len(result.incomplete_partitions),
        )
        return result
