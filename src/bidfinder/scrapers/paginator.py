"""
Segmented Paginator

Walks every result page of one partition (modality code) through the fetcher.
"""
import threading
from typing import Iterator, Optional, Tuple

from config.settings import settings
from src.bidfinder.models.errors import FetchError
from src.bidfinder.models.procurement import (
    ParsedPage,
    PartitionResult,
    QuerySpec,
    RawUpstreamRecord,
)
from src.bidfinder.scrapers.pncp_fetcher import PncpFetcher
from src.bidfinder.utils.logger import get_logger

logger = get_logger(__name__)


class SegmentedPaginator:
    """
    Collects all pages for a single partition key.

    Page 1 decides how many pages exist; a failure there fails the partition.
    Later pages are fetched sequentially and a failing page is skipped.
    """

    def __init__(self, fetcher: Optional[PncpFetcher] = None, max_pages: Optional[int] = None):
        self.fetcher = fetcher or PncpFetcher()
        self.max_pages = max_pages or settings.pncp_max_pages_per_partition

    def iter_pages(
        self,
        partition_key: str,
        query: QuerySpec,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[Tuple[int, Optional[ParsedPage], Optional[FetchError]]]:
        """
        Lazily yield (page_number, page, error) for one partition.

        Each call starts a fresh walk from page 1. Exactly one of page/error is
        set for pages after the first. Errors on page 1 are raised.
        """
        first = self.fetcher.fetch(self.fetcher.build_params(partition_key, query, 1))
        yield 1, first, None

        # None and 0 both mean there is nothing beyond page 1
        last_page = min(first.total_pages or 0, self.max_pages)

        for page in range(2, last_page + 1):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("partition_walk_cancelled", partition_key=partition_key, next_page=page)
                return
            try:
                parsed = self.fetcher.fetch(self.fetcher.build_params(partition_key, query, page))
            except FetchError as e:
                logger.warning(
                    "partition_page_failed",
                    partition_key=partition_key,
                    page=page,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                yield page, None, e
                continue
            yield page, parsed, None

    def paginate(
        self,
        partition_key: str,
        query: QuerySpec,
        cancel_event: Optional[threading.Event] = None,
        result: Optional[PartitionResult] = None,
    ) -> PartitionResult:
        """
        Materialize every page of a partition.

        Args:
            partition_key: Modality code
            query: Query providing geography and keyword
            cancel_event: Set by the aggregator once the query deadline passes
            result: Collector filled page by page; the aggregator keeps a
                reference so pages fetched before the deadline survive it

        Returns:
            PartitionResult with the records and the partition's reported total

        Raises:
            FetchError: page 1 could not be fetched
        """
        if result is None:
            result = PartitionResult(partition_key=partition_key)

        for page_number, page, error in self.iter_pages(partition_key, query, cancel_event):
            if error is not None:
                result.page_errors.append(f"page {page_number}: {error}")
                continue

            if page_number == 1:
                result.total_count = page.total_records
                result.capped = (page.total_pages or 0) > self.max_pages
                if result.capped:
                    logger.warning(
                        "partition_page_cap_reached",
                        partition_key=partition_key,
                        reported_pages=page.total_pages,
                        max_pages=self.max_pages,
                    )

            result.pages_fetched += 1
            # extended once per page; the aggregator may read this list mid-walk
            result.records.extend(
                [RawUpstreamRecord(partition_key=partition_key, payload=record) for record in page.records]
            )

        logger.info(
            "partition_fetched",
            partition_key=partition_key,
            records=len(result.records),
            total_count=result.total_count,
            pages_fetched=result.pages_fetched,
            page_errors=len(result.page_errors),
        )
        return result
