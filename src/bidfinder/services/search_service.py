"""
Procurement Search Service

Answers a caller query from the local store, refreshing it from PNCP first
when the query's freshness window has lapsed.
"""
from __future__ import annotations

import argparse
from typing import List, Optional

from src.bidfinder.models.errors import StoreWriteError
from src.bidfinder.models.procurement import AggregateResult, QuerySpec, SearchResponse
from src.bidfinder.pipelines.aggregator import FanOutAggregator
from src.bidfinder.pipelines.finalize import ResultFinalizer
from src.bidfinder.services.freshness import FreshnessPolicy, make_cache_key, query_signature
from src.bidfinder.services.store_gateway import LocalStoreGateway
from src.bidfinder.utils.logger import get_logger

logger = get_logger(__name__)


class ProcurementSearchService:
    """Wires freshness, aggregation, persistence and pagination for one query."""

    def __init__(
        self,
        aggregator: FanOutAggregator | None = None,
        store: LocalStoreGateway | None = None,
        freshness: FreshnessPolicy | None = None,
        finalizer: ResultFinalizer | None = None,
    ):
        self.aggregator = aggregator or FanOutAggregator()
        self.store = store or LocalStoreGateway()
        self.freshness = freshness or FreshnessPolicy()
        self.finalizer = finalizer or ResultFinalizer()

    def search(self, query: QuerySpec) -> SearchResponse:
        """
        Run one query end to end.

        Upstream and write failures degrade the response (warning,
        partition_errors, total_is_estimate); only StoreReadError propagates.
        """
        cache_key = make_cache_key(query)
        warnings: List[str] = []
        response = SearchResponse(page=query.page)

        if self.freshness.needs_refresh(cache_key):
            aggregate = self.aggregator.aggregate(query.for_refresh())
            response.partition_errors = aggregate.partition_errors
            response.upstream_total = aggregate.total_count_approx
            response.refreshed = self._persist_refresh(query, cache_key, aggregate, warnings)
            if not aggregate.is_complete:
                response.total_is_estimate = True

        page = self.finalizer.finalize(self.store.read(query), query)

        response.items = [record.to_view() for record in page.items]
        response.total = page.total
        response.total_pages = page.total_pages
        response.warning = "; ".join(warnings) or None

        logger.info(
            "search_complete",
            cache_key=cache_key,
            page=query.page,
            total=response.total,
            refreshed=response.refreshed,
            total_is_estimate=response.total_is_estimate,
            upstream_total=response.upstream_total,
            partition_errors=len(response.partition_errors),
        )
        return response

    def _persist_refresh(
        self,
        query: QuerySpec,
        cache_key: str,
        aggregate: AggregateResult,
        warnings: List[str],
    ) -> bool:
        """Upsert fetched records and record freshness. Returns True if freshness was recorded."""
        if aggregate.partition_errors:
            failed = ", ".join(sorted(e.partition_key for e in aggregate.partition_errors))
            warnings.append(f"partitions unavailable: {failed}")
        if aggregate.incomplete_partitions:
            truncated = ", ".join(sorted(aggregate.incomplete_partitions))
            warnings.append(f"partial results for partitions: {truncated}")

        if aggregate.records:
            try:
                upsert = self.store.upsert(aggregate.records)
            except StoreWriteError as e:
                logger.error("refresh_upsert_failed", cache_key=cache_key, error=str(e))
                warnings.append("fetched records could not be stored")
            else:
                if upsert.failed:
                    warnings.append(f"{upsert.failed} fetched records could not be stored")

        if aggregate.partitions_succeeded == 0:
            logger.warning("refresh_without_successful_partition", cache_key=cache_key)
            warnings.append("upstream unavailable; serving stored records")
            return False

        try:
            self.freshness.record_refresh(
                cache_key,
                result_count=len(aggregate.records),
                signature=query_signature(query),
            )
        except StoreWriteError as e:
            logger.error("freshness_record_failed", cache_key=cache_key, error=str(e))
            warnings.append("refresh could not be recorded")
        return True


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Search PNCP procurement opportunities")
    parser.add_argument("--modality", default="all", help="Comma-separated modality codes or 'all'")
    parser.add_argument("--uf", default=None, help="State (UF) filter")
    parser.add_argument("--city", default=None, help="IBGE municipality code; overrides --uf")
    parser.add_argument("--keyword", default=None, help="Keyword matched against title and organization")
    parser.add_argument("--page", type=int, default=1, help="Result page (1-based)")
    parser.add_argument("--create-tables", action="store_true", help="Create tables before searching")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    from src.bidfinder.db.session import close_connections, create_all_tables
    from src.bidfinder.utils.logger import setup_logging

    setup_logging()
    args = parse_args(argv)

    if args.create_tables:
        create_all_tables()

    query = QuerySpec(
        partition_keys=args.modality,
        state_code=args.uf,
        municipality_code=args.city,
        keyword=args.keyword,
        page=args.page,
    )
    try:
        response = ProcurementSearchService().search(query)
    finally:
        close_connections()

    print(response.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
