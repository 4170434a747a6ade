"""
Tests for ProcurementSearchService wiring freshness, aggregation and the store
"""
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest

from src.bidfinder.models.errors import StoreReadError, StoreWriteError
from src.bidfinder.models.procurement import (
    AggregateResult,
    PartitionError,
    QuerySpec,
    ResultPage,
    UpsertResult,
)
from src.bidfinder.pipelines.aggregator import FanOutAggregator
from src.bidfinder.pipelines.finalize import ResultFinalizer
from src.bidfinder.services.freshness import FreshnessPolicy
from src.bidfinder.services.search_service import ProcurementSearchService, parse_args
from src.bidfinder.services.store_gateway import LocalStoreGateway

from tests.factories import build_raw


def aggregate_of(records, errors=(), incomplete=(), succeeded=None):
    return AggregateResult(
        records=list(records),
        total_count_approx=len(records),
        partition_errors=list(errors),
        incomplete_partitions=list(incomplete),
        partitions_succeeded=1 if succeeded is None else succeeded,
    )


@pytest.fixture
def aggregator():
    return MagicMock(spec=FanOutAggregator)


@pytest.fixture
def service(session_factory, aggregator):
    """Service over a real SQLite store with a mocked upstream."""
    return ProcurementSearchService(
        aggregator=aggregator,
        store=LocalStoreGateway(session_factory=session_factory, today=lambda: date(2024, 1, 1)),
        freshness=FreshnessPolicy(
            session_factory=session_factory,
            window_hours=6,
            clock=lambda: datetime(2024, 1, 1, 12, tzinfo=timezone.utc),
        ),
        finalizer=ResultFinalizer(page_size=10),
    )


class TestSearch:
    """End-to-end behaviour of search()"""

    def test_stale_query_refreshes_then_serves_from_store(self, service, aggregator):
        """Test a stale query fetches upstream and pages from the store"""
        aggregator.aggregate.return_value = aggregate_of([
            build_raw("6", control_number="A", publication="2024-01-05"),
            build_raw("8", control_number="B", publication="2024-01-10"),
        ])

        response = service.search(QuerySpec(state_code="SP"))

        assert response.refreshed is True
        assert response.total == 2
        assert response.total_pages == 1
        assert [item["external_id"] for item in response.items] == ["B", "A"]
        assert response.total_is_estimate is False
        assert response.warning is None

    def test_fresh_query_skips_upstream(self, service, aggregator):
        """Test a query inside the freshness window is served locally"""
        aggregator.aggregate.return_value = aggregate_of([build_raw("6", control_number="A")])

        service.search(QuerySpec(state_code="SP"))
        second = service.search(QuerySpec(state_code="SP", page=1))

        assert aggregator.aggregate.call_count == 1
        assert second.refreshed is False
        assert second.total == 1

    def test_refresh_fetches_every_partition_and_filters_locally(self, service, aggregator):
        """Test the refresh spans all partitions and the read filters them"""
        aggregator.aggregate.return_value = aggregate_of([
            build_raw("6", control_number="A"),
            build_raw("8", control_number="B"),
        ])

        response = service.search(QuerySpec(state_code="SP", partition_keys="8", page=1))

        refresh_query = aggregator.aggregate.call_args.args[0]
        assert refresh_query.partition_keys == frozenset()
        assert [item["external_id"] for item in response.items] == ["B"]

    def test_partial_failure_reported(self, service, aggregator):
        """Test a failed partition is reported with a warning"""
        aggregator.aggregate.return_value = aggregate_of(
            [build_raw("6", control_number="A")],
            errors=[PartitionError(partition_key="8", kind="rate_limited", message="HTTP 429")],
        )

        response = service.search(QuerySpec(state_code="SP"))

        assert response.refreshed is True
        assert response.total_is_estimate is True
        assert [e.partition_key for e in response.partition_errors] == ["8"]
        assert "partitions unavailable: 8" in response.warning
        assert response.total == 1

    def test_incomplete_partition_marks_estimate(self, service, aggregator):
        """Test an incomplete partition marks the total as an estimate"""
        aggregator.aggregate.return_value = aggregate_of(
            [build_raw("6", control_number="A")], incomplete=["6"]
        )

        response = service.search(QuerySpec())

        assert response.total_is_estimate is True
        assert "partial results for partitions: 6" in response.warning

    def test_total_upstream_failure_serves_stored_and_retries_next_time(self, service, aggregator):
        """Test a fully failed refresh is not recorded as fresh"""
        aggregator.aggregate.return_value = aggregate_of(
            [],
            errors=[PartitionError(partition_key="6", kind="timeout", message="slow")],
            succeeded=0,
        )

        first = service.search(QuerySpec(state_code="SP"))
        service.search(QuerySpec(state_code="SP"))

        assert first.refreshed is False
        assert first.items == []
        assert first.total_pages == 1
        assert "upstream unavailable" in first.warning
        assert aggregator.aggregate.call_count == 2

    def test_upstream_total_exposed_on_refresh(self, service, aggregator):
        """Test the upstream total is returned after a refresh and unset when fresh"""
        aggregate = aggregate_of([build_raw("6", control_number="A")])
        aggregate.total_count_approx = 250
        aggregator.aggregate.return_value = aggregate

        first = service.search(QuerySpec(state_code="SP"))
        second = service.search(QuerySpec(state_code="SP"))

        assert first.upstream_total == 250
        assert first.total == 1
        assert second.refreshed is False
        assert second.upstream_total is None

    def test_empty_refresh_is_recorded(self, service, aggregator):
        """Test an empty but successful refresh counts as fresh"""
        aggregator.aggregate.return_value = aggregate_of([])

        first = service.search(QuerySpec(state_code="AC"))
        service.search(QuerySpec(state_code="AC"))

        assert first.refreshed is True
        assert first.total == 0
        assert aggregator.aggregate.call_count == 1


class TestSearchWithMocks:
    """Failure paths driven through mocked collaborators"""

    @pytest.fixture
    def collaborators(self):
        aggregator = MagicMock(spec=FanOutAggregator)
        store = MagicMock(spec=LocalStoreGateway)
        freshness = MagicMock(spec=FreshnessPolicy)
        finalizer = MagicMock(spec=ResultFinalizer)
        finalizer.finalize.return_value = ResultPage()
        return aggregator, store, freshness, finalizer

    def test_store_read_failure_propagates(self, collaborators):
        """Test StoreReadError reaches the caller"""
        aggregator, store, freshness, finalizer = collaborators
        freshness.needs_refresh.return_value = False
        store.read.side_effect = StoreReadError("database unavailable")
        service = ProcurementSearchService(aggregator, store, freshness, finalizer)

        with pytest.raises(StoreReadError):
            service.search(QuerySpec())

    def test_write_failure_degrades_to_warning(self, collaborators):
        """Test a failed upsert becomes a warning"""
        aggregator, store, freshness, finalizer = collaborators
        freshness.needs_refresh.return_value = True
        aggregator.aggregate.return_value = aggregate_of([build_raw("6", control_number="A")])
        store.upsert.side_effect = StoreWriteError("no batch committed", failed=1)
        service = ProcurementSearchService(aggregator, store, freshness, finalizer)

        response = service.search(QuerySpec())

        assert "could not be stored" in response.warning
        freshness.record_refresh.assert_called_once()

    def test_partial_write_failure_warns(self, collaborators):
        """Test the warning counts records that were not stored"""
        aggregator, store, freshness, finalizer = collaborators
        freshness.needs_refresh.return_value = True
        aggregator.aggregate.return_value = aggregate_of([build_raw("6", control_number="A")])
        store.upsert.return_value = UpsertResult(written=1, failed=3)
        service = ProcurementSearchService(aggregator, store, freshness, finalizer)

        response = service.search(QuerySpec())

        assert "3 fetched records could not be stored" in response.warning

    def test_freshness_write_failure_warns(self, collaborators):
        """Test a failed freshness write becomes a warning"""
        aggregator, store, freshness, finalizer = collaborators
        freshness.needs_refresh.return_value = True
        aggregator.aggregate.return_value = aggregate_of([])
        freshness.record_refresh.side_effect = StoreWriteError("read-only")
        service = ProcurementSearchService(aggregator, store, freshness, finalizer)

        response = service.search(QuerySpec())

        assert response.warning == "refresh could not be recorded"


class TestParseArgs:
    """Tests for command line parsing"""

    def test_defaults(self):
        """Test defaults when no flag is given"""
        args = parse_args([])

        assert args.modality == "all"
        assert args.page == 1
        assert args.uf is None

    def test_filters(self):
        """Test filter flags feed a QuerySpec"""
        args = parse_args(["--modality", "6,8", "--uf", "sp", "--keyword", "notebook", "--page", "2"])

        query = QuerySpec(partition_keys=args.modality, state_code=args.uf, keyword=args.keyword, page=args.page)
        assert query.partition_keys == frozenset({"6", "8"})
        assert query.state_code == "SP"
        assert query.page == 2
