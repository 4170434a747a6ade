"""
Unit tests for SegmentedPaginator
"""
import threading
from unittest.mock import MagicMock

import pytest

from src.bidfinder.models.errors import RateLimitedError, UpstreamError
from src.bidfinder.models.procurement import ParsedPage, PartitionResult, QuerySpec
from src.bidfinder.scrapers.paginator import SegmentedPaginator
from src.bidfinder.scrapers.pncp_fetcher import PncpFetcher


def page_of(page_number, total_pages, total_records=0, size=2):
    records = [{"numeroControlePNCP": f"P{page_number}-{i}"} for i in range(size)]
    return ParsedPage(records=records, total_records=total_records, total_pages=total_pages)


def make_fetcher(pages):
    """Fetcher whose fetch() answers from a {page_number: ParsedPage | Exception} map."""
    fetcher = MagicMock(spec=PncpFetcher)
    fetcher.build_params.side_effect = lambda key, query, page: {"pagina": page, "modalidade": key}

    def fetch(params):
        outcome = pages[params["pagina"]]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    fetcher.fetch.side_effect = fetch
    return fetcher


@pytest.fixture
def query():
    return QuerySpec(state_code="SP")


class TestPaginate:
    """Tests for SegmentedPaginator.paginate()"""

    def test_single_page(self, query):
        """Test a one-page partition issues a single request"""
        fetcher = make_fetcher({1: page_of(1, total_pages=1, total_records=2)})
        result = SegmentedPaginator(fetcher=fetcher, max_pages=10).paginate("6", query)

        assert fetcher.fetch.call_count == 1
        assert result.total_count == 2
        assert result.pages_fetched == 1
        assert not result.capped

    @pytest.mark.parametrize("total_pages", [None, 0])
    def test_missing_or_zero_total_pages_stops_after_first(self, query, total_pages):
        """Test unknown page counts stop after the first page"""
        fetcher = make_fetcher({1: page_of(1, total_pages=total_pages)})
        result = SegmentedPaginator(fetcher=fetcher, max_pages=10).paginate("6", query)

        assert fetcher.fetch.call_count == 1
        assert len(result.records) == 2

    def test_walks_all_reported_pages(self, query):
        """Test every reported page is fetched in order"""
        pages = {n: page_of(n, total_pages=3, total_records=6) for n in (1, 2, 3)}
        fetcher = make_fetcher(pages)

        result = SegmentedPaginator(fetcher=fetcher, max_pages=10).paginate("8", query)

        assert fetcher.fetch.call_count == 3
        assert len(result.records) == 6
        assert {r.partition_key for r in result.records} == {"8"}
        assert result.records[0].payload == {"numeroControlePNCP": "P1-0"}

    def test_page_cap_bounds_requests(self, query):
        """Test the page cap limits requests and marks the partition capped"""
        pages = {n: page_of(n, total_pages=50, total_records=2500) for n in range(1, 51)}
        fetcher = make_fetcher(pages)

        result = SegmentedPaginator(fetcher=fetcher, max_pages=3).paginate("6", query)

        assert fetcher.fetch.call_count == 3
        assert result.capped
        assert result.total_count == 2500

    def test_later_page_failure_is_skipped(self, query):
        """Test a failed later page is recorded and skipped"""
        pages = {
            1: page_of(1, total_pages=3),
            2: UpstreamError(502, "bad gateway"),
            3: page_of(3, total_pages=3),
        }
        result = SegmentedPaginator(fetcher=make_fetcher(pages), max_pages=10).paginate("6", query)

        assert [r.payload["numeroControlePNCP"] for r in result.records] == [
            "P1-0", "P1-1", "P3-0", "P3-1",
        ]
        assert result.pages_fetched == 2
        assert len(result.page_errors) == 1
        assert result.page_errors[0].startswith("page 2:")

    def test_first_page_failure_fails_partition(self, query):
        """Test a failed first page fails the whole partition"""
        fetcher = make_fetcher({1: RateLimitedError("throttled")})

        with pytest.raises(RateLimitedError):
            SegmentedPaginator(fetcher=fetcher, max_pages=10).paginate("6", query)

    def test_cancel_stops_at_page_boundary(self, query):
        """Test cancellation is honoured between pages"""
        cancel = threading.Event()
        cancel.set()
        pages = {n: page_of(n, total_pages=5) for n in range(1, 6)}
        fetcher = make_fetcher(pages)

        result = SegmentedPaginator(fetcher=fetcher, max_pages=10).paginate("6", query, cancel)

        assert fetcher.fetch.call_count == 1
        assert result.pages_fetched == 1

    def test_fills_caller_result_page_by_page(self, query):
        """Test records accumulate on a result object supplied by the caller"""
        pages = {n: page_of(n, total_pages=2, total_records=4) for n in (1, 2)}
        collected = PartitionResult(partition_key="6")

        result = SegmentedPaginator(fetcher=make_fetcher(pages), max_pages=10).paginate(
            "6", query, result=collected
        )

        assert result is collected
        assert len(collected.records) == 4
        assert collected.total_count == 4
        assert collected.pages_fetched == 2


class TestIterPages:
    """Tests for the lazy page sequence"""

    def test_each_walk_restarts_from_first_page(self, query):
        """Test a new iteration starts again at page one"""
        pages = {n: page_of(n, total_pages=2) for n in (1, 2)}
        paginator = SegmentedPaginator(fetcher=make_fetcher(pages), max_pages=10)

        first = [n for n, _, _ in paginator.iter_pages("6", query)]
        second = [n for n, _, _ in paginator.iter_pages("6", query)]

        assert first == second == [1, 2]

    def test_nothing_fetched_until_iterated(self, query):
        """Test pages are requested lazily"""
        fetcher = make_fetcher({1: page_of(1, total_pages=1)})
        SegmentedPaginator(fetcher=fetcher, max_pages=10).iter_pages("6", query)

        fetcher.fetch.assert_not_called()
