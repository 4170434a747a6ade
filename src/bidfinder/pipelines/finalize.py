"""
Merge, Filter and Paginate

Turns the store's matching record set into the page handed back to the caller.
"""
import math
from typing import Iterable, List, Optional

from config.settings import settings
from src.bidfinder.models.procurement import ProcurementRecord, QuerySpec, ResultPage
from src.bidfinder.utils.logger import get_logger

logger = get_logger(__name__)


def keyword_matches(record: ProcurementRecord, keyword: Optional[str]) -> bool:
    """Case-insensitive substring match over title and organization."""
    if not keyword:
        return True
    needle = keyword.casefold()
    return any(
        needle in value.casefold()
        for value in (record.title, record.organization)
        if value
    )


class ResultFinalizer:
    """
    Deduplicates, filters, sorts and slices records for one query.
    """

    def __init__(self, page_size: Optional[int] = None):
        self.page_size = page_size or settings.result_page_size

    def deduplicate(self, records: Iterable[ProcurementRecord]) -> List[ProcurementRecord]:
        """Drop repeated external_ids, keeping the first occurrence."""
        seen = set()
        unique = []
        for record in records:
            if record.external_id in seen:
                continue
            seen.add(record.external_id)
            unique.append(record)
        return unique

    def sort_by_publication_date(self, records: List[ProcurementRecord]) -> List[ProcurementRecord]:
        """Newest first; undated records after all dated ones, original order kept on ties."""
        dated = [r for r in records if r.publication_date is not None]
        undated = [r for r in records if r.publication_date is None]
        dated.sort(key=lambda r: r.publication_date, reverse=True)
        return dated + undated

    def finalize(self, records: Iterable[ProcurementRecord], query: QuerySpec) -> ResultPage:
        """
        Build the requested page.

        Args:
            records: Records read from the store
            query: Caller query (keyword and page are used here)

        Returns:
            ResultPage; total_pages is at least 1 even when nothing matched
        """
        unique = self.deduplicate(records)
        matching = [r for r in unique if keyword_matches(r, query.keyword)]
        ordered = self.sort_by_publication_date(matching)

        total = len(ordered)
        total_pages = max(1, math.ceil(total / self.page_size))
        start = (query.page - 1) * self.page_size
        items = ordered[start:start + self.page_size]

        logger.debug(
            "results_finalized",
            received=len(unique),
            matching=total,
            page=query.page,
            returned=len(items),
            total_pages=total_pages,
        )
        return ResultPage(items=items, total=total, total_pages=total_pages, page=query.page)
