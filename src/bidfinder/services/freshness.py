"""
Freshness Policy

Decides whether a query's geography/keyword combination must be refreshed
from PNCP before it is answered from the local store.
"""
import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from config.settings import settings
from src.bidfinder.db.repository import QueryFreshnessRepository
from src.bidfinder.db.session import get_db_session
from src.bidfinder.models.errors import StoreReadError, StoreWriteError
from src.bidfinder.models.procurement import QuerySpec
from src.bidfinder.utils.logger import get_logger

logger = get_logger(__name__)

CACHE_KEY_PREFIX = "procurement_query"


def query_signature(query: QuerySpec) -> str:
    """
    Normalized signature of a query's geography and keyword.

    Partition keys and page are left out: a refresh always covers every
    partition and pages are sliced locally.
    """
    geography = query.geography
    key_data = {
        "municipality_code": geography.get("municipality_code"),
        "state_code": geography.get("state_code"),
        "keyword": query.keyword.lower() if query.keyword else None,
    }
    return json.dumps(key_data, sort_keys=True)


def make_cache_key(query: QuerySpec, prefix: str = CACHE_KEY_PREFIX) -> str:
    """Deterministic cache key derived from query_signature()."""
    key_hash = hashlib.md5(query_signature(query).encode()).hexdigest()
    return f"{prefix}:{key_hash}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FreshnessPolicy:
    """
    Reads and writes freshness rows through QueryFreshnessRepository.

    A key with no row, or whose last refresh is older than the freshness
    window, needs a refresh.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        window_hours: Optional[float] = None,
        clock: Callable[[], datetime] = _utc_now,
        repository: Optional[QueryFreshnessRepository] = None,
    ):
        self.session_factory = session_factory
        hours = settings.freshness_window_hours if window_hours is None else window_hours
        self.window = timedelta(hours=hours)
        self.clock = clock
        self.repository = repository or QueryFreshnessRepository()

    def needs_refresh(self, cache_key: str) -> bool:
        """
        Check whether cache_key must be refreshed.

        Raises:
            StoreReadError: the freshness table could not be read
        """
        try:
            with get_db_session(self.session_factory) as session:
                row = self.repository.get_by_key(session, cache_key)
                last_refreshed_at = row.last_refreshed_at if row else None
        except SQLAlchemyError as e:
            raise StoreReadError(f"could not read freshness for {cache_key}: {e}") from e

        if last_refreshed_at is None:
            logger.info("freshness_missing", cache_key=cache_key)
            return True

        # SQLite hands back naive datetimes; they were written as UTC
        if last_refreshed_at.tzinfo is None:
            last_refreshed_at = last_refreshed_at.replace(tzinfo=timezone.utc)

        age = self.clock() - last_refreshed_at
        stale = age > self.window
        logger.info(
            "freshness_checked",
            cache_key=cache_key,
            age_seconds=int(age.total_seconds()),
            stale=stale,
        )
        return stale

    def record_refresh(self, cache_key: str, result_count: int, signature: Optional[str] = None) -> None:
        """
        Record a completed refresh cycle, including cycles that found nothing.

        Raises:
            StoreWriteError: the freshness row could not be written
        """
        try:
            with get_db_session(self.session_factory) as session:
                self.repository.record_refresh(
                    session,
                    cache_key=cache_key,
                    refreshed_at=self.clock(),
                    result_count=result_count,
                    signature=signature,
                )
        except SQLAlchemyError as e:
            raise StoreWriteError(f"could not record freshness for {cache_key}: {e}") from e
