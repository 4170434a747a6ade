"""
Repository Pattern for Data Access

Queries and upserts for procurement records and query freshness rows.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

from sqlalchemy import func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from src.bidfinder.db.models import ProcurementOpportunity, QueryFreshness
from src.bidfinder.models.procurement import QuerySpec
from src.bidfinder.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def dialect_insert(session: Session, model: Type[T]):
    """
    Build an INSERT supporting ON CONFLICT for the session's dialect.

    Raises:
        NotImplementedError: dialect without ON CONFLICT support
    """
    dialect = session.get_bind().dialect.name
    try:
        return _INSERT_BY_DIALECT[dialect](model)
    except KeyError:
        raise NotImplementedError(f"upsert not supported for dialect '{dialect}'") from None


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so the keyword is matched literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def keyword_clause(dialect: str, column, keyword: str):
    """
    Case-insensitive substring predicate for one text column.

    SQLite compares through the ``casefold`` function registered by
    install_sqlite_functions(); PostgreSQL's ILIKE folds Unicode itself.
    """
    if dialect == "sqlite":
        pattern = f"%{escape_like(keyword.casefold())}%"
        return func.casefold(column).like(pattern, escape="\\")
    return column.ilike(f"%{escape_like(keyword)}%", escape="\\")


class BaseRepository:
    """
    Base repository with common read operations.
    """

    def __init__(self, model: Type[T]):
        self.model = model
        logger.debug("repository_initialized", model=model.__name__)

    def get_by_id(self, session: Session, id_value: Any) -> Optional[T]:
        """
        Get single record by primary key.

        Args:
            session: Database session
            id_value: Primary key value

        Returns:
            Model instance or None
        """
        return session.get(self.model, id_value)


class ProcurementRecordRepository(BaseRepository):
    """Repository for ProcurementOpportunity with filter reads and upserts."""

    UPDATABLE_COLUMNS = (
        "title",
        "organization",
        "modality_code",
        "modality_label",
        "status",
        "municipality",
        "municipality_code",
        "state_code",
        "publication_date",
        "proposal_open_date",
        "proposal_close_date",
        "expiration_date",
        "estimated_value",
        "official_link",
        "source",
        "mapping_version",
        "raw_payload",
    )

    def __init__(self):
        super().__init__(ProcurementOpportunity)

    def bulk_upsert(self, session: Session, rows: List[Dict[str, Any]]) -> int:
        """
        Insert or update records by external_id (last write wins).

        Rows must already be unique by external_id; PostgreSQL rejects a
        statement that touches the same conflict target twice.

        Args:
            session: Database session
            rows: Column dictionaries

        Returns:
            Number of rows submitted
        """
        if not rows:
            return 0

        stmt = dialect_insert(session, ProcurementOpportunity).values(rows)
        set_ = {column: stmt.excluded[column] for column in self.UPDATABLE_COLUMNS}
        set_["updated_at"] = func.now()
        stmt = stmt.on_conflict_do_update(index_elements=["external_id"], set_=set_)

        session.execute(stmt)
        session.flush()

        logger.info("procurement_records_bulk_upserted", count=len(rows))
        return len(rows)

    def find_matching(self, session: Session, query: QuerySpec) -> List[ProcurementOpportunity]:
        """
        Read every stored record matching the query filters.

        Geography: municipality equality, else state equality. Partition keys
        restrict modality_code. The keyword is a case-insensitive substring
        over title and organization.

        Args:
            session: Database session
            query: Caller query (page is ignored here)

        Returns:
            Matching records, newest publication first
        """
        model = ProcurementOpportunity
        stmt = select(model)

        geography = query.geography
        if "municipality_code" in geography:
            stmt = stmt.where(model.municipality_code == geography["municipality_code"])
        elif "state_code" in geography:
            stmt = stmt.where(model.state_code == geography["state_code"])

        if query.partition_keys:
            stmt = stmt.where(model.modality_code.in_(sorted(query.partition_keys)))

        if query.keyword:
            dialect = session.get_bind().dialect.name
            stmt = stmt.where(
                or_(
                    keyword_clause(dialect, model.title, query.keyword),
                    keyword_clause(dialect, model.organization, query.keyword),
                )
            )

        stmt = stmt.order_by(model.publication_date.desc().nulls_last(), model.external_id)
        rows = session.execute(stmt).scalars().all()

        logger.debug(
            "procurement_records_read",
            count=len(rows),
            geography=geography,
            partitions=sorted(query.partition_keys),
            keyword=query.keyword,
        )
        return list(rows)


class QueryFreshnessRepository(BaseRepository):
    """Repository for QueryFreshness bookkeeping rows."""

    def __init__(self):
        super().__init__(QueryFreshness)

    def get_by_key(self, session: Session, cache_key: str) -> Optional[QueryFreshness]:
        return self.get_by_id(session, cache_key)

    def record_refresh(
        self,
        session: Session,
        cache_key: str,
        refreshed_at: datetime,
        result_count: int,
        signature: Optional[str] = None,
    ) -> None:
        """
        Upsert the freshness row for a cache key.

        Args:
            session: Database session
            cache_key: Hashed query signature
            refreshed_at: Completion time of the refresh cycle
            result_count: Records fetched during the cycle
            signature: Normalized signature JSON
        """
        values = {
            "cache_key": cache_key,
            "signature": signature,
            "last_refreshed_at": refreshed_at,
            "last_result_count": result_count,
        }
        stmt = dialect_insert(session, QueryFreshness).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["cache_key"],
            set_={
                "signature": stmt.excluded.signature,
                "last_refreshed_at": stmt.excluded.last_refreshed_at,
                "last_result_count": stmt.excluded.last_result_count,
                "updated_at": func.now(),
            },
        )
        session.execute(stmt)
        session.flush()

        logger.info("query_freshness_recorded", cache_key=cache_key, result_count=result_count)
