"""
Local Store Gateway

The only way the pipeline reads or writes procurement records.
"""
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from config.settings import settings
from src.bidfinder.db.repository import ProcurementRecordRepository
from src.bidfinder.db.session import get_db_session, with_retry
from src.bidfinder.models.errors import RecordMappingError, StoreReadError, StoreWriteError
from src.bidfinder.models.procurement import (
    ProcurementRecord,
    QuerySpec,
    RawUpstreamRecord,
    UpsertResult,
)
from src.bidfinder.transformers.record_mapper import MAPPING_VERSION, map_record
from src.bidfinder.utils.logger import get_logger

logger = get_logger(__name__)


class LocalStoreGateway:
    """
    Filter reads and batched, idempotent upserts keyed by external_id.

    Conflict policy is merge: a re-fetched record replaces the stored one.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        batch_size: Optional[int] = None,
        repository: Optional[ProcurementRecordRepository] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.store_batch_size
        self.repository = repository or ProcurementRecordRepository()
        self.today = today

    def read(self, query: QuerySpec) -> List[ProcurementRecord]:
        """
        Read every stored record matching the query.

        Raises:
            StoreReadError: the store could not be read
        """
        try:
            return self._read(query)
        except SQLAlchemyError as e:
            logger.error("store_read_failed", error=str(e), error_type=type(e).__name__)
            raise StoreReadError(f"could not read procurement records: {e}") from e

    @with_retry(max_retries=3)
    def _read(self, query: QuerySpec) -> List[ProcurementRecord]:
        with get_db_session(self.session_factory) as session:
            rows = self.repository.find_matching(session, query)
            return [ProcurementRecord.model_validate(row) for row in rows]

    def upsert(self, records: Iterable[RawUpstreamRecord]) -> UpsertResult:
        """
        Map and upsert raw upstream records in batches.

        Each batch commits on its own; a failed batch is counted in
        ``failed`` and the remaining batches still run.

        Returns:
            UpsertResult with written, failed and skipped (unmappable) counts

        Raises:
            StoreWriteError: rows were submitted but no batch committed
        """
        rows: Dict[str, Dict[str, Any]] = {}
        skipped = 0

        for raw in records:
            try:
                record = map_record(raw, today=self.today)
            except RecordMappingError as e:
                skipped += 1
                logger.warning("record_mapping_skipped", partition_key=raw.partition_key, error=str(e))
                continue
            row = record.model_dump()
            row["mapping_version"] = MAPPING_VERSION
            # Same id twice in one payload: last occurrence wins, like the upsert itself
            rows[record.external_id] = row

        result = UpsertResult(skipped=skipped)
        pending = list(rows.values())

        for start in range(0, len(pending), self.batch_size):
            batch = pending[start:start + self.batch_size]
            try:
                with get_db_session(self.session_factory) as session:
                    result.written += self.repository.bulk_upsert(session, batch)
            except SQLAlchemyError as e:
                result.failed += len(batch)
                logger.error(
                    "store_batch_failed",
                    batch_start=start,
                    batch_size=len(batch),
                    error=str(e),
                    error_type=type(e).__name__,
                )

        logger.info("store_upsert_complete", written=result.written, failed=result.failed, skipped=result.skipped)

        if result.failed and not result.written:
            raise StoreWriteError(f"no batch committed ({result.failed} rows failed)", failed=result.failed)
        return result
