"""
SQLAlchemy ORM Models

Persistent procurement opportunities and the freshness bookkeeping table.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import Date, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.bidfinder.db.base import Base, PayloadJSON, TimestampMixin


class ProcurementOpportunity(Base, TimestampMixin):
    """
    One procurement opportunity per PNCP control number.

    Rows are only ever replaced through upsert on external_id.
    """
    __tablename__ = "procurement_records"

    external_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="PNCP control number (numeroControlePNCP)"
    )

    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True, comment="Object of the purchase")
    organization: Mapped[Optional[str]] = mapped_column(Text, nullable=True, comment="Contracting body")
    modality_code: Mapped[Optional[str]] = mapped_column(
        String(8),
        nullable=True,
        comment="Partition key the record was fetched under"
    )
    modality_label: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    municipality: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    municipality_code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True, comment="IBGE code")
    state_code: Mapped[Optional[str]] = mapped_column(String(2), nullable=True, comment="UF sigla")

    publication_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    proposal_open_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    proposal_close_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    expiration_date: Mapped[Optional[date]] = mapped_column(
        Date,
        nullable=True,
        comment="Derived advisory expiry, never a deletion trigger"
    )

    estimated_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    official_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    mapping_version: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    raw_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        PayloadJSON,
        nullable=True,
        comment="Original upstream record"
    )

    __table_args__ = (
        Index("idx_procurement_records_state_code", "state_code"),
        Index("idx_procurement_records_municipality_code", "municipality_code"),
        Index("idx_procurement_records_modality_code", "modality_code"),
        Index("idx_procurement_records_publication_date", "publication_date"),
    )

    def __repr__(self) -> str:
        return f"<ProcurementOpportunity(external_id='{self.external_id}', state='{self.state_code}')>"


class QueryFreshness(Base, TimestampMixin):
    """
    Last completed refresh per normalized query signature.
    """
    __tablename__ = "query_freshness"

    cache_key: Mapped[str] = mapped_column(
        String(80),
        primary_key=True,
        comment="Hash of normalized geography + keyword"
    )
    signature: Mapped[Optional[str]] = mapped_column(Text, nullable=True, comment="Normalized signature JSON")
    last_refreshed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_result_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<QueryFreshness(cache_key='{self.cache_key}', last_refreshed_at='{self.last_refreshed_at}')>"
