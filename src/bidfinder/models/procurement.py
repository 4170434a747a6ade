"""
Procurement Data Models

Pydantic models for PNCP procurement opportunities and the value objects that
flow through the aggregation pipeline.
"""
from datetime import date
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ALL_PARTITIONS = "all"


def _blank_to_none(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, str):
        v = v.strip()
        if not v or v.lower() == ALL_PARTITIONS:
            return None
    return v


class QuerySpec(BaseModel):
    """
    A single caller query.

    Attributes:
        partition_keys: Modality codes to include (empty means every known code)
        state_code: Two-letter UF filter
        municipality_code: IBGE municipality code; wins over state_code
        keyword: Free-text term matched against title and organization
        page: 1-based result page
    """

    model_config = ConfigDict(frozen=True)

    partition_keys: FrozenSet[str] = Field(default_factory=frozenset, description="Modality codes")
    state_code: Optional[str] = Field(None, description="UF sigla")
    municipality_code: Optional[str] = Field(None, description="IBGE municipality code")
    keyword: Optional[str] = Field(None, description="Search keyword")
    page: int = Field(1, ge=1, description="Result page number")

    @field_validator("partition_keys", mode="before")
    @classmethod
    def normalize_partition_keys(cls, v: Any) -> FrozenSet[str]:
        """Accept None, "all", "6,8" or any iterable of codes."""
        if v is None:
            return frozenset()
        if isinstance(v, str):
            v = v.split(",")
        keys = {str(k).strip() for k in v if k is not None and str(k).strip()}
        if ALL_PARTITIONS in {k.lower() for k in keys}:
            return frozenset()
        return frozenset(keys)

    @field_validator("state_code", mode="before")
    @classmethod
    def normalize_state_code(cls, v: Any) -> Optional[str]:
        v = _blank_to_none(v)
        return v.upper() if isinstance(v, str) else v

    @field_validator("municipality_code", "keyword", mode="before")
    @classmethod
    def normalize_optional_text(cls, v: Any) -> Optional[str]:
        return _blank_to_none(v)

    @property
    def geography(self) -> Dict[str, str]:
        """Effective geography filter; municipality takes precedence over state."""
        if self.municipality_code:
            return {"municipality_code": self.municipality_code}
        if self.state_code:
            return {"state_code": self.state_code}
        return {}

    def for_refresh(self) -> "QuerySpec":
        """Query used to refresh the store: same geography and keyword, every partition."""
        return self.model_copy(update={"partition_keys": frozenset(), "page": 1})


class ProcurementRecord(BaseModel):
    """
    Canonical procurement opportunity as stored locally.

    Attributes:
        external_id: PNCP control number, unique in the store
        expiration_date: Derived advisory expiry (see record_mapper)
        raw_payload: Original upstream record kept for forward compatibility
    """

    model_config = ConfigDict(from_attributes=True)

    external_id: str
    title: Optional[str] = None
    organization: Optional[str] = None
    modality_code: Optional[str] = None
    modality_label: Optional[str] = None
    status: Optional[str] = None
    municipality: Optional[str] = None
    municipality_code: Optional[str] = None
    state_code: Optional[str] = None
    publication_date: Optional[date] = None
    proposal_open_date: Optional[date] = None
    proposal_close_date: Optional[date] = None
    expiration_date: Optional[date] = None
    estimated_value: Optional[Decimal] = None
    official_link: Optional[str] = None
    source: Optional[str] = None
    raw_payload: Optional[Dict[str, Any]] = None

    @field_validator("external_id")
    @classmethod
    def normalize_external_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("external_id must not be blank")
        return v

    def to_view(self) -> Dict[str, Any]:
        """Caller-facing representation without the raw payload."""
        return self.model_dump(mode="json", exclude={"raw_payload"})


class RawUpstreamRecord(BaseModel):
    """An upstream record tagged with the partition it was fetched under."""

    partition_key: str
    payload: Dict[str, Any]


class ParsedPage(BaseModel):
    """One decoded page of upstream results."""

    records: List[Dict[str, Any]] = Field(default_factory=list)
    total_records: int = 0
    total_pages: Optional[int] = None

    @classmethod
    def empty(cls) -> "ParsedPage":
        return cls(records=[], total_records=0, total_pages=0)


class PartitionResult(BaseModel):
    """Everything collected for one partition key."""

    partition_key: str
    records: List[RawUpstreamRecord] = Field(default_factory=list)
    total_count: int = 0
    pages_fetched: int = 0
    page_errors: List[str] = Field(default_factory=list)
    capped: bool = False


class PartitionError(BaseModel):
    """A partition whose fetch failed as a whole."""

    partition_key: str
    kind: str
    message: str


class AggregateResult(BaseModel):
    """Union of all partitions fetched for one query."""

    records: List[RawUpstreamRecord] = Field(default_factory=list)
    total_count_approx: int = 0
    partition_errors: List[PartitionError] = Field(default_factory=list)
    incomplete_partitions: List[str] = Field(default_factory=list)
    partitions_succeeded: int = 0

    @property
    def is_complete(self) -> bool:
        return not self.partition_errors and not self.incomplete_partitions


class UpsertResult(BaseModel):
    """Outcome of a batched upsert."""

    written: int = 0
    failed: int = 0
    skipped: int = 0


class ResultPage(BaseModel):
    """A slice of the finalized result set."""

    items: List[ProcurementRecord] = Field(default_factory=list)
    total: int = 0
    total_pages: int = Field(1, ge=1)
    page: int = Field(1, ge=1)


class SearchResponse(BaseModel):
    """Response returned to the caller of a search."""

    items: List[Dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    total_pages: int = Field(1, ge=1)
    page: int = Field(1, ge=1)
    total_is_estimate: bool = False
    upstream_total: Optional[int] = Field(
        None, description="Sum of the totals PNCP reported during a refresh; None when served from the store"
    )
    refreshed: bool = False
    partition_errors: List[PartitionError] = Field(default_factory=list)
    warning: Optional[str] = None
