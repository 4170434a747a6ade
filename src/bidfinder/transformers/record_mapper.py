"""
PNCP Record Mapper

Explicit, versioned mapping from a raw PNCP ``contratacao`` payload to a
ProcurementRecord. Every field has exactly one source path; a missing value
comes back as FIELD_ABSENT and is stored as NULL.
"""
import calendar
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from config.settings import settings
from src.bidfinder.models.errors import RecordMappingError
from src.bidfinder.models.procurement import ProcurementRecord, RawUpstreamRecord
from src.bidfinder.utils.logger import get_logger

logger = get_logger(__name__)

MAPPING_VERSION = "pncp-v1"

CLOSE_DATE_GRACE = timedelta(days=30)
OPEN_DATE_GRACE = timedelta(days=60)
# the 90-day publication rule lands on the same day three months later
PUBLICATION_GRACE_MONTHS = 3


class _FieldAbsent:
    """Marker for a field the upstream payload did not carry."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "FIELD_ABSENT"


FIELD_ABSENT = _FieldAbsent()

FIELD_PATHS: Dict[str, Tuple[str, ...]] = {
    "external_id": ("numeroControlePNCP",),
    "title": ("objetoCompra",),
    "organization": ("orgaoEntidade", "razaoSocial"),
    "modality_label": ("modalidadeNome",),
    "status": ("situacaoCompraNome",),
    "municipality": ("unidadeOrgao", "municipioNome"),
    "municipality_code": ("unidadeOrgao", "codigoIbge"),
    "state_code": ("unidadeOrgao", "ufSigla"),
    "publication_date": ("dataPublicacaoPncp",),
    "proposal_open_date": ("dataAberturaProposta",),
    "proposal_close_date": ("dataEncerramentoProposta",),
    "estimated_value": ("valorTotalEstimado",),
    "official_link": ("linkSistemaOrigem",),
}

DATE_FIELDS = ("publication_date", "proposal_open_date", "proposal_close_date")
TEXT_FIELDS = (
    "title", "organization", "modality_label", "status",
    "municipality", "municipality_code", "state_code", "official_link",
)


def extract_field(payload: Dict[str, Any], path: Tuple[str, ...]) -> Any:
    """Walk a nested path; None, blank strings and missing keys are FIELD_ABSENT."""
    value: Any = payload
    for key in path:
        if not isinstance(value, dict) or key not in value:
            return FIELD_ABSENT
        value = value[key]
    if value is None or (isinstance(value, str) and not value.strip()):
        return FIELD_ABSENT
    return value


def parse_upstream_date(value: Any) -> Optional[date]:
    """
    Parse PNCP date values.

    Accepts ``2024-01-01``, ``2024-01-01T09:30:00`` (with or without
    fraction/offset) and date/datetime objects.
    """
    if value is FIELD_ABSENT or value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            pass
        try:
            return datetime.strptime(text[:10], "%Y-%m-%d").date()
        except ValueError:
            logger.warning("unparseable_upstream_date", value=text)
    return None


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is FIELD_ABSENT or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning("unparseable_estimated_value", value=value)
        return None


def add_months(value: date, months: int) -> date:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def derive_expiration_date(
    proposal_close_date: Optional[date],
    proposal_open_date: Optional[date],
    publication_date: Optional[date],
    today: Optional[date] = None,
) -> date:
    """
    Advisory expiry, first available rule wins:

    close date + 30 days, open date + 60 days, publication date + 3 months,
    otherwise today + 3 months (2024-01-01 expires on 2024-04-01).
    """
    if proposal_close_date is not None:
        return proposal_close_date + CLOSE_DATE_GRACE
    if proposal_open_date is not None:
        return proposal_open_date + OPEN_DATE_GRACE
    if publication_date is not None:
        return add_months(publication_date, PUBLICATION_GRACE_MONTHS)
    return add_months(today or date.today(), PUBLICATION_GRACE_MONTHS)


def build_official_link(external_id: str) -> str:
    return settings.pncp_official_link_template.format(external_id=external_id)


def map_record(
    raw: RawUpstreamRecord,
    today: Optional[Callable[[], date]] = None,
) -> ProcurementRecord:
    """
    Map one raw upstream record.

    Args:
        raw: Payload tagged with the partition (modality code) it came from
        today: Date provider for the no-date expiry fallback

    Returns:
        ProcurementRecord ready for upsert

    Raises:
        RecordMappingError: the payload has no control number or fails validation
    """
    payload = raw.payload
    fields = {name: extract_field(payload, path) for name, path in FIELD_PATHS.items()}

    external_id = fields["external_id"]
    if external_id is FIELD_ABSENT:
        raise RecordMappingError("payload has no numeroControlePNCP")
    external_id = str(external_id).strip()

    data: Dict[str, Any] = {
        "external_id": external_id,
        "modality_code": raw.partition_key,
        "source": settings.pncp_source_label,
        "raw_payload": payload,
    }
    for name in TEXT_FIELDS:
        value = fields[name]
        data[name] = None if value is FIELD_ABSENT else str(value).strip()
    for name in DATE_FIELDS:
        data[name] = parse_upstream_date(fields[name])
    data["estimated_value"] = _to_decimal(fields["estimated_value"])

    if data["state_code"]:
        data["state_code"] = data["state_code"].upper()
    if not data["official_link"]:
        data["official_link"] = build_official_link(external_id)

    data["expiration_date"] = derive_expiration_date(
        data["proposal_close_date"],
        data["proposal_open_date"],
        data["publication_date"],
        today=today() if today else None,
    )

    try:
        return ProcurementRecord(**data)
    except ValidationError as e:
        raise RecordMappingError(f"record {external_id} failed validation: {e}") from e
