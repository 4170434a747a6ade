"""
PNCP Fetcher

Issues single page requests against the PNCP "contratações com proposta
aberta" endpoint with timeout, exponential backoff on 429 and a shared
minimum interval between physical requests.
"""
import threading
import time
from datetime import date, timedelta
from typing import Any, Callable, Dict, Optional

import requests

from config.settings import settings
from src.bidfinder.models.errors import (
    FetchTimeoutError,
    RateLimitedError,
    UpstreamError,
    UpstreamFormatError,
)
from src.bidfinder.models.procurement import ParsedPage, QuerySpec
from src.bidfinder.utils.logger import get_logger

logger = get_logger(__name__)


class RequestThrottle:
    """
    Spaces out physical requests across every thread sharing the instance.

    Each caller reserves the next free slot under a lock and sleeps outside
    it, so concurrent partitions queue up instead of bursting.
    """

    def __init__(
        self,
        min_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = (
            settings.pncp_min_request_interval_seconds if min_interval is None else min_interval
        )
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def wait(self) -> float:
        """Block until this caller may issue a request. Returns the delay applied."""
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_interval
        delay = slot - now
        if delay > 0:
            self._sleep(delay)
        return delay


class PncpFetcher:
    """
    Fetches one page of PNCP results per call.

    Holds no state between calls apart from the per-thread HTTP sessions
    and the shared throttle.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        throttle: Optional[RequestThrottle] = None,
        sleep: Callable[[float], None] = time.sleep,
        today: Callable[[], date] = date.today,
    ):
        """
        Initialize the fetcher.

        Args:
            base_url: Override the default API URL (for testing)
            session: Pre-built HTTP session shared by every thread
            timeout: Per-request timeout in seconds
            max_retries: Attempts allowed for timeouts and 429 responses
            backoff_base: Base delay for exponential backoff in seconds
            throttle: Shared inter-request throttle
            sleep: Sleep function (injected in tests)
            today: Date provider used for the proposal window
        """
        self.base_url = base_url or settings.pncp_base_url
        # one requests.Session per worker thread unless a session is injected
        self._shared_session = session
        self._local = threading.local()
        if session is not None:
            session.headers.update({"Accept": "application/json"})
        self.timeout = timeout or settings.pncp_request_timeout_seconds
        self.max_retries = max(1, max_retries or settings.pncp_max_retries)
        self.backoff_base = settings.pncp_backoff_base_seconds if backoff_base is None else backoff_base
        self.throttle = throttle or RequestThrottle()
        self._sleep = sleep
        self._today = today
        logger.debug("pncp_fetcher_initialized", base_url=self.base_url, timeout=self.timeout)

    @property
    def session(self) -> requests.Session:
        """HTTP session for the calling thread."""
        if self._shared_session is not None:
            return self._shared_session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update({"Accept": "application/json"})
            self._local.session = session
            logger.debug("pncp_session_created", thread=threading.current_thread().name)
        return session

    def build_params(self, partition_key: str, query: QuerySpec, page: int) -> Dict[str, Any]:
        """
        Build query-string parameters for one partition page.

        Municipality and state are never sent together; the municipality wins.
        """
        final_date = self._today() + timedelta(days=settings.pncp_proposal_window_days)
        params: Dict[str, Any] = {
            "dataFinal": final_date.strftime("%Y%m%d"),
            "codigoModalidadeContratacao": partition_key,
            "pagina": page,
            "tamanhoPagina": settings.pncp_page_size,
        }

        geography = query.geography
        if "municipality_code" in geography:
            params["codigoMunicipioIbge"] = geography["municipality_code"]
        elif "state_code" in geography:
            params["uf"] = geography["state_code"]

        if query.keyword:
            params["termoBusca"] = query.keyword

        return params

    def fetch(self, params: Dict[str, Any]) -> ParsedPage:
        """
        Fetch a single page.

        Args:
            params: Query-string parameters (see build_params)

        Returns:
            Parsed page; an empty page for HTTP 204

        Raises:
            FetchTimeoutError: every attempt timed out
            RateLimitedError: every attempt was answered with 429
            UpstreamError: any other non-success status or transport error
            UpstreamFormatError: body is not the expected JSON shape
        """
        last_error = None

        for attempt in range(self.max_retries):
            self.throttle.wait()
            try:
                response = self.session.get(self.base_url, params=params, timeout=self.timeout)
            except requests.Timeout as e:
                last_error = FetchTimeoutError(f"request timed out after {self.timeout}s: {e}")
                logger.warning(
                    "pncp_request_timeout",
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    page=params.get("pagina"),
                    partition_key=params.get("codigoModalidadeContratacao"),
                )
                self._backoff(attempt)
                continue
            except requests.RequestException as e:
                logger.error("pncp_request_failed", error=str(e), error_type=type(e).__name__)
                raise UpstreamError(None, str(e)) from e

            status = response.status_code

            if status == 429:
                last_error = RateLimitedError(
                    f"rate limited after {attempt + 1} attempt(s)"
                )
                logger.warning(
                    "pncp_rate_limited",
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    partition_key=params.get("codigoModalidadeContratacao"),
                )
                self._backoff(attempt, response.headers.get("Retry-After"))
                continue

            if status == 204:
                logger.debug("pncp_no_content", page=params.get("pagina"))
                return ParsedPage.empty()

            if not 200 <= status < 300:
                logger.error("pncp_request_rejected", status_code=status, page=params.get("pagina"))
                raise UpstreamError(status, response.text or "")

            return self._parse_response(response)

        raise last_error

    def _backoff(self, attempt: int, retry_after: Optional[str] = None) -> None:
        """Sleep base * 2**attempt, or Retry-After if larger. No sleep after the last attempt."""
        if attempt >= self.max_retries - 1:
            return
        delay = self.backoff_base * (2 ** attempt)
        if retry_after:
            try:
                delay = max(delay, float(retry_after))
            except ValueError:
                logger.debug("pncp_retry_after_ignored", retry_after=retry_after)
        self._sleep(delay)

    def _parse_response(self, response: requests.Response) -> ParsedPage:
        """
        Decode a PNCP JSON body into a ParsedPage.

        Expected shape: {"data": [...], "totalRegistros": int, "totalPaginas": int}
        """
        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamFormatError(response.status_code, response.text or "") from e

        if not isinstance(payload, dict):
            raise UpstreamFormatError(response.status_code, f"unexpected body type {type(payload).__name__}")

        records = payload.get("data") or []
        if not isinstance(records, list):
            raise UpstreamFormatError(response.status_code, "'data' is not a list")

        try:
            total_records = int(payload.get("totalRegistros") or 0)
            total_pages = payload.get("totalPaginas")
            total_pages = int(total_pages) if total_pages is not None else None
        except (TypeError, ValueError) as e:
            raise UpstreamFormatError(response.status_code, f"invalid totals: {e}") from e

        dict_records = [r for r in records if isinstance(r, dict)]
        if len(dict_records) != len(records):
            logger.warning("pncp_non_object_records_dropped", dropped=len(records) - len(dict_records))

        logger.debug(
            "pncp_page_parsed",
            records=len(dict_records),
            total_records=total_records,
            total_pages=total_pages,
        )
        return ParsedPage(records=dict_records, total_records=total_records, total_pages=total_pages)
