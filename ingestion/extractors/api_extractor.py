"""
HTTP source extractor with cursor pagination and a circuit breaker.

This module provides one page per call with:
- Three cursor styles: starting_after (last record id), page (page number)
  and next_token (cursor returned in the response body)
- Timeouts, network errors and 5xx raised as retryable NetworkError
- HTTP 429 raised as RateLimitError carrying Retry-After
- Circuit breaker to stop hammering a failing source
- Per-source presets for the payment, CRM and chat-platform APIs
"""

import httpx
from typing import List, Dict, Any, Optional
from datetime import datetime, timedelta
from ingestion.base import CursorDataSource, FieldPath
from models.base import SyncSource
from schemas.records import SourcePage
from core.config import settings
from core.exceptions import (
    APIExtractionError,
    NetworkError,
    RateLimitError,
    AuthenticationError,
    ResourceNotFoundError,
    MalformedPageError,
)
import logging

logger = logging.getLogger(__name__)

STARTING_AFTER = "starting_after"
PAGE_NUMBER = "page"
NEXT_TOKEN = "next_token"


class APIExtractor(CursorDataSource):
    """
    Fetch one page at a time from a REST API.

    Attributes:
        pagination: One of starting_after, page, next_token
        records_key: Dotted path of the record list in the response body
        cursor_param: Query parameter carrying the cursor
        next_cursor_path: Response path of the next cursor (next_token style)
        has_more_path: Response path of the has-more flag, if the API sends one
        page_size: Records requested per page
        timeout: Request timeout in seconds (default: 30.0)
    """

    def __init__(
        self,
        source: SyncSource,
        api_url: str,
        api_key: Optional[str] = None,
        pagination: str = STARTING_AFTER,
        records_key: str = "data",
        cursor_param: Optional[str] = None,
        next_cursor_path: Optional[str] = None,
        has_more_path: Optional[str] = "has_more",
        page_size: Optional[int] = None,
        page_size_param: str = "limit",
        field_map: Optional[Dict[str, FieldPath]] = None,
        amount_in_cents: bool = False,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(source, field_map=field_map, amount_in_cents=amount_in_cents, rate_limited=True)
        if pagination not in (STARTING_AFTER, PAGE_NUMBER, NEXT_TOKEN):
            raise ValueError(f"Unknown pagination style: {pagination}")
        self.api_url = api_url
        self.api_key = api_key
        self.pagination = pagination
        self.records_key = records_key
        self.cursor_param = cursor_param or pagination
        self.next_cursor_path = next_cursor_path
        self.has_more_path = has_more_path
        self.page_size = page_size or settings.PAGE_SIZE
        self.page_size_param = page_size_param
        self.timeout = timeout
        self.transport = transport

        # Circuit breaker state
        self._circuit_breaker_failures = 0
        self._circuit_breaker_threshold = 5
        self._circuit_breaker_open_until: Optional[datetime] = None
        self._circuit_breaker_timeout = 60  # seconds

    def _is_circuit_open(self) -> bool:
        """Check if circuit breaker is open."""
        if self._circuit_breaker_open_until is None:
            return False

        if datetime.now() >= self._circuit_breaker_open_until:
            logger.info(f"Circuit breaker reset for {self.source_name}")
            self._circuit_breaker_failures = 0
            self._circuit_breaker_open_until = None
            return False

        return True

    def _record_failure(self):
        """Record a failure and potentially open circuit breaker."""
        self._circuit_breaker_failures += 1

        if self._circuit_breaker_failures >= self._circuit_breaker_threshold:
            self._circuit_breaker_open_until = datetime.now() + timedelta(
                seconds=self._circuit_breaker_timeout
            )
            logger.warning(
                f"Circuit breaker opened for {self.source_name}. "
                f"Will retry after {self._circuit_breaker_timeout} seconds."
            )

    def _record_success(self):
        """Record a successful request."""
        self._circuit_breaker_failures = 0
        self._circuit_breaker_open_until = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _params(self, cursor: Optional[str]) -> Dict[str, Any]:
        params: Dict[str, Any] = {self.page_size_param: self.page_size}
        if self.pagination == PAGE_NUMBER:
            params[self.cursor_param] = int(cursor) if cursor else 1
        elif cursor:
            params[self.cursor_param] = cursor
        return params

    async def _make_request(
        self,
        client: httpx.AsyncClient,
        params: Dict[str, Any]
    ) -> httpx.Response:
        """
        Make one HTTP request and classify its failure.

        Transient failures are raised as retryable errors for the chunk
        executor, which owns backoff; a 429 carries the server's Retry-After.

        Raises:
            APIExtractionError: Circuit open or request rejected
            AuthenticationError, ResourceNotFoundError: Non-retryable HTTP status
            NetworkError, RateLimitError: Transient failure
        """
        url = self.api_url
        if self._is_circuit_open():
            raise APIExtractionError(
                f"Circuit breaker is open for {self.source_name}",
                context={
                    "source": self.source_name,
                    "api_url": url,
                    "open_until": self._circuit_breaker_open_until.isoformat()
                }
            )

        try:
            logger.debug(f"Request to {url} {params}")
            response = await client.get(url, headers=self._headers(), params=params)

        except httpx.TimeoutException as e:
            self._record_failure()
            raise NetworkError(
                f"Request timeout after {self.timeout}s",
                context={"api_url": url, "source": self.source_name, "timeout": self.timeout},
                original_exception=e
            )

        except httpx.TransportError as e:
            self._record_failure()
            raise NetworkError(
                f"Network error: {e}",
                context={"api_url": url, "source": self.source_name},
                original_exception=e
            )

        if response.status_code in (401, 403):
            self._record_failure()
            raise AuthenticationError(
                f"Authentication failed for {url}",
                context={"status_code": response.status_code, "api_url": url, "source": self.source_name}
            )

        if response.status_code == 404:
            self._record_failure()
            raise ResourceNotFoundError(
                f"Resource not found: {url}",
                context={"status_code": 404, "api_url": url, "source": self.source_name}
            )

        if response.status_code == 429:
            self._record_failure()
            retry_after = _retry_after_seconds(response)
            logger.warning(f"Rate limited by {self.source_name} (Retry-After: {retry_after})")
            raise RateLimitError(
                f"Rate limit exceeded for {url}",
                context={"status_code": 429, "api_url": url, "source": self.source_name},
                retry_after=retry_after
            )

        if response.status_code >= 500:
            self._record_failure()
            raise NetworkError(
                f"Server error {response.status_code}",
                context={
                    "status_code": response.status_code,
                    "api_url": url,
                    "source": self.source_name,
                    "response_body": response.text[:500]
                }
            )

        if response.status_code >= 400:
            self._record_failure()
            raise APIExtractionError(
                f"Request rejected with HTTP {response.status_code}",
                context={
                    "status_code": response.status_code,
                    "api_url": url,
                    "source": self.source_name,
                    "response_body": response.text[:500]
                }
            )

        self._record_success()
        return response

    async def fetch(self, cursor: Optional[str] = None) -> SourcePage:
        """
        Fetch the page following ``cursor``.

        Raises:
            MalformedPageError: Body is not JSON or has no record list
            APIExtractionError, NetworkError, RateLimitError: See _make_request
        """
        params = self._params(cursor)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await self._make_request(client, params)

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedPageError(
                "Failed to parse JSON response",
                context={"api_url": self.api_url, "source": self.source_name, "response_body": response.text[:500]},
                original_exception=e
            )

        records = body if isinstance(body, list) else self._lookup(body, self.records_key) if isinstance(body, dict) else None
        if not isinstance(records, list):
            raise MalformedPageError(
                f"Response has no record list at '{self.records_key}'",
                context={"api_url": self.api_url, "source": self.source_name, "cursor": cursor}
            )

        has_more, next_cursor = self._next_position(body, records, cursor)
        logger.info(
            f"Fetched {len(records)} records from {self.source_name} "
            f"(cursor={cursor}, has_more={has_more})"
        )
        return SourcePage(records=records, has_more=has_more, next_cursor=next_cursor)

    def _next_position(self, body: Any, records: List[Dict[str, Any]], cursor: Optional[str]):
        flag = self._lookup(body, self.has_more_path) if isinstance(body, dict) and self.has_more_path else None

        if self.pagination == NEXT_TOKEN:
            token = self._lookup(body, self.next_cursor_path) if isinstance(body, dict) and self.next_cursor_path else None
            has_more = bool(token) and (flag is None or bool(flag)) and bool(records)
            return has_more, str(token) if has_more else None

        if not records:
            return False, None

        has_more = bool(flag) if flag is not None else len(records) >= self.page_size
        if not has_more:
            return False, None

        if self.pagination == PAGE_NUMBER:
            return True, str((int(cursor) if cursor else 1) + 1)

        last_id = self.extract_record_id(records[-1])
        return True, last_id


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


# ============================================================================
# Source presets
# ============================================================================

SOURCE_PRESETS: Dict[SyncSource, Dict[str, Any]] = {
    SyncSource.PAYMENT_A: {
        "pagination": STARTING_AFTER,
        "records_key": "data",
        "has_more_path": "has_more",
        "amount_in_cents": True,
        "field_map": {"amount": "amount", "timestamp": "created"},
    },
    SyncSource.PAYMENT_B: {
        "pagination": PAGE_NUMBER,
        "records_key": "transactions",
        "has_more_path": "has_next",
        "page_size_param": "page_size",
        "field_map": {
            "id": "transaction_id",
            "email": "payer.email_address",
            "phone": "payer.phone",
            "name": ["payer.name.given_name", "payer.name.surname"],
            "amount": "amount.value",
            "timestamp": "transaction_date",
        },
    },
    SyncSource.CRM: {
        "pagination": NEXT_TOKEN,
        "records_key": "contacts",
        "cursor_param": "startAfterId",
        "next_cursor_path": "meta.startAfterId",
        "has_more_path": None,
        "field_map": {"name": ["firstName", "lastName"], "timestamp": "dateAdded"},
    },
    SyncSource.CHAT_PLATFORM: {
        "pagination": PAGE_NUMBER,
        "records_key": "data",
        "has_more_path": None,
        "field_map": {
            "phone": "whatsapp_phone",
            "name": ["first_name", "last_name"],
            "timestamp": "subscribed",
        },
    },
}

_URL_SETTINGS = {
    SyncSource.PAYMENT_A: ("PAYMENT_A_API_URL", "PAYMENT_A_API_KEY"),
    SyncSource.PAYMENT_B: ("PAYMENT_B_API_URL", "PAYMENT_B_API_KEY"),
    SyncSource.CRM: ("CRM_API_URL", "CRM_API_KEY"),
    SyncSource.CHAT_PLATFORM: ("CHAT_PLATFORM_API_URL", "CHAT_PLATFORM_API_KEY"),
}


def build_api_source(source: SyncSource, **overrides) -> APIExtractor:
    """
    Configure an APIExtractor from the source preset and settings.

    Raises:
        APIExtractionError: No API URL configured for the source
    """
    if source not in SOURCE_PRESETS:
        raise APIExtractionError(f"{source.value} is not an HTTP source", context={"source": source.value})

    url_setting, key_setting = _URL_SETTINGS[source]
    config = {
        **SOURCE_PRESETS[source],
        "api_url": getattr(settings, url_setting),
        "api_key": getattr(settings, key_setting),
        **overrides,
    }
    if not config.get("api_url"):
        raise APIExtractionError(
            f"No API URL configured for {source.value}",
            context={"source": source.value, "setting": url_setting}
        )
    return APIExtractor(source, **config)
