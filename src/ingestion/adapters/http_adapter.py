"""
HTTP JSON Listing Adapter.

Fetches listings from venue and ticketing JSON feeds.

Options:
    url: single feed URL
    pages: list of feed URLs, fetched concurrently (``page_workers``)
    page_param / max_pages / start_page: numbered pagination on ``url``;
        stops at the first empty page
    records_path: dot path to the record list inside the response
        (e.g. "data.listings"); the response itself when omitted
    field_mappings / transformations: see ``FieldMapper``
    headers, params: extra request headers / query params
    timeout_s, max_retries, backoff_s, backoff_mode, max_backoff_s: request
        behaviour; a numeric Retry-After on 429/503 overrides the backoff
    rate_limit_per_second | rate_limit_per_min, rate_limit_burst,
        min_request_delay_s: per-source request throttling, shared by page
        workers and retries
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterator, List, Optional

import httpx

from src.ingestion.adapters.base_adapter import BaseSourceAdapter, RawRecord, SourceType
from src.ingestion.adapters.field_mapper import (
    create_field_mapper_from_config,
    extract_path,
    parse_path,
)
from src.ingestion.adapters.registry import register_adapter
from src.ingestion.errors import ConfigError, FetchError
from src.ingestion.runtime import RateLimiter, RetryPolicy

DEFAULT_HEADERS = {
    "User-Agent": "gig-ingestion/0.1 (+listings aggregator)",
    "Accept": "application/json",
}


@register_adapter("http_json")
class HttpListingAdapter(BaseSourceAdapter):
    """
    Adapter for JSON listing feeds over HTTP.

    Supports:
    - Single URL, explicit page lists and numbered pagination
    - Retries with exponential backoff on transport errors and 408/429/5xx
    - Field mapping of source-specific payloads
    """

    source_type = SourceType.API

    def __init__(
        self,
        config,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the adapter.

        Args:
            config: SourceConfig for this source
            transport: Optional httpx transport (e.g. ``httpx.MockTransport``)
            sleep: Backoff and throttling sleep function
            monotonic: Clock for the request rate limiter
        """
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.Client] = None
        self._client_lock = threading.Lock()
        super().__init__(config)
        self.mapper = create_field_mapper_from_config(self.options)
        records_path = self.options.get("records_path")
        self._records_steps = parse_path(records_path) if records_path else None
        self.retry_policy = RetryPolicy.from_options(self.options)
        self.rate_limiter = RateLimiter.from_options(
            self.options, clock=monotonic, sleep=sleep
        )

    def _validate_config(self) -> None:
        url = self.options.get("url")
        pages = self.options.get("pages")
        if not url and not pages:
            raise ConfigError(
                f"HTTP source '{self.source_id}' needs 'url' or 'pages' option",
                source_id=self.source_id,
            )
        if pages is not None and not isinstance(pages, list):
            raise ConfigError(
                f"HTTP source '{self.source_id}': 'pages' must be a list of URLs",
                source_id=self.source_id,
            )
        for key in ("rate_limit_per_second", "rate_limit_per_min"):
            value = self.options.get(key)
            if value is not None and float(value) <= 0:
                raise ConfigError(
                    f"HTTP source '{self.source_id}': '{key}' must be positive",
                    source_id=self.source_id,
                )
        if self.options.get("page_param") and not url:
            raise ConfigError(
                f"HTTP source '{self.source_id}': 'page_param' requires 'url'",
                source_id=self.source_id,
            )

    def _get_client(self) -> httpx.Client:
        """Get or create the HTTP client shared by all page workers."""
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(
                    headers={**DEFAULT_HEADERS, **self.options.get("headers", {})},
                    timeout=float(self.options.get("timeout_s", 30.0)),
                    follow_redirects=True,
                    transport=self._transport,
                )
            return self._client

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    # ========================================================================
    # Requests
    # ========================================================================

    def _request(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET ``url`` and decode its JSON body, retrying per the retry policy.

        Raises:
            FetchError: When the request keeps failing or the body is not JSON
        """
        client = self._get_client()
        query = {**self.options.get("params", {}), **(params or {})}
        attempts = self.retry_policy.max_retries + 1

        for attempt in range(1, attempts + 1):
            waited = self.rate_limiter.acquire()
            if waited:
                self.logger.debug(f"Throttled {waited:.2f}s before {url}")
            try:
                response = client.get(url, params=query or None)
            except httpx.TransportError as e:
                if attempt < attempts:
                    self._backoff(attempt, url, str(e))
                    continue
                raise FetchError(
                    f"Request to {url} failed after {attempt} attempts: {e}",
                    source_id=self.source_id,
                ) from e

            if self.retry_policy.should_retry_status(response.status_code):
                if attempt < attempts:
                    self._backoff(
                        attempt,
                        url,
                        f"HTTP {response.status_code}",
                        retry_after=response.headers.get("Retry-After"),
                    )
                    continue
            if response.is_error:
                raise FetchError(
                    f"Request to {url} returned HTTP {response.status_code}",
                    source_id=self.source_id,
                )

            try:
                return response.json()
            except ValueError as e:
                raise FetchError(
                    f"Response from {url} is not valid JSON: {e}",
                    source_id=self.source_id,
                ) from e

        raise FetchError(f"Request to {url} failed", source_id=self.source_id)

    def _backoff(
        self, attempt: int, url: str, reason: str, retry_after: Optional[str] = None
    ) -> None:
        delay = self.retry_policy.delay_for(attempt, retry_after)
        self.logger.warning(
            f"Request to {url} failed ({reason}), retrying in {delay:.2f}s "
            f"(attempt {attempt}/{self.retry_policy.max_retries})"
        )
        self._sleep(delay)

    def _records_from(self, payload: Any, url: str) -> List[RawRecord]:
        records = (
            extract_path(payload, self._records_steps)
            if self._records_steps
            else payload
        )
        if records is None:
            return []
        if not isinstance(records, list):
            raise FetchError(
                f"Response from {url} does not hold a list of records",
                source_id=self.source_id,
            )
        if self.mapper is None:
            return records
        return [
            self.mapper.map_record(record) if isinstance(record, dict) else record
            for record in records
        ]

    # ========================================================================
    # Fetching
    # ========================================================================

    def fetch_listings(self) -> Iterator[RawRecord]:
        if self.options.get("pages"):
            yield from self._fetch_page_list(self.options["pages"])
        elif self.options.get("page_param"):
            yield from self._fetch_numbered_pages()
        else:
            url = self.options["url"]
            records = self._records_from(self._request(url), url)
            self.logger.info(f"Fetched {len(records)} listings from {url}")
            yield from records

    def _fetch_page_list(self, pages: List[str]) -> Iterator[RawRecord]:
        """
        Fetch an explicit list of pages concurrently.

        Records are yielded in page order; a page that fails ends the stream
        after the pages before it were yielded.
        """
        workers = max(1, int(self.options.get("page_workers", 4)))
        self._get_client()
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self._request, url) for url in pages]
            for url, future in zip(pages, futures):
                records = self._records_from(future.result(), url)
                self.logger.debug(f"Page {url}: {len(records)} listings")
                yield from records

    def _fetch_numbered_pages(self) -> Iterator[RawRecord]:
        url = self.options["url"]
        param = self.options["page_param"]
        page = int(self.options.get("start_page", 1))
        max_pages = int(self.options.get("max_pages", 10))

        for _ in range(max_pages):
            records = self._records_from(self._request(url, {param: page}), url)
            if not records:
                break
            self.logger.debug(f"Page {page} of {url}: {len(records)} listings")
            yield from records
            page += 1
