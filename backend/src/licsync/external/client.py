"""Client for the third-party license API.

Endpoints used:
- GET  /api/v1/licenses?page=N&limit=M   paginated listing ({data, meta})
- GET  /api/v1/licenses/{appid}          single license
- PUT  /api/v1/licenses/{appid}          update (bidirectional sync)

Authentication is an ``x-api-key`` header. Every call goes through the
shared circuit breaker, which wraps the retry policy: one breaker failure
is counted per exhausted retry sequence.
"""

import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from ..config import Settings, get_settings
from ..errors import (
    ApiTimeoutError,
    NetworkError,
    SyncError,
    ValidationError,
    classify_http_status,
)
from ..logging import get_context_logger, log_api_request
from ..models import ExternalLicenseRecord, RecordFailure
from ..reliability import CircuitBreaker, RetryConfig, RetryPolicy
from .validator import ExternalLicenseValidator

logger = get_context_logger(__name__)

LICENSES_PATH = "/api/v1/licenses"

# Stop paginating after this many pages even if the API keeps answering
MAX_PAGES = 1000


@dataclass
class FetchResult:
    """Everything fetched from the external API in one sync."""

    records: list[ExternalLicenseRecord] = field(default_factory=list)
    skipped: list[RecordFailure] = field(default_factory=list)
    pages_fetched: int = 0
    total_reported: int | None = None

    @property
    def fetched(self) -> int:
        return len(self.records) + len(self.skipped)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class ExternalLicenseClient:
    """Async client for the external license API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        page_size: int | None = None,
        breaker: CircuitBreaker | None = None,
        retry: RetryPolicy | None = None,
        validator: ExternalLicenseValidator | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        settings: Settings | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: API root (defaults to settings)
            api_key: Value for the x-api-key header
            timeout: Per-request timeout in seconds
            page_size: Records requested per page
            breaker: Circuit breaker shared by all calls of this client
            retry: Retry policy applied beneath the breaker
            validator: Payload validator for fetched records
            transport: Custom httpx transport (tests use MockTransport)
            settings: Settings to read defaults from
        """
        settings = settings or get_settings()
        sync = settings.sync

        self.base_url = (base_url or settings.external_license_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.external_license_api_key
        self.timeout = timeout or settings.external_license_api_timeout
        self.page_size = page_size or sync.batch_size
        self.user_agent = settings.external_license_user_agent

        self.breaker = breaker or CircuitBreaker(
            failure_threshold=sync.circuit_failure_threshold,
            reset_timeout=sync.circuit_reset_timeout,
        )
        self.retry = retry or RetryPolicy(
            RetryConfig(
                max_retries=sync.max_retries,
                base_delay=sync.retry_base_delay,
                max_delay=sync.retry_max_delay,
                jitter=sync.retry_jitter,
            )
        )
        self.validator = validator or ExternalLicenseValidator(
            strict_mode=sync.validation_strict_mode,
            max_field_length=sync.max_field_length,
            allowed_license_types=sync.allowed_license_types,
        )

        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self.api_status = "unknown"

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers={
                    "Accept": "application/json",
                    "User-Agent": self.user_agent,
                    "x-api-key": self.api_key,
                },
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Close the client connections."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "ExternalLicenseClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # =========================
    # Transport
    # =========================

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        not_found_ok: bool = False,
    ) -> Any:
        """Send one request and classify failures.

        Returns:
            Decoded JSON body, or None for a tolerated 404
        """
        start = time.monotonic()
        try:
            response = await self.http_client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as e:
            raise ApiTimeoutError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

        log_api_request(
            method, path, response.status_code, (time.monotonic() - start) * 1000
        )

        if response.status_code == 404 and not_found_ok:
            return None

        if response.status_code >= 400:
            raise classify_http_status(
                response.status_code,
                f"HTTP {response.status_code}: {response.text[:200]}",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )

        try:
            return response.json()
        except ValueError as e:
            raise ValidationError(f"{method} {path} returned a non-JSON body") from e

    async def _call(self, operation: str, method: str, path: str, **kwargs: Any) -> Any:
        """Run a request under the circuit breaker and retry policy."""
        try:
            result = await self.breaker.call(
                lambda: self.retry.run(
                    lambda: self._request(method, path, **kwargs), operation
                )
            )
        except SyncError as e:
            if not isinstance(e, ValidationError):
                self.api_status = "unhealthy"
            raise
        self.api_status = "healthy"
        return result

    # =========================
    # Operations
    # =========================

    async def fetch_page(
        self,
        page_token: str | None = None,
        page_size: int | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Fetch one page of raw license payloads.

        Args:
            page_token: Opaque token from a previous call (None = first page)
            page_size: Records per page

        Returns:
            Tuple of (raw payloads, next page token or None when exhausted)

        Raises:
            ValidationError: If the page has no ``data`` list
        """
        page = int(page_token) if page_token else 1
        limit = page_size or self.page_size

        body = await self._call(
            f"fetch_page_{page}",
            "GET",
            LICENSES_PATH,
            params={"page": page, "limit": limit},
        )

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            raise ValidationError(f"Page {page} has no data list")

        meta = body.get("meta") or {}
        total_pages = meta.get("totalPages")
        if total_pages is None and meta.get("total") is not None:
            total_pages = -(-int(meta["total"]) // limit)

        has_more = len(data) >= limit and (total_pages is None or page < int(total_pages))
        next_token = str(page + 1) if has_more and page < MAX_PAGES else None
        return data, next_token

    async def get_all_licenses(self, batch_size: int | None = None) -> FetchResult:
        """Page through every external license.

        Invalid payloads are reported as skips rather than failing the
        fetch. Transport errors propagate once retries are exhausted.
        """
        result = FetchResult()
        token: str | None = None

        while True:
            payloads, token = await self.fetch_page(token, batch_size)
            result.pages_fetched += 1

            for payload in payloads:
                try:
                    result.records.append(self.validator.validate(payload))
                except ValidationError as e:
                    result.skipped.append(
                        RecordFailure(
                            identifier=e.identifier or "<unidentified>",
                            reason=e.message,
                            error_type=e.error_type,
                        )
                    )

            if token is None:
                break

        logger.info(
            f"Fetched {len(result.records)} external licenses "
            f"({len(result.skipped)} invalid) in {result.pages_fetched} pages",
            extra={
                "records": len(result.records),
                "skipped": len(result.skipped),
                "pages": result.pages_fetched,
            },
        )
        return result

    async def get_license_by_app_id(self, app_id: str) -> ExternalLicenseRecord | None:
        """Fetch one license by appId, or None if the API does not know it."""
        if not app_id:
            raise ValidationError("App ID is required")

        body = await self._call(
            "get_license_by_app_id",
            "GET",
            f"{LICENSES_PATH}/{quote(app_id, safe='')}",
            not_found_ok=True,
        )
        if body is None:
            return None
        payload = body.get("data", body) if isinstance(body, dict) else body
        return self.validator.validate(payload)

    async def update_license(self, app_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Push field updates for one license to the external API."""
        if not app_id:
            raise ValidationError("App ID is required")

        return await self._call(
            "update_license",
            "PUT",
            f"{LICENSES_PATH}/{quote(app_id, safe='')}",
            json=payload,
        )

    async def test_connectivity(self) -> bool:
        """Check the API answers an authenticated one-record listing."""
        try:
            await self._call(
                "test_connectivity", "GET", LICENSES_PATH, params={"page": 1, "limit": 1}
            )
            return True
        except SyncError as e:
            logger.warning(
                f"External license API connectivity check failed: {e}",
                extra={"error_type": e.error_type},
            )
            return False
