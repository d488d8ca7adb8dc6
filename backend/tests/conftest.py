"""Shared fixtures for license-sync tests.

The external license API is imitated with an ``httpx.MockTransport`` so the
real client code (pagination, error classification, breaker, retry) runs
without a network.
"""

import json
import math
from typing import Any

import httpx
import pytest

from licsync.config import Settings, SyncSettings
from licsync.external import ExternalLicenseClient
from licsync.models import ExternalLicenseRecord, InternalLicenseRecord
from licsync.reliability import CircuitBreaker, RetryConfig, RetryPolicy

API_URL = "http://licenses.test"


class FakeClock:
    """Monotonic clock driven by the test."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLicenseApi:
    """Request handler imitating the external license API.

    Serves ``licenses`` page by page, single licenses by appId, and records
    PUT payloads. ``fail_next`` makes the next requests answer with the
    given status codes before normal service resumes.
    """

    def __init__(self, licenses: list[dict[str, Any]] | None = None):
        self.licenses: list[dict[str, Any]] = list(licenses or [])
        self.requests: list[httpx.Request] = []
        self.updates: dict[str, dict[str, Any]] = {}
        self.update_status = 200
        self._failures: list[int] = []
        self._failure_headers: dict[str, str] = {}

    def fail_next(self, *statuses: int, headers: dict[str, str] | None = None) -> None:
        self._failures.extend(statuses)
        self._failure_headers = headers or {}

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if self._failures:
            status = self._failures.pop(0)
            return httpx.Response(
                status, json={"error": "injected failure"}, headers=self._failure_headers
            )

        path = request.url.path
        if request.method == "GET" and path == "/api/v1/licenses":
            page = int(request.url.params.get("page", "1"))
            limit = int(request.url.params.get("limit", "100"))
            start = (page - 1) * limit
            return httpx.Response(
                200,
                json={
                    "data": self.licenses[start:start + limit],
                    "meta": {
                        "page": page,
                        "limit": limit,
                        "total": len(self.licenses),
                        "totalPages": max(1, math.ceil(len(self.licenses) / limit)),
                    },
                },
            )

        app_id = path.rsplit("/", 1)[-1]
        if request.method == "GET":
            for payload in self.licenses:
                if payload.get("appId") == app_id:
                    return httpx.Response(200, json={"data": payload})
            return httpx.Response(404, json={"error": "not found"})

        if request.method == "PUT":
            if self.update_status >= 400:
                return httpx.Response(self.update_status, json={"error": "rejected"})
            self.updates[app_id] = json.loads(request.content)
            return httpx.Response(200, json={"success": True})

        return httpx.Response(405)


def license_payload(app_id: str | None = "A1", **fields: Any) -> dict[str, Any]:
    """Raw API payload for one license, with distinct defaults per appId."""
    slug = (app_id or "anon").lower()
    payload: dict[str, Any] = {
        "appId": app_id,
        "emailLicense": f"owner@{slug}.example.com",
        "dba": f"{app_id} Trading",
        "zip": "10001",
        "status": 1,
        "activateDate": "2024-01-01",
        "monthlyFee": 49.99,
    }
    payload.update(fields)
    return payload


def external_record(app_id: str | None = "A1", **fields: Any) -> ExternalLicenseRecord:
    return ExternalLicenseRecord.model_validate(license_payload(app_id, **fields))


def internal_record(key: str = "LIC-1", **fields: Any) -> InternalLicenseRecord:
    return InternalLicenseRecord(key=key, **fields)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested from the retry policy."""
    return []


@pytest.fixture
def sync_settings() -> SyncSettings:
    return SyncSettings(
        batch_size=2,
        concurrency_limit=4,
        timeout_seconds=10.0,
        max_retries=2,
        retry_base_delay=0.0,
        retry_jitter=0.0,
        circuit_failure_threshold=3,
        circuit_reset_timeout=30.0,
        enable_bidirectional_sync=True,
    )


@pytest.fixture
def settings(sync_settings: SyncSettings) -> Settings:
    return Settings(
        external_license_api_url=API_URL,
        external_license_api_key="test-key",
        sync=sync_settings,
    )


@pytest.fixture
def license_api() -> FakeLicenseApi:
    return FakeLicenseApi()


@pytest.fixture
def make_client(settings, fake_clock, sleeps, license_api):
    """Factory for clients wired to the fake API with an instant retry sleep."""

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    def factory(api: FakeLicenseApi | None = None, **kwargs: Any) -> ExternalLicenseClient:
        sync = settings.sync
        kwargs.setdefault(
            "breaker",
            CircuitBreaker(
                failure_threshold=sync.circuit_failure_threshold,
                reset_timeout=sync.circuit_reset_timeout,
                clock=fake_clock,
            ),
        )
        kwargs.setdefault(
            "retry",
            RetryPolicy(
                RetryConfig(max_retries=sync.max_retries, base_delay=0.0, jitter=0.0),
                sleep=record_sleep,
            ),
        )
        return ExternalLicenseClient(
            transport=(api or license_api).transport, settings=settings, **kwargs
        )

    return factory


@pytest.fixture
def make_payload():
    return license_payload


@pytest.fixture
def make_external():
    return external_record


@pytest.fixture
def make_internal():
    return internal_record
