"""
VirusTotal API client.

This module provides an async client for the VirusTotal v3 API covering the
two-step URL protocol (lookup by URL id, submit when absent), the account
privilege query, and the enterprise intelligence endpoints used for
collections and graphs.

Every call returns a response object instead of raising: transport errors,
timeouts and unexpected HTTP statuses are mapped to an `ApiError` with an
`ApiErrorCode`, so callers always get a bounded outcome.
"""

import base64
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .config import DEFAULT_API_BASE_URL, ApiConfig
from .enums import ApiErrorCode, ItemType, LookupStatus
from .event_logger import EventLogger, LogMixin


REPORT_LINK_TEMPLATE = "https://www.virustotal.com/gui/url/{url_id}/detection"

# url id of https://google.com, used as a cheap authenticated probe
CONNECTION_TEST_URL_ID = "aHR0cHM6Ly9nb29nbGUuY29t"


@dataclass
class ApiError:
    """Error information from a VirusTotal request."""

    code: ApiErrorCode
    message: str
    http_status_code: Optional[int] = None


@dataclass
class ApiResponse:
    """Outcome of a single VirusTotal request."""

    ok: bool
    http_status_code: int
    payload: Optional[Any] = None
    error: Optional[ApiError] = None
    response_time_ms: float = 0.0


@dataclass
class LookupResponse:
    """Outcome of a URL report lookup."""

    status: LookupStatus
    http_status_code: int
    payload: Optional[Any] = None
    error: Optional[ApiError] = None
    response_time_ms: float = 0.0


class VirusTotalClient(LogMixin):
    """
    Async VirusTotal v3 client on top of httpx.

    Usable as an async context manager; otherwise the underlying
    httpx.AsyncClient is created lazily and released by `close()`.
    A custom `transport` replaces the network layer (tests use
    httpx.MockTransport).
    """

    COMPONENT = "VirusTotalClient"

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[EventLogger] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            api_key: VirusTotal API key sent as the `x-apikey` header
            base_url: API root, without trailing slash
            timeout: Request timeout in seconds
            transport: Optional httpx transport override
            logger: Optional event logger
        """
        self._api_key = api_key or ""
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._logger = logger

    @classmethod
    def from_config(
        cls,
        config: ApiConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[EventLogger] = None,
    ) -> "VirusTotalClient":
        return cls(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            transport=transport,
            logger=logger,
        )

    async def __aenter__(self) -> "VirusTotalClient":
        """Async context manager entry."""
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    @property
    def has_api_key(self) -> bool:
        return bool(self._api_key.strip())

    @property
    def base_url(self) -> str:
        return self._base_url

    @staticmethod
    def url_id(url: str) -> str:
        """Unpadded URL-safe base64 of the UTF-8 encoded URL."""
        return base64.urlsafe_b64encode(url.encode("utf-8")).decode("ascii").rstrip("=")

    @classmethod
    def report_link(cls, url: str) -> str:
        """Deep link to the VirusTotal GUI report for a URL."""
        return REPORT_LINK_TEMPLATE.format(url_id=cls.url_id(url))

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                headers={
                    "x-apikey": self._api_key,
                    "accept": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        expect_json: bool = True,
        **kwargs: Any,
    ) -> ApiResponse:
        """
        Issue a request and map every outcome to an ApiResponse.

        Args:
            method: HTTP method
            path: Path relative to the base URL
            expect_json: Treat an unparseable success body as a parse error
            **kwargs: Passed through to httpx (json=, data=)
        """
        start_time = time.perf_counter()

        if not self.has_api_key:
            return ApiResponse(
                ok=False,
                http_status_code=0,
                error=ApiError(
                    code=ApiErrorCode.NOT_CONFIGURED,
                    message="No VirusTotal API key configured",
                ),
            )

        client = self._ensure_client()

        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            return self._failure(
                ApiErrorCode.TIMEOUT,
                f"Request timed out after {self._timeout}s",
                start_time,
                path=path,
            )
        except httpx.ConnectError as e:
            return self._failure(
                ApiErrorCode.NETWORK_ERROR,
                f"Connection error: {e}",
                start_time,
                path=path,
            )
        except httpx.HTTPError as e:
            return self._failure(
                ApiErrorCode.NETWORK_ERROR,
                f"HTTP error: {e}",
                start_time,
                path=path,
            )

        response_time_ms = self._elapsed_ms(start_time)
        status_code = response.status_code

        if 200 <= status_code < 300:
            payload = None
            if response.content:
                try:
                    payload = response.json()
                except ValueError as e:
                    if expect_json:
                        return ApiResponse(
                            ok=False,
                            http_status_code=status_code,
                            error=ApiError(
                                code=ApiErrorCode.PARSE_ERROR,
                                message=f"Failed to parse response: {e}",
                                http_status_code=status_code,
                            ),
                            response_time_ms=response_time_ms,
                        )
            elif expect_json:
                return ApiResponse(
                    ok=False,
                    http_status_code=status_code,
                    error=ApiError(
                        code=ApiErrorCode.PARSE_ERROR,
                        message="Empty response body",
                        http_status_code=status_code,
                    ),
                    response_time_ms=response_time_ms,
                )
            return ApiResponse(
                ok=True,
                http_status_code=status_code,
                payload=payload,
                response_time_ms=response_time_ms,
            )

        if status_code in (401, 403):
            code = ApiErrorCode.UNAUTHORIZED
            message = "Invalid API key" if status_code == 401 else "Forbidden"
        elif status_code == 429:
            code = ApiErrorCode.RATE_LIMITED
            message = "Rate limited by VirusTotal"
        elif status_code >= 500:
            code = ApiErrorCode.SERVER_ERROR
            message = f"VirusTotal server error: {status_code}"
        else:
            code = ApiErrorCode.UNEXPECTED_STATUS
            message = f"Unexpected HTTP status: {status_code}"

        self._log_debug(
            "Request failed",
            {"method": method, "path": path, "http_status_code": status_code},
        )
        return ApiResponse(
            ok=False,
            http_status_code=status_code,
            error=ApiError(code=code, message=message, http_status_code=status_code),
            response_time_ms=response_time_ms,
        )

    def _failure(
        self,
        code: ApiErrorCode,
        message: str,
        start_time: float,
        path: str,
    ) -> ApiResponse:
        self._log_debug("Request error", {"path": path, "error_code": code.value, "message": message})
        return ApiResponse(
            ok=False,
            http_status_code=0,
            error=ApiError(code=code, message=message),
            response_time_ms=self._elapsed_ms(start_time),
        )

    async def lookup_url(self, url: str) -> LookupResponse:
        """
        Fetch the analysis report for a URL.

        A 404 means VirusTotal has never seen the URL and maps to
        `LookupStatus.NOT_FOUND`; any other failure maps to `ERROR`.
        """
        response = await self._request("GET", f"/urls/{self.url_id(url)}")

        if response.ok:
            return LookupResponse(
                status=LookupStatus.FOUND,
                http_status_code=response.http_status_code,
                payload=response.payload,
                response_time_ms=response.response_time_ms,
            )

        if response.http_status_code == 404:
            return LookupResponse(
                status=LookupStatus.NOT_FOUND,
                http_status_code=404,
                response_time_ms=response.response_time_ms,
            )

        return LookupResponse(
            status=LookupStatus.ERROR,
            http_status_code=response.http_status_code,
            error=response.error,
            response_time_ms=response.response_time_ms,
        )

    async def submit_url(self, url: str) -> ApiResponse:
        """Submit a URL for first-time analysis (form-encoded `url=`)."""
        return await self._request("POST", "/urls", expect_json=False, data={"url": url})

    async def get_current_user(self) -> ApiResponse:
        """Fetch the account record, including `privileges.level`."""
        return await self._request("GET", "/users/current")

    async def create_collection(self, name: str, description: str) -> ApiResponse:
        body = {
            "data": {
                "attributes": {"name": name, "description": description},
                "type": "collection",
            }
        }
        return await self._request("POST", "/intelligence/collections", json=body)

    async def add_to_collection(
        self,
        collection_id: str,
        item: str,
        item_type: ItemType = ItemType.URL,
    ) -> ApiResponse:
        """
        Add a URL or file to a remote collection.

        Files are referenced by `id` (their hash), URLs by `url`.
        """
        if item_type is ItemType.FILE:
            path = f"/intelligence/collections/{collection_id}/files"
            entry = {"type": "file", "id": item}
        else:
            path = f"/intelligence/collections/{collection_id}/urls"
            entry = {"type": "url", "url": item}
        return await self._request("POST", path, expect_json=False, json={"data": [entry]})

    async def create_graph(self, name: str, description: str) -> ApiResponse:
        body = {
            "data": {
                "attributes": {"name": name, "description": description},
                "type": "graph",
            }
        }
        return await self._request("POST", "/intelligence/graphs", json=body)

    async def add_relationship(
        self,
        graph_id: str,
        source: str,
        target: str,
        relationship_type: str,
    ) -> ApiResponse:
        body = {
            "data": [{
                "type": "relationship",
                "attributes": {
                    "source_type": "url",
                    "source_url": source,
                    "target_type": "url",
                    "target_url": target,
                    "relationship_type": relationship_type,
                },
            }]
        }
        return await self._request(
            "POST",
            f"/intelligence/graphs/{graph_id}/relationships",
            expect_json=False,
            json=body,
        )

    async def test_connection(self) -> ApiResponse:
        """Probe the API with a known URL id to validate the key."""
        return await self._request("GET", f"/urls/{CONNECTION_TEST_URL_ID}", expect_json=False)

    def _elapsed_ms(self, start_time: float) -> float:
        """Calculate elapsed time in milliseconds."""
        return (time.perf_counter() - start_time) * 1000

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
