"""Terminology server (Snowstorm) API client."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from refsync.adapters.snowstorm.errors import (
    RemoteCallFailed,
    RemoteConnectionError,
    SnowstormClientError,
    SnowstormRetryableError,
    extract_error_message,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping
    from typing import Self

    from refsync.config import TerminologyServerConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP status codes that should trigger a retry on idempotent calls
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
IDEMPOTENT_METHODS = {"GET", "HEAD", "PUT", "DELETE", "OPTIONS"}

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 30.0  # seconds
DEFAULT_JITTER = 0.1  # 10% jitter


@dataclass(frozen=True)
class RemoteResponse:
    """Status, headers and decoded body of one server call.

    ``body`` is the decoded JSON document when the server sent JSON, the
    text otherwise, and ``None`` for empty responses.
    """

    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def location(self) -> str | None:
        return self.header("Location")

    def expect(self, *expected: int, operation: str = "request") -> Self:
        """Return self when the status is one of ``expected``, else raise."""
        if self.status not in expected:
            raise RemoteCallFailed(
                self.status, extract_error_message(self.body), operation=operation
            )
        return self

    def json_dict(self) -> dict[str, Any]:
        return self.body if isinstance(self.body, dict) else {}


def _is_retryable_error(exc: Exception) -> bool:
    return isinstance(exc, SnowstormRetryableError)


def _calculate_delay(attempt: int, base_delay: float, max_delay: float, jitter: float) -> float:
    """Exponential backoff with jitter for the given 0-indexed attempt."""
    delay = min(base_delay * (2**attempt), max_delay)
    return delay + delay * jitter * random.random()


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: float = DEFAULT_JITTER,
    operation_name: str = "operation",
) -> T:
    """Execute an async function, retrying retryable status responses.

    Args:
        func: Async function to execute
        max_retries: Maximum number of retry attempts
        base_delay: Base delay between retries in seconds
        max_delay: Maximum delay between retries
        jitter: Random jitter factor to add to delay
        operation_name: Name of operation for logging

    Raises:
        RemoteCallFailed: A retryable status outlived the retries
    """
    for attempt in range(max_retries + 1):
        try:
            return await func()
        except Exception as e:
            if not _is_retryable_error(e):
                raise

            if attempt == max_retries:
                logger.error(
                    "snowstorm_retry_exhausted",
                    extra={
                        "operation": operation_name,
                        "attempts": attempt + 1,
                        "error": str(e),
                    },
                )
                raise RemoteCallFailed(
                    e.status_code or 0, str(e), operation=operation_name
                ) from e

            delay = _calculate_delay(attempt, base_delay, max_delay, jitter)
            logger.warning(
                "snowstorm_retry_attempt",
                extra={
                    "operation": operation_name,
                    "attempt": attempt + 1,
                    "max_retries": max_retries,
                    "delay_seconds": round(delay, 2),
                    "error": str(e),
                },
            )
            await asyncio.sleep(delay)

    msg = f"{operation_name} failed"
    raise SnowstormClientError(msg)


class SnowstormClient:
    """Async HTTP client for the terminology server REST API.

    Paths are relative to ``base_url`` (``MAIN/SNOMEDCT-XX/members``) or
    absolute URLs, as handed out in ``Location`` headers.
    """

    # Per-operation timeouts (seconds); anything else uses ``timeout``
    DEFAULT_TIMEOUTS: dict[str, float] = {
        "concept_search": 120.0,
        "member_search": 120.0,
        "member_page": 120.0,
        "ecl_page": 120.0,
        "download_export": 600.0,
        "branch_exists": 15.0,
        "job_status": 15.0,
    }

    def __init__(
        self,
        base_url: str,
        *,
        accept_language: str = "en",
        username: str = "",
        password: str = "",
        timeout: float = 60.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_BASE_DELAY,
        retry_max_delay: float = DEFAULT_MAX_DELAY,
        max_connections: int = 50,
        endpoint_timeouts: dict[str, float] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.accept_language = accept_language
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.max_connections = max_connections
        self.endpoint_timeouts = {**self.DEFAULT_TIMEOUTS}
        if endpoint_timeouts:
            self.endpoint_timeouts.update(endpoint_timeouts)
        self._auth = httpx.BasicAuth(username, password) if username and password else None
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(
        cls, config: TerminologyServerConfig, *, transport: httpx.AsyncBaseTransport | None = None
    ) -> SnowstormClient:
        return cls(
            config.base_url,
            accept_language=config.accept_language,
            username=config.username,
            password=config.password,
            timeout=config.timeout_sec,
            max_retries=config.max_retries,
            retry_base_delay=config.retry_base_delay,
            retry_max_delay=config.retry_max_delay,
            max_connections=config.max_connections,
            transport=transport,
        )

    def get_timeout(self, operation: str) -> float:
        return self.endpoint_timeouts.get(operation, self.timeout)

    async def __aenter__(self) -> Self:
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Accept": "application/json",
                "Accept-Language": self.accept_language,
                "Content-Type": "application/json",
            },
            auth=self._auth,
            timeout=self.timeout,
            limits=httpx.Limits(max_connections=self.max_connections),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            msg = "Client not initialized. Use async context manager."
            raise SnowstormClientError(msg)
        return self._client

    async def _with_retry(self, func: Callable[[], Awaitable[T]], operation_name: str) -> T:
        return await retry_with_backoff(
            func,
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            operation_name=operation_name,
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        operation: str = "request",
    ) -> RemoteResponse:
        """Send one call and return its response without judging the status.

        Retryable statuses on idempotent methods are retried with backoff.
        Transport failures are never retried and raise RemoteConnectionError
        on the first occurrence; every other outcome is returned to the caller.
        """
        method = method.upper()
        idempotent = method in IDEMPOTENT_METHODS
        timeout = self.get_timeout(operation)
        clean_params = {k: v for k, v in (params or {}).items() if v is not None}

        async def _send() -> RemoteResponse:
            try:
                response = await self.client.request(
                    method, path, params=clean_params, json=json, timeout=timeout
                )
            except httpx.TransportError as exc:
                msg = f"{operation} transport failure: {exc}"
                raise RemoteConnectionError(msg) from exc

            logger.debug(
                "snowstorm_request",
                extra={
                    "operation": operation,
                    "method": method,
                    "url": str(response.request.url),
                    "status": response.status_code,
                },
            )
            if idempotent and response.status_code in RETRYABLE_STATUS_CODES:
                msg = f"{operation} returned {response.status_code}"
                raise SnowstormRetryableError(msg, status_code=response.status_code)
            return RemoteResponse(
                status=response.status_code,
                headers=dict(response.headers),
                body=_decode_body(response),
            )

        return await self._with_retry(_send, operation)

    async def get(self, path: str, **kwargs: Any) -> RemoteResponse:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> RemoteResponse:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> RemoteResponse:
        return await self.request("PUT", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> RemoteResponse:
        return await self.request("DELETE", path, **kwargs)

    async def download(self, url: str, destination: str | Path) -> int:
        """Stream ``url`` into ``destination``; returns the number of bytes written."""
        target = Path(destination)
        target.parent.mkdir(parents=True, exist_ok=True)
        timeout = self.get_timeout("download_export")

        written = 0
        try:
            async with self.client.stream(
                "GET", url, headers={"Accept": "application/zip"}, timeout=timeout
            ) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise RemoteCallFailed(
                        response.status_code,
                        extract_error_message(body),
                        operation="download_export",
                    )
                with target.open("wb") as handle:
                    async for chunk in response.aiter_bytes():
                        handle.write(chunk)
                        written += len(chunk)
        except httpx.TransportError as exc:
            msg = f"download_export transport failure: {exc}"
            raise RemoteConnectionError(msg) from exc

        logger.info("snowstorm_export_downloaded", extra={"path": str(target), "bytes": written})
        return written


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text
