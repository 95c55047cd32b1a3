"""Async HTTP client with timeouts, retries and traffic logging."""

from __future__ import annotations

import asyncio
import json
import random
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Mapping, Optional, Protocol, Tuple

import httpx

from api_logger import ApiTrafficLogger
from errors import UpstreamAPIError, UpstreamTimeoutError
from logging_config import ContextLogger

DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRIES = 3
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_CAP_SECONDS = 10.0
USER_AGENT = "Facebook-Ad-Library-Browser/1.0"
DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
}

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int) -> float:
    """Seconds to wait after the given failed attempt (1-based)."""

    return min(BACKOFF_BASE_SECONDS * 2 ** (attempt - 1), BACKOFF_CAP_SECONDS)


class RateLimiter:
    """Sliding-window limiter: at most ``max_requests`` per ``window`` seconds."""

    def __init__(
        self,
        max_requests: int = 5,
        window: float = 1.0,
        jitter_range: Tuple[float, float] = (0.05, 0.15),
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window = window
        self.jitter_range = jitter_range
        self._sleep = sleep
        self._clock = clock
        self._lock = asyncio.Lock()
        self._timestamps: Deque[float] = deque()

    async def acquire(self) -> None:
        """Wait until a request slot is free, then claim it."""

        while True:
            async with self._lock:
                now = self._clock()
                while self._timestamps and now - self._timestamps[0] >= self.window:
                    self._timestamps.popleft()
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    return
                wait_time = self.window - (now - self._timestamps[0])
            jitter = random.uniform(*self.jitter_range)
            await self._sleep(max(wait_time, 0.0) + jitter)


class HttpClientProtocol(Protocol):
    """What the API services need from an HTTP client."""

    async def get(
        self,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any: ...

    async def post(
        self,
        url: str,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any: ...


def _extract_query_params(url: httpx.URL) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    for key, value in url.params.multi_items():
        try:
            params[key] = json.loads(value)
        except ValueError:
            params[key] = value
    return params


class HttpClient:
    """JSON-over-HTTP client used for every upstream call.

    Each attempt is bounded by ``timeout`` seconds and logged to the API
    traffic sink. Transport failures, timeouts and 5xx responses are retried
    up to ``retries`` attempts in total, sleeping :func:`backoff_delay` between
    them. Error responses in the 4xx range are raised immediately.
    """

    def __init__(
        self,
        logger: ContextLogger,
        *,
        base_url: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        headers: Optional[Mapping[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[RateLimiter] = None,
        traffic_logger: Optional[ApiTrafficLogger] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if retries < 1:
            raise ValueError("retries must be at least 1")
        self._log = logger
        self._base_url = base_url
        self._timeout = timeout
        self._retries = retries
        self._headers = {**DEFAULT_HEADERS, "User-Agent": USER_AGENT, **(headers or {})}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, transport=transport)
        self._rate_limiter = rate_limiter
        self._traffic = traffic_logger or ApiTrafficLogger()
        self._sleep = sleep

    @property
    def retries(self) -> int:
        return self._retries

    @property
    def timeout(self) -> float:
        return self._timeout

    async def get(
        self,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        """GET ``url`` and return the decoded JSON body."""

        response = await self._request("GET", url, params=params, headers=headers)
        return response.json()

    async def post(
        self,
        url: str,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        """POST ``json`` to ``url`` and return the decoded JSON body."""

        response = await self._request("POST", url, body=json, headers=headers)
        return response.json()

    async def get_raw(
        self, url: str, headers: Optional[Mapping[str, str]] = None
    ) -> httpx.Response:
        """GET a non-JSON resource and return the whole response.

        Redirects are not followed. A 3xx comes back as is, with
        ``next_request`` pointing at the location, so the caller decides
        whether the target may be fetched.
        """

        return await self._request("GET", url, headers=headers, expect_json=False)

    async def aclose(self) -> None:
        """Close the underlying httpx client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _build_url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return f"{self._base_url}{path}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        expect_json: bool = True,
    ) -> httpx.Response:
        merged_headers = {**self._headers, **(headers or {})}
        last_error: Optional[BaseException] = None

        for attempt in range(1, self._retries + 1):
            request = self._client.build_request(
                method,
                self._build_url(url),
                params=params,
                json=body,
                headers=merged_headers,
            )
            request_url = str(request.url)
            if self._rate_limiter is not None:
                await self._rate_limiter.acquire()

            self._traffic.log_request(
                request_url,
                method=method,
                attempt=attempt,
                headers=merged_headers,
                body=body,
                query_params=_extract_query_params(request.url),
            )

            try:
                self._log.debug(
                    "Making request to %s", request_url, extra={"attempt": attempt}
                )
                response = await asyncio.wait_for(
                    self._client.send(request, follow_redirects=False), timeout=self._timeout
                )
                self._check_response(request_url, response, expect_json)
                self._log.debug("Request successful", extra={"url": request_url})
                return response
            except UpstreamAPIError as exc:
                self._traffic.log_error(request_url, exc)
                if not exc.retryable:
                    self._log.error(
                        "Request rejected by upstream: %s",
                        exc.upstream_message,
                        extra={"url": request_url, "status_code": exc.status_code},
                    )
                    raise
                last_error = exc
                self._log.warning(
                    "Request failed (attempt %s/%s): %s",
                    attempt,
                    self._retries,
                    exc.upstream_message,
                    extra={"url": request_url},
                )
            except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
                self._traffic.log_error(request_url, exc)
                last_error = UpstreamTimeoutError(
                    f"{method} request timed out after {self._timeout}s"
                )
                last_error.__cause__ = exc
                self._log.warning(
                    "Request timeout (attempt %s/%s)",
                    attempt,
                    self._retries,
                    extra={"url": request_url},
                )
            except httpx.TransportError as exc:
                self._traffic.log_error(request_url, exc)
                last_error = exc
                self._log.warning(
                    "Request failed (attempt %s/%s): %s",
                    attempt,
                    self._retries,
                    exc,
                    extra={"url": request_url},
                )

            if attempt < self._retries:
                await self._sleep(backoff_delay(attempt))

        if last_error is None:
            raise RuntimeError(f"{method} request failed without an error")
        self._log.error(
            "Request failed after %s attempts: %s",
            self._retries,
            last_error,
            extra={"url": self._build_url(url)},
        )
        raise last_error

    def _check_response(
        self, url: str, response: httpx.Response, expect_json: bool
    ) -> None:
        """Log the response and raise for error statuses."""

        if not expect_json:
            self._traffic.log_response(
                url,
                status_code=response.status_code,
                response={
                    "content_type": response.headers.get("content-type"),
                    "bytes": len(response.content),
                },
            )
            if response.is_error:
                raise UpstreamAPIError.from_payload(response.status_code, None)
            return

        try:
            payload = response.json()
        except ValueError:
            payload = {"error": {"message": response.text or f"HTTP {response.status_code}"}}
            self._traffic.log_response(url, status_code=response.status_code, response=payload)
            if response.is_error:
                raise UpstreamAPIError.from_payload(response.status_code, payload)
            raise UpstreamAPIError(
                status_code=response.status_code,
                code=None,
                message="Upstream returned a response that is not valid JSON",
            )

        self._traffic.log_response(url, status_code=response.status_code, response=payload)
        if response.is_error:
            raise UpstreamAPIError.from_payload(response.status_code, payload)
