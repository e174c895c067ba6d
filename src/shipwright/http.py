"""Shared async HTTP plumbing for the tracker and code-hosting clients.

ApiClient owns an httpx.AsyncClient and a request loop that retries
transient failures with exponential backoff plus jitter:

- 408/429/500/502/503/504 responses are retried
- Retry-After and X-RateLimit-Reset headers stretch the delay, capped
- timeouts and connection errors are retried
- other 4xx/5xx responses raise immediately

Subclasses provide authentication headers and the error class to raise.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional, Type

import httpx

from src.shipwright.errors import ErrorCategory, ShipwrightError, TRANSIENT_STATUS_CODES
from src.shipwright.retry import compute_backoff


logger = logging.getLogger(__name__)


class ApiError(ShipwrightError):
    """Raised when a remote API request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response.
        response_body: Response body returned by the API.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        category = None
        if status_code is None or status_code in TRANSIENT_STATUS_CODES:
            category = ErrorCategory.TRANSIENT
        super().__init__(message, category)


class RateLimitError(ApiError):
    """Raised when the API keeps rate limiting after all retries.

    Attributes:
        retry_after: Seconds the API asked us to wait.
    """

    def __init__(self, message: str, retry_after: Optional[int] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ApiClient:
    """Base async API client with retry logic.

    Attributes:
        base_url: Base URL all request paths are relative to.
        max_retries: Maximum number of retry attempts for transient failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.
    """

    # HTTP status codes that should trigger a retry
    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    service_name = "API"
    error_class: Type[ApiError] = ApiError

    def __init__(
        self,
        base_url: str,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                auth=self._auth(),
                timeout=self.timeout,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json", "User-Agent": "Shipwright/0.1"}

    def _auth(self) -> Optional[httpx.Auth]:
        return None

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _calculate_backoff(self, attempt: int, response: Optional[httpx.Response] = None) -> float:
        """Calculate the delay before the next attempt.

        Honors Retry-After (seconds) or X-RateLimit-Reset (epoch seconds)
        when present, never exceeding max_delay.
        """
        delay = compute_backoff(attempt, self.base_delay, self.max_delay)
        if response is not None:
            hinted = self._retry_after(response)
            if hinted is not None:
                delay = max(delay, min(float(hinted), self.max_delay))
        return delay

    def _retry_after(self, response: httpx.Response) -> Optional[int]:
        retry_after = _parse_int_header(response.headers, "retry-after")
        if retry_after is not None:
            return max(0, retry_after)
        reset_at = _parse_int_header(response.headers, "x-ratelimit-reset")
        if reset_at is not None:
            return max(0, reset_at - int(time.time()))
        return None

    def _is_rate_limited(self, response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code == 403:
            remaining = _parse_int_header(response.headers, "x-ratelimit-remaining")
            return remaining == 0
        return False

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        follow_redirects: bool = False,
    ) -> httpx.Response:
        """Make an HTTP request with retry logic.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE, PATCH).
            path: API path relative to base_url.
            json_data: Optional JSON body for the request.
            params: Optional query parameters.
            follow_redirects: Whether redirects are followed.

        Returns:
            The successful HTTP response.

        Raises:
            ApiError: If the request fails after all retries (subclass
                chosen by error_class).
            RateLimitError: If the API is still rate limiting after retries.
        """
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(
                    method=method,
                    url=path,
                    json=json_data,
                    params=params,
                    follow_redirects=follow_redirects,
                )
            except httpx.RequestError as e:
                last_exception = e
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        f"Request error from {self.service_name}, retrying",
                        extra={
                            "error": str(e),
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                    continue
                break

            rate_limited = self._is_rate_limited(response)
            if rate_limited or response.status_code in self.RETRYABLE_STATUS_CODES:
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt, response)
                    logger.warning(
                        f"Retryable error from {self.service_name}",
                        extra={
                            "status_code": response.status_code,
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                    continue
                if rate_limited:
                    raise RateLimitError(
                        f"{self.service_name} rate limit exceeded",
                        retry_after=self._retry_after(response),
                        status_code=response.status_code,
                        response_body=response.text,
                        request_url=str(response.url),
                    )

            if response.status_code >= 400:
                error_body = response.text
                logger.error(
                    f"{self.service_name} error",
                    extra={
                        "status_code": response.status_code,
                        "path": path,
                        "method": method,
                        "response_body": error_body[:500],
                    },
                )
                raise self.error_class(
                    f"{self.service_name} error: {response.status_code} {method} {path}",
                    status_code=response.status_code,
                    response_body=error_body,
                    request_url=str(response.url),
                )

            return response

        logger.error(
            f"{self.service_name} request failed after all retries",
            extra={
                "path": path,
                "method": method,
                "max_retries": self.max_retries,
                "last_error": str(last_exception),
            },
        )
        raise self.error_class(
            f"{self.service_name} request failed after {self.max_retries} retries: "
            f"{last_exception}",
            request_url=f"{self.base_url}{path}",
        )


def _parse_int_header(headers: httpx.Headers, name: str) -> Optional[int]:
    value = headers.get(name)
    if value is not None:
        try:
            return int(value)
        except ValueError:
            pass
    return None
