"""
Async HTTP client for probe and documentation requests, with bounded retries and optional rate limiting.
"""

import asyncio
import random
import ssl
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import aiohttp
from aiohttp import ClientSession, ClientTimeout, TCPConnector

from .exceptions import ProbeNetworkError, ProbeTimeoutError
from .utils import setup_logging, normalize_url

logger = setup_logging("http_client")


@dataclass
class HTTPResponse:
    """Standardized HTTP response container."""

    url: str
    status: int
    headers: Dict[str, str]
    body: str
    elapsed: float
    redirects: List[str] = field(default_factory=list)
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400

    @property
    def length(self) -> int:
        return len(self.body)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "status": self.status,
            "headers": self.headers,
            "body_length": self.length,
            "elapsed": self.elapsed,
            "redirects": self.redirects,
            "attempts": self.attempts,
        }


class RateLimiter:
    """Token bucket rate limiter."""

    def __init__(self, rate: float, burst: int = 1):
        self.rate = rate  # requests per second
        self.burst = burst
        self.tokens = burst
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_update
            self.tokens = min(self.burst, self.tokens + elapsed * self.rate)
            self.last_update = now

            if self.tokens < 1:
                wait_time = (1 - self.tokens) / self.rate
                await asyncio.sleep(wait_time)
                self.tokens = 0
            else:
                self.tokens -= 1


# Connection-level failures worth another attempt (reset, refused, DNS).
TRANSIENT_ERRORS = (aiohttp.ClientConnectionError,)


class AsyncHTTPClient:
    """
    Async HTTP client used for probes and documentation fetches.

    Features:
    - Async with aiohttp
    - Optional token-bucket rate limiting
    - Proxy support (Burp/Caido)
    - Per-request timeout, reported as ProbeTimeoutError and never retried
    - Transient connection errors retried with exponential backoff, then
      reported as ProbeNetworkError
    - Redirect policy
    """

    DEFAULT_HEADERS = {
        "User-Agent": "specprobe/1.0",
        "Accept": "application/json, text/plain, */*",
        "Accept-Encoding": "gzip, deflate",
    }

    def __init__(
        self,
        proxy: Optional[str] = None,
        timeout: float = 30,
        rate_limit: Optional[float] = None,
        burst: Optional[int] = None,
        max_retries: int = 3,
        verify_ssl: bool = False,
        follow_redirects: bool = True,
        max_redirects: int = 5,
        headers: Optional[Dict[str, str]] = None,
        backoff_base: float = 1.0,
    ):
        self.proxy = proxy
        self.timeout = timeout
        self.rate_limiter = (
            RateLimiter(rate_limit, burst=burst or max(1, int(rate_limit))) if rate_limit else None
        )
        self.max_retries = max_retries
        self.verify_ssl = verify_ssl
        self.follow_redirects = follow_redirects
        self.max_redirects = max_redirects
        self.backoff_base = backoff_base

        self.default_headers = dict(self.DEFAULT_HEADERS)
        if headers:
            self.default_headers.update(headers)

        self._session: Optional[ClientSession] = None
        self._request_count = 0

    @classmethod
    def from_config(cls, dast, backoff_base: float = 1.0) -> "AsyncHTTPClient":
        """Build a client from a DASTConfig."""
        return cls(
            proxy=dast.proxy,
            timeout=dast.timeout_seconds,
            rate_limit=dast.requests_per_second,
            burst=dast.burst_size,
            max_retries=dast.max_retries,
            verify_ssl=dast.verify_ssl,
            follow_redirects=dast.follow_redirects,
            headers=dict(dast.custom_headers),
            backoff_base=backoff_base,
        )

    def _get_headers(self, custom_headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Build request headers. Per-request headers win over defaults."""
        headers = self.default_headers.copy()
        if custom_headers:
            headers.update(custom_headers)
        return headers

    async def _create_session(self) -> ClientSession:
        """Create aiohttp session with configured settings."""
        ssl_context = None
        if not self.verify_ssl:
            ssl_context = ssl.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        connector = TCPConnector(
            ssl=ssl_context,
            limit=100,
            limit_per_host=20,
        )

        return ClientSession(
            connector=connector,
            timeout=ClientTimeout(total=self.timeout),
            trust_env=True,
        )

    async def __aenter__(self):
        self._session = await self._create_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._session:
            await self._session.close()
            self._session = None

    def _backoff(self, attempt: int) -> float:
        return self.backoff_base * ((2**attempt) + random.uniform(0, 1))

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Union[str, Dict, bytes]] = None,
        json: Optional[Any] = None,
        allow_redirects: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> HTTPResponse:
        """
        Make an HTTP request with retry logic and rate limiting.

        Args:
            method: HTTP method (GET, POST, etc.)
            url: Target URL
            headers: Per-request headers, merged over the defaults
            params: Query parameters
            data: Request body (form data or raw)
            json: JSON body
            allow_redirects: Override redirect behavior
            timeout: Override the client timeout, in seconds

        Returns:
            HTTPResponse object

        Raises:
            ProbeTimeoutError: the request exceeded its timeout
            ProbeNetworkError: transport failure after all retries
        """
        url = normalize_url(url)
        request_headers = self._get_headers(headers)
        request_timeout = self.timeout if timeout is None else timeout

        if allow_redirects is None:
            allow_redirects = self.follow_redirects

        attempts = 0
        last_error = None

        for attempt in range(self.max_retries + 1):
            attempts = attempt + 1
            try:
                if self.rate_limiter:
                    await self.rate_limiter.acquire()

                start_time = time.monotonic()

                # Create session if needed
                if not self._session:
                    self._session = await self._create_session()

                async with self._session.request(
                    method=method.upper(),
                    url=url,
                    headers=request_headers,
                    params=params,
                    data=data,
                    json=json,
                    proxy=self.proxy,
                    allow_redirects=allow_redirects,
                    max_redirects=self.max_redirects,
                    timeout=ClientTimeout(total=request_timeout),
                ) as response:
                    body = await response.text(errors="replace")
                    elapsed = time.monotonic() - start_time

                    redirects = [str(r.url) for r in response.history]
                    self._request_count += 1

                    return HTTPResponse(
                        url=str(response.url),
                        status=response.status,
                        headers=dict(response.headers),
                        body=body,
                        elapsed=elapsed,
                        redirects=redirects,
                        attempts=attempts,
                    )

            except asyncio.TimeoutError:
                logger.debug(f"Timeout after {request_timeout}s: {method.upper()} {url}")
                raise ProbeTimeoutError(request_timeout)

            except TRANSIENT_ERRORS as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"Connection error on attempt {attempts}/{self.max_retries + 1}: {e}")

            except aiohttp.ClientError as e:
                raise ProbeNetworkError(f"{type(e).__name__}: {e}", attempts=attempts) from e

            # Exponential backoff
            if attempt < self.max_retries:
                await asyncio.sleep(self._backoff(attempt))

        raise ProbeNetworkError(last_error or "request failed", attempts=attempts)

    async def get(self, url: str, **kwargs) -> HTTPResponse:
        """GET request."""
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> HTTPResponse:
        """POST request."""
        return await self.request("POST", url, **kwargs)

    @property
    def request_count(self) -> int:
        """Get total request count."""
        return self._request_count
