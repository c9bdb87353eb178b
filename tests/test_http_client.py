"""Tests for AsyncHTTPClient against a local aiohttp server.

Tests cover:
- Successful requests and header precedence
- Timeouts reported without retrying
- Connection errors retried, then reported with the attempt count
- Redirect policy
"""

import asyncio
import time

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer, unused_port

from core.exceptions import ProbeNetworkError, ProbeTimeoutError
from core.http_client import AsyncHTTPClient, RateLimiter


@pytest.fixture(autouse=True)
def no_proxy_env(monkeypatch):
    for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def hits():
    return {"slow": 0}


@pytest.fixture
def app(hits):
    async def echo(request):
        return web.json_response(
            {"scan": request.headers.get("X-Scan"), "agent": request.headers.get("User-Agent"), "q": request.query.get("q")}
        )

    async def slow(request):
        hits["slow"] += 1
        await asyncio.sleep(2)
        return web.Response(text="late")

    async def redirect(request):
        raise web.HTTPFound("/echo")

    application = web.Application()
    application.router.add_get("/echo", echo)
    application.router.add_get("/slow", slow)
    application.router.add_get("/redirect", redirect)
    return application


class TestAsyncHTTPClient:
    """Request outcomes."""

    async def test_success_and_header_precedence(self, app) -> None:
        async with TestServer(app) as server:
            async with AsyncHTTPClient(headers={"X-Scan": "default"}, max_retries=0) as client:
                response = await client.get(
                    str(server.make_url("/echo")), headers={"X-Scan": "override"}, params={"q": "x"}
                )

        assert response.status == 200
        assert response.attempts == 1
        assert response.ok
        assert '"scan": "override"' in response.body
        assert '"agent": "specprobe/1.0"' in response.body
        assert '"q": "x"' in response.body
        assert client.request_count == 1

    async def test_timeout_is_not_retried(self, app, hits) -> None:
        async with TestServer(app) as server:
            async with AsyncHTTPClient(max_retries=3, backoff_base=0) as client:
                with pytest.raises(ProbeTimeoutError) as exc_info:
                    await client.get(str(server.make_url("/slow")), timeout=0.2)

        assert exc_info.value.timeout == 0.2
        assert hits["slow"] == 1

    async def test_connection_error_retried(self) -> None:
        url = f"http://127.0.0.1:{unused_port()}/nothing"
        async with AsyncHTTPClient(max_retries=2, backoff_base=0) as client:
            with pytest.raises(ProbeNetworkError) as exc_info:
                await client.get(url)
        assert exc_info.value.attempts == 3

    async def test_redirect_policy(self, app) -> None:
        async with TestServer(app) as server:
            url = str(server.make_url("/redirect"))
            async with AsyncHTTPClient(max_retries=0) as client:
                followed = await client.get(url)
                held = await client.get(url, allow_redirects=False)

        assert followed.status == 200
        assert len(followed.redirects) == 1
        assert held.status == 302


class TestRateLimiter:
    """Token bucket."""

    async def test_burst_then_wait(self) -> None:
        limiter = RateLimiter(rate=20, burst=2)
        start = time.monotonic()
        for _ in range(3):
            await limiter.acquire()
        assert time.monotonic() - start >= 0.03
