"""
Shared pytest fixtures for conn_load_tools tests.
"""

import asyncio
from typing import List

import pytest
import pytest_asyncio
from aiohttp import WSCloseCode, web
from aiohttp.test_utils import TestServer
from fakeredis import FakeServer
from fakeredis import aioredis as fake_aioredis

from conn_load_tools.core.load_test_errors import MetricsSinkError


class RecordingStats:
    """Stands in for StatsAggregator: keeps every published ConnectionEvent."""

    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)

    def types(self, connection_id=None) -> List[str]:
        return [
            e.event_type.value for e in self.events
            if connection_id is None or e.connection_id == connection_id
        ]

    def count(self, event_type: str) -> int:
        return self.types().count(event_type)


class MemorySink:
    """In-memory metrics sink; can be told to fail the next N flushes."""

    def __init__(self, fail_flushes: int = 0):
        self.pending = []
        self.flushed = []
        self.flush_calls = 0
        self.close_calls = 0
        self.fail_flushes = fail_flushes

    def write(self, record):
        self.pending.append(record)

    async def flush(self):
        self.flush_calls += 1
        if self.fail_flushes > 0:
            self.fail_flushes -= 1
            raise MetricsSinkError("simulated write failure")
        self.flushed.extend(self.pending)
        self.pending = []

    async def close(self):
        self.close_calls += 1

    def records(self, event_type=None):
        everything = self.flushed + self.pending
        if event_type is None:
            return everything
        return [r for r in everything if r.event_type == event_type]


class Endpoint:
    """Local aiohttp server exposing WebSocket and HTTP routes for connection tests."""

    def __init__(self):
        self.server = None
        self.requests = []
        self.websockets = set()

    def http_url(self, path: str) -> str:
        return str(self.server.make_url(path))

    def ws_url(self, path: str) -> str:
        return self.http_url(path).replace('http://', 'ws://', 1)


def build_app(endpoint: Endpoint) -> web.Application:
    async def ws_hold(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        endpoint.websockets.add(ws)
        try:
            async for _ in ws:
                pass
        finally:
            endpoint.websockets.discard(ws)
        return ws

    async def ws_close_now(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.close()
        return ws

    async def ws_reject(request):
        return web.Response(status=403, text="forbidden")

    async def http_ok(request):
        return web.Response(text="ok")

    async def http_fail(request):
        return web.Response(status=500, text="boom")

    async def http_slow(request):
        await asyncio.sleep(0.3)
        return web.Response(status=int(request.query.get("status", "200")), text="late")

    async def http_echo(request):
        body = await request.text()
        endpoint.requests.append((request.method, request.path_qs, body))
        return web.json_response({"received": body}, status=int(request.query.get("status", "200")))

    async def close_websockets(app):
        for ws in list(endpoint.websockets):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"server shutdown")

    app = web.Application()
    app.router.add_get('/ws', ws_hold)
    app.router.add_get('/ws/close', ws_close_now)
    app.router.add_get('/ws/reject', ws_reject)
    app.router.add_get('/http/ok', http_ok)
    app.router.add_get('/http/fail', http_fail)
    app.router.add_get('/http/slow', http_slow)
    app.router.add_route('*', '/http/echo', http_echo)
    app.on_shutdown.append(close_websockets)
    return app


def make_redis():
    """Fresh in-memory Redis; nothing is shared between tests."""
    return fake_aioredis.FakeRedis(server=FakeServer(), decode_responses=True)


@pytest_asyncio.fixture
async def redis_client():
    client = make_redis()
    yield client
    await client.aclose()


@pytest.fixture
def recording_stats():
    return RecordingStats()


@pytest.fixture
def memory_sink():
    return MemorySink()


@pytest_asyncio.fixture
async def endpoint():
    ep = Endpoint()
    server = TestServer(build_app(ep))
    await server.start_server()
    ep.server = server
    yield ep
    await server.close()


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll until predicate() is truthy; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached before timeout")
        await asyncio.sleep(interval)
