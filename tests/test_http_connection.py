"""Tests for the HTTP request/response connection cycle."""

import asyncio
import json

import aiohttp
import pytest
import pytest_asyncio

from conn_load_tools.core.load_test_core import (
    ConnectionState,
    HttpConnection,
    TransportKind,
    create_connection,
)
from conn_load_tools.core.load_test_feed import DataRow

from conftest import wait_until


@pytest_asyncio.fixture
async def session():
    async with aiohttp.ClientSession() as client_session:
        yield client_session


async def finish(conn):
    await wait_until(lambda: conn._task is not None and conn._task.done())


@pytest.mark.asyncio
async def test_success_completes_without_retry(endpoint, recording_stats, session):
    conn = HttpConnection(1, endpoint.http_url('/http/ok'), recording_stats, session, retry_delay=0.05)
    conn.connect()
    await finish(conn)
    await asyncio.sleep(0.1)

    assert recording_stats.types() == ['attempt', 'open', 'close']
    assert conn.last_status == 200
    assert conn.is_connected()
    assert conn.state is ConnectionState.CLOSED
    assert not conn.retry_pending


@pytest.mark.asyncio
async def test_error_status_reports_error_and_retries(endpoint, recording_stats, session):
    conn = HttpConnection(2, endpoint.http_url('/http/fail'), recording_stats, session, retry_delay=0.05)
    conn.connect()

    await wait_until(lambda: recording_stats.count('attempt') >= 2)
    conn.close()
    await finish(conn)

    types = recording_stats.types()
    assert types[:4] == ['attempt', 'error', 'close', 'attempt']
    assert 'open' not in types
    assert conn.last_status == 500
    assert not conn.is_connected()


@pytest.mark.asyncio
async def test_refused_request_reports_error_and_close(recording_stats, session, unused_tcp_port):
    conn = HttpConnection(3, f"http://127.0.0.1:{unused_tcp_port}/", recording_stats, session, retry_delay=10)
    conn.connect()
    await finish(conn)

    assert recording_stats.types() == ['attempt', 'error', 'close']
    assert conn.last_status is None
    assert conn.retry_pending
    conn.close()
    assert not conn.retry_pending


@pytest.mark.asyncio
async def test_post_sends_row_as_json(endpoint, recording_stats, session):
    row = DataRow({'user_id': 9, 'level': 1})
    conn = HttpConnection(4, endpoint.http_url('/http/echo'), recording_stats, session,
                          method='post', row=row)
    conn.connect()
    await finish(conn)

    method, _, body = endpoint.requests[0]
    assert method == 'POST'
    assert json.loads(body) == {'user_id': '9', 'level': '1'}


@pytest.mark.asyncio
async def test_get_sends_no_body(endpoint, recording_stats, session):
    row = DataRow({'user_id': 9, 'level': 1})
    conn = HttpConnection(5, endpoint.http_url('/http/echo?u=9'), recording_stats, session, row=row)
    conn.connect()
    await finish(conn)

    assert endpoint.requests == [('GET', '/http/echo?u=9', '')]


@pytest.mark.asyncio
async def test_post_without_row_sends_no_body(endpoint, recording_stats, session):
    conn = HttpConnection(6, endpoint.http_url('/http/echo'), recording_stats, session, method='PUT')
    conn.connect()
    await finish(conn)

    assert endpoint.requests == [('PUT', '/http/echo', '')]


@pytest.mark.asyncio
async def test_close_during_request_prevents_retry(endpoint, recording_stats, session):
    conn = HttpConnection(7, endpoint.http_url('/http/slow?status=500'), recording_stats, session,
                          retry_delay=0.05)
    conn.connect()
    await asyncio.sleep(0.05)
    conn.close()

    await finish(conn)
    await asyncio.sleep(0.1)

    assert recording_stats.types() == ['attempt', 'error', 'close']
    assert not conn.retry_pending
    assert conn.state is ConnectionState.SHUT_DOWN


@pytest.mark.asyncio
async def test_timeout_is_an_error(endpoint, recording_stats, session):
    conn = HttpConnection(8, endpoint.http_url('/http/slow'), recording_stats, session,
                          retry_delay=10, timeout=0.05)
    conn.connect()
    await finish(conn)

    assert recording_stats.types() == ['attempt', 'error', 'close']
    conn.close()


def test_factory_requires_session_for_http(recording_stats):
    with pytest.raises(ValueError):
        create_connection(TransportKind.HTTP, 1, 'http://h/', recording_stats)
    ws = create_connection(TransportKind.WEBSOCKET, 1, 'ws://h/', recording_stats)
    assert ws.transport_kind is TransportKind.WEBSOCKET
