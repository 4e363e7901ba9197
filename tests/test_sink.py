"""Tests for the buffered InfluxDB metrics sink."""

from datetime import datetime, timezone

import pytest

from conn_load_tools.core.load_test_errors import MetricsSinkError
from conn_load_tools.core.load_test_sink import InfluxMetricsSink
from conn_load_tools.core.load_test_stats import MetricRecord


class FakeWriteApi:
    def __init__(self, failures=0):
        self.batches = []
        self.failures = failures

    async def write(self, bucket, org, record):
        if self.failures > 0:
            self.failures -= 1
            raise OSError("influx unavailable")
        self.batches.append((bucket, org, list(record)))


class FakeInfluxClient:
    def __init__(self, write_api):
        self._write_api = write_api
        self.closed = False

    def write_api(self):
        return self._write_api

    async def close(self):
        self.closed = True


def make_sink(failures=0, max_buffer=100):
    api = FakeWriteApi(failures)
    client = FakeInfluxClient(api)
    sink = InfluxMetricsSink('http://influx:8086', 'token', 'org', 'bucket', 'runner-7',
                             max_buffer=max_buffer, client=client)
    return sink, api, client


def record(event_type='open', **fields):
    return MetricRecord('websocket_connections', event_type, fields or {'count': 1},
                        datetime(2024, 1, 1, tzinfo=timezone.utc))


def test_point_carries_run_and_event_tags():
    sink, _, _ = make_sink()
    line = sink.to_point(record('open', count=1, connect_time_ms=13)).to_line_protocol()

    assert line.startswith('websocket_connections,')
    assert 'runner_id=runner-7' in line
    assert 'event_type=open' in line
    assert 'connect_time_ms=13i' in line
    assert 'count=1i' in line


@pytest.mark.asyncio
async def test_flush_writes_one_batch():
    sink, api, _ = make_sink()
    sink.write(record())
    sink.write(record('close'))
    await sink.flush()

    assert len(api.batches) == 1
    bucket, org, points = api.batches[0]
    assert (bucket, org, len(points)) == ('bucket', 'org', 2)
    assert sink.pending == 0

    await sink.flush()
    assert len(api.batches) == 1


@pytest.mark.asyncio
async def test_failed_flush_keeps_points_for_retry():
    sink, api, _ = make_sink(failures=1)
    sink.write(record())

    with pytest.raises(MetricsSinkError):
        await sink.flush()
    assert sink.pending == 1

    sink.write(record('close'))
    await sink.flush()
    assert len(api.batches[0][2]) == 2


def test_buffer_overflow_drops_oldest():
    sink, _, _ = make_sink(max_buffer=2)
    for value in range(3):
        sink.write(record(count=value))
    assert sink.pending == 2


@pytest.mark.asyncio
async def test_close_flushes_and_closes_client():
    sink, api, client = make_sink()
    sink.write(record())
    await sink.close()
    assert len(api.batches) == 1
    assert client.closed


@pytest.mark.asyncio
async def test_close_survives_write_failure():
    sink, api, client = make_sink(failures=1)
    sink.write(record())
    await sink.close()
    assert api.batches == []
    assert sink.pending == 0
    assert client.closed
