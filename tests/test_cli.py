"""Tests for the command line entry point."""

import asyncio
import logging

import pytest
from fakeredis import FakeServer
from fakeredis import aioredis as fake_aioredis

from conn_load_tools.__main__ import build_parser, main
from conn_load_tools.core import load_test_loader
from conn_load_tools.core.load_test_feed import COUNT_KEY, DATA_KEY
from conn_load_tools.core.load_test_logger import LOGGER_NAME

ENV_NAMES = ('WS_URL', 'HTTP_URL', 'REDIS_URL', 'DATA_SOURCE', 'CSV_PATH', 'TEST_MODE',
             'INFLUX_URL', 'INFLUX_TOKEN', 'INFLUX_ORG', 'INFLUX_BUCKET', 'LOG_LEVEL')


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


def test_run_arguments_map_to_config_keys():
    args = build_parser().parse_args([
        'run', '--mode', 'http', '--http-url', 'http://h/', '--connections', '5',
        '--connection-mode', 'progressive', '--rate', '3', '--duration', '30',
    ])
    assert args.command == 'run'
    assert args.test_mode == 'http'
    assert args.http_url == 'http://h/'
    assert args.num_connections == 5
    assert args.connection_mode == 'progressive'
    assert args.connection_rate == 3
    assert args.duration == 30


def test_run_with_incomplete_config_fails():
    assert main(['run', '--ws-url', 'ws://h/ws']) == 1


def test_load_data_requires_redis_address(tmp_path):
    csv_file = tmp_path / "rows.csv"
    csv_file.write_text("user_id,level\nu1,1\n", encoding='utf-8')
    assert main(['load-data', '--csv', str(csv_file)]) == 1


def test_load_data_missing_csv_fails(tmp_path, monkeypatch):
    server = FakeServer()
    monkeypatch.setattr(load_test_loader.aioredis, 'from_url',
                        lambda url, **kwargs: fake_aioredis.FakeRedis(server=server, **kwargs))
    code = main(['load-data', '--csv', str(tmp_path / "missing.csv"), '--data-source', 'redis://fake'])
    assert code == 1


def test_load_data_writes_rows(tmp_path, monkeypatch):
    server = FakeServer()
    monkeypatch.setattr(load_test_loader.aioredis, 'from_url',
                        lambda url, **kwargs: fake_aioredis.FakeRedis(server=server, **kwargs))
    csv_file = tmp_path / "rows.csv"
    csv_file.write_text("user_id,level\nu1,1\nu2,9\n", encoding='utf-8')

    code = main(['load-data', '--csv', str(csv_file),
                 '--data-source', 'redis://fake', '--data-level', '5'])
    assert code == 0

    client = fake_aioredis.FakeRedis(server=server, decode_responses=True)

    async def read_back():
        return await client.get(COUNT_KEY), await client.llen(DATA_KEY)

    assert asyncio.run(read_back()) == ('1', 1)
