#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
压测核心模块
提供连接模拟、连接群管理、统计聚合等可复用功能
"""

from .load_test_core import (
    BaseConnection,
    ConnectionEvent,
    ConnectionState,
    EventType,
    HttpConnection,
    TransportKind,
    WebSocketConnection,
    create_connection,
)
from .load_test_config import TlsConfig, build_config, load_config, merge_config, validate_config
from .load_test_errors import (
    ConfigurationError,
    ConnectionAttemptError,
    DataFeedError,
    LoadTestError,
    MetricsSinkError,
)
from .load_test_feed import DataRow, MemoryDataFeed, RedisDataFeed, create_data_feed
from .load_test_loader import read_csv_rows, run_data_loader, store_rows
from .load_test_logger import setup_logging
from .load_test_runner import (
    CreationMode,
    PopulationManager,
    PopulationPolicy,
    compute_target_count,
    run_load_runner,
)
from .load_test_sink import InfluxMetricsSink
from .load_test_stats import MetricRecord, RingBuffer, StatsAggregator
from .load_test_template import TemplateResolver, resolve_url

__all__ = [
    'BaseConnection',
    'ConnectionEvent',
    'ConnectionState',
    'EventType',
    'HttpConnection',
    'TransportKind',
    'WebSocketConnection',
    'create_connection',
    'TlsConfig',
    'build_config',
    'load_config',
    'merge_config',
    'validate_config',
    'ConfigurationError',
    'ConnectionAttemptError',
    'DataFeedError',
    'LoadTestError',
    'MetricsSinkError',
    'DataRow',
    'MemoryDataFeed',
    'RedisDataFeed',
    'create_data_feed',
    'read_csv_rows',
    'run_data_loader',
    'store_rows',
    'setup_logging',
    'CreationMode',
    'PopulationManager',
    'PopulationPolicy',
    'compute_target_count',
    'run_load_runner',
    'InfluxMetricsSink',
    'MetricRecord',
    'RingBuffer',
    'StatsAggregator',
    'TemplateResolver',
    'resolve_url',
]
