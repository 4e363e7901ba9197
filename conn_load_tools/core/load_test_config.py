#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
配置管理模块
负责配置文件的加载、环境变量读取、验证和合并
"""

import os
import json
import random
import ssl
from typing import Dict, Any, Optional, Mapping

from .load_test_errors import ConfigurationError
from .load_test_logger import LOG_LEVELS

TEST_MODES = ('websocket', 'http')
CONNECTION_MODES = ('instant', 'progressive')

# 环境变量 -> (配置键, 类型)
ENV_MAPPING = {
    'TEST_MODE': ('test_mode', str),
    'WS_URL': ('ws_url', str),
    'HTTP_URL': ('http_url', str),
    'HTTP_METHOD': ('http_method', str),
    'NUM_CONNECTIONS': ('num_connections', int),
    'REDIS_URL': ('data_source', str),
    'DATA_SOURCE': ('data_source', str),
    'DATA_LEVEL': ('data_level', int),
    'CSV_PATH': ('csv_path', str),
    'INFLUX_URL': ('influx_url', str),
    'INFLUX_TOKEN': ('influx_token', str),
    'INFLUX_ORG': ('influx_org', str),
    'INFLUX_BUCKET': ('influx_bucket', str),
    'LOG_LEVEL': ('log_level', str),
    'RETRY_DELAY_MS': ('retry_delay_ms', int),
    'CONNECTION_MODE': ('connection_mode', str),
    'CONNECTION_RATE': ('connection_rate', int),
    'REPLICAS': ('replicas', int),
    'REJECT_UNAUTHORIZED': ('reject_unauthorized', bool),
    'RUNNER_ID': ('runner_id', str),
    'SHUTDOWN_GRACE_MS': ('shutdown_grace_ms', int),
    'STATS_FLUSH_INTERVAL_MS': ('stats_flush_interval_ms', int),
    'STATUS_INTERVAL': ('status_interval', int),
    'DURATION': ('duration', int),
}

INFLUX_KEYS = ('influx_url', 'influx_token', 'influx_org', 'influx_bucket')


class TlsConfig:
    """
    TLS 配置

    启动时构建一次 SSLContext，所有连接共用同一个实例
    """

    def __init__(self, reject_unauthorized: bool = True):
        self.reject_unauthorized = reject_unauthorized
        self.ssl_context = ssl.create_default_context()
        if not reject_unauthorized:
            self.ssl_context.check_hostname = False
            self.ssl_context.verify_mode = ssl.CERT_NONE

    def for_url(self, url: str) -> Optional[ssl.SSLContext]:
        """只有 wss:// 和 https:// 才需要 SSLContext"""
        if url.startswith(('wss://', 'https://')):
            return self.ssl_context
        return None

    def __repr__(self):
        return f"TlsConfig(reject_unauthorized={self.reject_unauthorized})"


def load_config(config_path: str) -> Dict:
    """
    加载配置文件

    Args:
        config_path: 配置文件路径

    Returns:
        配置字典，如果文件不存在则返回空字典

    Raises:
        ConfigurationError: 文件存在但无法解析时
    """
    if not config_path or not os.path.exists(config_path):
        return {}

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"无法读取配置文件 {config_path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigurationError(f"配置文件 {config_path} 顶层必须是 JSON 对象")
    return config


def _parse_bool(value: str) -> bool:
    return str(value).strip().lower() not in ('false', '0', 'no', 'off')


def load_env_config(environ: Optional[Mapping[str, str]] = None) -> Dict:
    """
    从环境变量读取配置

    Args:
        environ: 环境变量字典，默认为 os.environ

    Returns:
        只包含已设置变量的配置字典
    """
    if environ is None:
        environ = os.environ

    config = {}
    for env_name, (key, value_type) in ENV_MAPPING.items():
        raw = environ.get(env_name)
        if raw is None or raw == '':
            continue
        if value_type is bool:
            config[key] = _parse_bool(raw)
        elif value_type is int:
            try:
                config[key] = int(raw)
            except ValueError as e:
                raise ConfigurationError(f"环境变量 {env_name} 必须是整数: {raw!r}") from e
        else:
            config[key] = raw
    return config


def merge_config(
    file_config: Dict,
    cli_config: Dict,
    defaults: Dict
) -> Dict:
    """
    合并配置：默认值 -> 配置文件 -> 命令行参数

    值为 None 的项视为未设置，不会覆盖前面的值

    Args:
        file_config: 从配置文件读取的配置
        cli_config: 命令行参数（以及环境变量）配置
        defaults: 默认配置

    Returns:
        合并后的配置
    """
    merged = defaults.copy()
    merged.update({k: v for k, v in file_config.items() if v is not None})
    merged.update({k: v for k, v in cli_config.items() if v is not None})
    return merged


def get_default_config() -> Dict:
    """
    获取默认配置

    Returns:
        默认配置字典
    """
    return {
        'test_mode': 'websocket',
        'ws_url': None,
        'http_url': None,
        'http_method': 'GET',
        'num_connections': 100,
        'data_source': None,
        'data_level': 999,
        'csv_path': None,
        'influx_url': None,
        'influx_token': None,
        'influx_org': None,
        'influx_bucket': None,
        'log_level': 'info',
        'retry_delay_ms': 5000,
        'connection_mode': 'instant',
        'connection_rate': 10,
        'replicas': 3,
        'reject_unauthorized': True,
        'runner_id': None,
        'shutdown_grace_ms': 1000,
        'stats_flush_interval_ms': 5000,
        'status_interval': 30,
        'duration': None,
    }


def _require_int(config: Dict, key: str, minimum: int) -> int:
    value = config.get(key)
    if isinstance(value, bool):
        raise ConfigurationError(f"{key} 必须是整数")
    try:
        value = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{key} 必须是整数: {value!r}") from e
    if value < minimum:
        if minimum > 0:
            raise ConfigurationError(f"{key} 必须是正整数: {value}")
        raise ConfigurationError(f"{key} 不能为负数: {value}")
    return value


def validate_config(config: Dict, require_sink: bool = True) -> Dict:
    """
    验证配置完整性并规范化取值

    Args:
        config: 合并后的配置字典
        require_sink: 是否要求 InfluxDB 配置（数据加载器不需要）

    Returns:
        规范化后的新配置字典

    Raises:
        ConfigurationError: 当配置验证失败时
    """
    config = dict(config)

    test_mode = str(config.get('test_mode') or '').lower()
    if test_mode not in TEST_MODES:
        raise ConfigurationError(f"test_mode 必须是以下之一: {', '.join(TEST_MODES)}")
    config['test_mode'] = test_mode

    if require_sink:
        # 必需参数检查
        if test_mode == 'websocket' and not config.get('ws_url'):
            raise ConfigurationError("websocket 模式缺少必需参数: ws_url")
        if test_mode == 'http' and not config.get('http_url'):
            raise ConfigurationError("http 模式缺少必需参数: http_url")
        for key in INFLUX_KEYS:
            if not config.get(key):
                raise ConfigurationError(f"配置缺少必需参数: {key}")

    config['http_method'] = str(config.get('http_method') or 'GET').upper()

    connection_mode = str(config.get('connection_mode') or '').lower()
    if connection_mode not in CONNECTION_MODES:
        raise ConfigurationError(f"connection_mode 必须是以下之一: {', '.join(CONNECTION_MODES)}")
    config['connection_mode'] = connection_mode

    log_level = str(config.get('log_level') or '').lower()
    if log_level not in LOG_LEVELS:
        raise ConfigurationError(f"log_level 必须是以下之一: {', '.join(LOG_LEVELS)}")
    config['log_level'] = log_level

    config['num_connections'] = _require_int(config, 'num_connections', 1)
    config['connection_rate'] = _require_int(config, 'connection_rate', 1)
    config['replicas'] = _require_int(config, 'replicas', 1)
    config['retry_delay_ms'] = _require_int(config, 'retry_delay_ms', 0)
    config['data_level'] = _require_int(config, 'data_level', 0)
    config['shutdown_grace_ms'] = _require_int(config, 'shutdown_grace_ms', 0)
    config['stats_flush_interval_ms'] = _require_int(config, 'stats_flush_interval_ms', 1)
    config['status_interval'] = _require_int(config, 'status_interval', 1)
    if config.get('duration') is not None:
        config['duration'] = _require_int(config, 'duration', 1)

    reject = config.get('reject_unauthorized', True)
    config['reject_unauthorized'] = reject if isinstance(reject, bool) else _parse_bool(reject)

    if not config.get('runner_id'):
        config['runner_id'] = f"runner-{random.randint(0, 9999)}"

    return config


def build_config(
    config_path: Optional[str] = None,
    cli_config: Optional[Dict] = None,
    environ: Optional[Mapping[str, str]] = None,
    require_sink: bool = True
) -> Dict:
    """
    构建最终配置：默认值 -> 配置文件 -> 环境变量 -> 命令行参数

    Raises:
        ConfigurationError: 任一环节失败
    """
    overrides = load_env_config(environ)
    overrides.update({k: v for k, v in (cli_config or {}).items() if v is not None})
    merged = merge_config(load_config(config_path), overrides, get_default_config())
    return validate_config(merged, require_sink=require_sink)
