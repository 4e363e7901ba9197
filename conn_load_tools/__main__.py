#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
命令行入口

    python -m conn_load_tools run --config load_test_config.json
    python -m conn_load_tools load-data --csv data.csv --data-source redis://localhost:6379
"""

import argparse
import asyncio
import logging
import sys

from .core.load_test_config import build_config
from .core.load_test_errors import ConfigurationError, DataFeedError
from .core.load_test_loader import run_data_loader
from .core.load_test_logger import setup_logging
from .core.load_test_runner import run_load_runner

logger = logging.getLogger("Load_Runner")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='conn_load_tools', description="WebSocket / HTTP 连接压测运行器")
    subparsers = parser.add_subparsers(dest='command', required=True)

    run_parser = subparsers.add_parser('run', help="启动压测运行器")
    run_parser.add_argument('--config', help="JSON 配置文件路径")
    run_parser.add_argument('--mode', dest='test_mode', choices=['websocket', 'http'])
    run_parser.add_argument('--ws-url', dest='ws_url')
    run_parser.add_argument('--http-url', dest='http_url')
    run_parser.add_argument('--method', dest='http_method')
    run_parser.add_argument('--connections', dest='num_connections', type=int)
    run_parser.add_argument('--connection-mode', dest='connection_mode', choices=['instant', 'progressive'])
    run_parser.add_argument('--rate', dest='connection_rate', type=int)
    run_parser.add_argument('--replicas', type=int)
    run_parser.add_argument('--data-source', dest='data_source')
    run_parser.add_argument('--duration', type=int, help="运行时长（秒），不设置则直到收到终止信号")
    run_parser.add_argument('--log-level', dest='log_level')

    load_parser = subparsers.add_parser('load-data', help="把 CSV 测试数据写入 Redis")
    load_parser.add_argument('--config', help="JSON 配置文件路径")
    load_parser.add_argument('--csv', dest='csv_path')
    load_parser.add_argument('--data-source', dest='data_source', help="Redis 地址")
    load_parser.add_argument('--data-level', dest='data_level', type=int)
    load_parser.add_argument('--log-level', dest='log_level')

    return parser


def main(argv=None) -> int:
    """主函数"""
    args = build_parser().parse_args(argv)
    cli_config = {k: v for k, v in vars(args).items() if k not in ('command', 'config')}

    try:
        config = build_config(args.config, cli_config, require_sink=(args.command == 'run'))
    except ConfigurationError as e:
        setup_logging('error')
        logger.error(f"配置验证失败: {e}")
        return 1

    setup_logging(config['log_level'], config['runner_id'] if args.command == 'run' else 'data-loader')

    try:
        if args.command == 'run':
            asyncio.run(run_load_runner(config))
        else:
            asyncio.run(run_data_loader(config))
            logger.info("测试数据加载完成")
    except ConfigurationError as e:
        logger.error(f"配置验证失败: {e}")
        return 1
    except DataFeedError as e:
        logger.error(f"测试数据处理失败: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("运行被用户中断")

    return 0


if __name__ == '__main__':
    sys.exit(main())
