#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
报告生成器
负责启动横幅和运行期间周期性状态报告的生成与输出
"""

import logging
from typing import Dict, List

logger = logging.getLogger("Load_Runner")


def generate_banner_text(config: Dict) -> str:
    """
    生成启动横幅

    Args:
        config: 已验证的配置

    Returns:
        横幅文本
    """
    lines = []

    lines.append("="*60)
    lines.append(f"连接压测运行器 - Runner ID: {config.get('runner_id')}")
    lines.append(f"测试模式: {config.get('test_mode')}")

    if config.get('test_mode') == 'websocket':
        lines.append(f"目标 WebSocket URL: {config.get('ws_url')}")
    else:
        lines.append(f"目标 HTTP URL: {config.get('http_url')}")
        lines.append(f"HTTP 方法: {config.get('http_method')}")

    lines.append(f"静态连接数: {config.get('num_connections')}")
    lines.append(f"副本数: {config.get('replicas')}")
    lines.append(f"创建模式: {config.get('connection_mode')}")
    if config.get('connection_mode') == 'progressive':
        lines.append(f"创建速率: {config.get('connection_rate')} 个/秒")
    lines.append(f"测试数据源: {config.get('data_source') or '无'}")
    lines.append(f"InfluxDB URL: {config.get('influx_url')}")
    lines.append(f"InfluxDB 组织: {config.get('influx_org')}")
    lines.append(f"InfluxDB 存储桶: {config.get('influx_bucket')}")
    lines.append(f"日志级别: {config.get('log_level')}")
    lines.append(f"重连延迟: {config.get('retry_delay_ms')}ms")
    if not config.get('reject_unauthorized', True):
        lines.append("证书校验: 已关闭（仅限测试环境）")
    if config.get('duration'):
        lines.append(f"运行时长: {config.get('duration')} 秒")
    lines.append("="*60)

    return "\n".join(lines)


def generate_status_report(
    runner_id: str,
    test_mode: str,
    connection_stats: Dict,
    snapshot: Dict
) -> str:
    """
    生成一次状态报告

    Args:
        runner_id: 运行器标识
        test_mode: websocket / http
        connection_stats: PopulationManager.connection_stats() 的结果
        snapshot: StatsAggregator.snapshot() 的结果

    Returns:
        状态报告文本
    """
    lines: List[str] = []

    lines.append("-"*40)
    lines.append(f"状态更新 - Runner ID: {runner_id}")
    lines.append(f"测试模式: {test_mode}")
    lines.append(f"连接总数: {connection_stats.get('total', 0)}，活跃: {connection_stats.get('active', 0)}")
    lines.append(f"连接尝试: {snapshot.get('total_attempted', 0)}")

    if test_mode == 'websocket':
        lines.append(f"当前打开: {snapshot.get('current_open', 0)}")
        lines.append(f"已关闭: {snapshot.get('total_closed', 0)}")
        lines.append(f"连接错误: {snapshot.get('total_errors', 0)}")
        lines.append(f"平均建连耗时: {snapshot.get('average_connect_time', 0):.2f}ms")
    else:
        lines.append(f"成功请求: {snapshot.get('total_successful', 0)}")
        lines.append(f"请求错误: {snapshot.get('total_errors', 0)}")
        lines.append(f"平均响应时间: {snapshot.get('average_response_time', 0):.2f}ms")

    lines.append(f"成功率: {snapshot.get('success_rate', 0):.2f}%")
    lines.append("-"*40)

    return "\n".join(lines)


def log_report(report_text: str, level: int = logging.INFO):
    """按行输出报告，保证每行都带日志前缀"""
    for line in report_text.splitlines():
        logger.log(level, line)
