#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
HTTP 渐进加压测试
目标: 按固定速率逐个创建请求连接，URL 与请求体来自 Redis 中的测试数据
"""

import asyncio

from conn_load_tools.core.load_test_config import get_default_config, validate_config
from conn_load_tools.core.load_test_errors import ConfigurationError
from conn_load_tools.core.load_test_logger import setup_logging
from conn_load_tools.core.load_test_runner import run_load_runner

# ==================== 测试配置（硬编码） ====================
TEST_CONFIG = {
    'test_mode': 'http',
    'http_url': 'https://xxxx.com/api/users/@{user_id}/orders?level=@{level}',
    'http_method': 'POST',
    'num_connections': 200,  # 没有测试数据时使用
    'data_source': 'redis://localhost:6379/0',
    'replicas': 5,
    'connection_mode': 'progressive',
    'connection_rate': 20,
    'retry_delay_ms': 3000,
    'reject_unauthorized': False,
    'influx_url': 'http://localhost:8086',
    'influx_token': 'my-token',
    'influx_org': 'loadtest',
    'influx_bucket': 'connections',
    'runner_id': 'http-progressive',
    'status_interval': 10,
}
# 结果: 1000行数据 / 5个副本 = 每个副本200个连接，10秒内创建完

DURATION = 120

# =========================================================


async def main():
    """主函数"""
    try:
        config = validate_config({**get_default_config(), **TEST_CONFIG, 'duration': DURATION})
    except ConfigurationError as e:
        print(f"配置验证失败: {e}")
        return

    setup_logging(config['log_level'], config['runner_id'])

    try:
        result = await run_load_runner(config)

        print(f"\n{'='*60}")
        print("HTTP 渐进加压测试完成！")
        print(f"{'='*60}")
        print(f"连接总数: {result['total']}")
        print(f"请求尝试: {result['total_attempted']}")
        print(f"成功请求: {result['total_successful']}")
        print(f"平均响应时间: {result['average_response_time']:.2f}ms")
        print(f"成功率: {result['success_rate']:.2f}%")

    except KeyboardInterrupt:
        print("\n\n测试被用户中断")
    except Exception as e:
        print(f"\n\n测试出错: {str(e)}")
        import traceback
        traceback.print_exc()

if __name__ == '__main__':
    asyncio.run(main())
