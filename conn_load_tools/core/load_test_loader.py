#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
测试数据加载器
读取 CSV 文件，按 level 过滤后写入 Redis 列表，供运行器弹出使用
"""

import csv
import logging
import os
from typing import Dict, List

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .load_test_errors import ConfigurationError, DataFeedError
from .load_test_feed import DATA_KEY, COUNT_KEY

logger = logging.getLogger("Load_Runner")


def read_csv_rows(csv_path: str, data_level: int = 999) -> List[Dict[str, str]]:
    """
    读取并过滤 CSV 数据

    Args:
        csv_path: CSV 文件路径
        data_level: 只保留 level <= data_level 的行

    Returns:
        数据行列表

    Raises:
        DataFeedError: 文件不存在或缺少 level 列
    """
    csv_file = os.path.abspath(csv_path)
    logger.info(f"读取 CSV 文件: {csv_file}")
    logger.info(f"过滤条件: level <= {data_level}")

    if not os.path.exists(csv_file):
        raise DataFeedError(f"CSV 文件不存在: {csv_file}")

    rows = []
    skipped = 0
    with open(csv_file, 'r', encoding='utf-8', newline='') as f:
        reader = csv.DictReader(f)
        headers = reader.fieldnames or []
        if 'level' not in headers:
            raise DataFeedError("CSV 文件必须包含 level 列")
        logger.info(f"CSV 表头: {', '.join(headers)}")

        for row in reader:
            try:
                row_level = int(row['level'])
            except (TypeError, ValueError):
                skipped += 1
                continue
            if row_level <= data_level:
                rows.append({k: v for k, v in row.items() if k is not None})

    if skipped:
        logger.warning(f"跳过 {skipped} 行 level 非整数的数据")
    logger.info(f"符合条件的数据共 {len(rows)} 行")
    return rows


async def store_rows(client, rows: List[Dict[str, str]]) -> int:
    """
    把数据写入 Redis 列表（先清空旧数据），并记录总行数

    Returns:
        写入的行数
    """
    import json

    try:
        await client.delete(DATA_KEY)

        if not rows:
            logger.warning("没有需要写入 Redis 的数据")
            await client.set(COUNT_KEY, '0')
            return 0

        async with client.pipeline(transaction=False) as pipe:
            for row in rows:
                pipe.rpush(DATA_KEY, json.dumps(row, ensure_ascii=False))
            await pipe.execute()

        await client.set(COUNT_KEY, str(len(rows)))
    except RedisError as e:
        raise DataFeedError(f"写入 Redis 失败: {e}") from e

    logger.info(f"已写入 {len(rows)} 行数据到 Redis 列表: {DATA_KEY}")
    logger.info(f"数据总数已写入: {COUNT_KEY}")
    return len(rows)


async def run_data_loader(config: Dict, client=None) -> int:
    """
    运行数据加载流程

    Args:
        config: 已验证的配置，需要 csv_path / data_source / data_level
        client: 可选的 Redis 客户端（测试用）

    Returns:
        写入的行数
    """
    if not config.get('csv_path'):
        raise ConfigurationError("数据加载缺少必需参数: csv_path")

    owns_client = client is None
    if owns_client:
        redis_url = config.get('data_source')
        if not redis_url:
            raise ConfigurationError("数据加载缺少必需参数: data_source (Redis 地址)")
        client = aioredis.from_url(redis_url, decode_responses=True)
        logger.info(f"连接 Redis: {redis_url}")

    try:
        rows = read_csv_rows(config['csv_path'], config.get('data_level', 999))
        return await store_rows(client, rows)
    finally:
        if owns_client:
            await client.aclose()
            logger.info("Redis 连接已关闭")
