#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
测试数据队列
从共享存储中逐条弹出测试数据，每条数据在整个运行期间最多被一个连接使用

数据格式（由数据加载器写入）：
- 列表 test:data        每个元素是一行 JSON 编码的数据
- 字符串 test:data:count 原始数据总行数
"""

import json
import logging
from collections import deque
from collections.abc import Mapping
from typing import Dict, Iterable, Iterator, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .load_test_errors import DataFeedError

logger = logging.getLogger("Load_Runner")

DATA_KEY = 'test:data'
COUNT_KEY = 'test:data:count'


class DataRow(Mapping):
    """一行测试数据（只读），必须包含 level 字段"""

    __slots__ = ('_fields',)

    def __init__(self, fields: Mapping):
        if 'level' not in fields:
            raise DataFeedError(f"测试数据缺少 level 字段: {dict(fields)}")
        self._fields = {str(k): '' if v is None else str(v) for k, v in fields.items()}

    def __getitem__(self, key: str) -> str:
        return self._fields[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def to_dict(self) -> Dict[str, str]:
        return dict(self._fields)

    def __repr__(self):
        return f"DataRow({self._fields!r})"


def parse_row(raw: str) -> DataRow:
    """
    解析一条 JSON 编码的数据

    Raises:
        DataFeedError: JSON 非法、不是对象或缺少 level
    """
    try:
        fields = json.loads(raw)
    except ValueError as e:
        raise DataFeedError(f"测试数据不是合法的 JSON: {raw[:100]!r}") from e
    if not isinstance(fields, dict):
        raise DataFeedError(f"测试数据必须是 JSON 对象: {raw[:100]!r}")
    return DataRow(fields)


class RedisDataFeed:
    """基于 Redis 列表的测试数据队列"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        client=None,
        data_key: str = DATA_KEY,
        count_key: str = COUNT_KEY
    ):
        if client is None:
            if not redis_url:
                raise DataFeedError("未配置 Redis 地址")
            client = aioredis.from_url(redis_url, decode_responses=True)
            logger.info(f"连接 Redis: {redis_url}")
        self._client = client
        self.data_key = data_key
        self.count_key = count_key
        self._has_data = False
        self._count = 0

    async def load(self) -> bool:
        """
        检查 Redis 中是否有测试数据，并读取原始总数

        Returns:
            是否有可用数据

        Raises:
            DataFeedError: Redis 不可达
        """
        try:
            count_str = await self._client.get(self.count_key)
            if not count_str:
                logger.warning(f"Redis 中没有测试数据计数 (key: {self.count_key})")
                self._has_data = False
                return False

            self._count = int(count_str)
            list_length = await self._client.llen(self.data_key)
        except RedisError as e:
            raise DataFeedError(f"检查 Redis 测试数据失败: {e}") from e
        except ValueError as e:
            raise DataFeedError(f"测试数据计数不是整数: {count_str!r}") from e

        if list_length == 0:
            logger.warning(f"Redis 列表中没有测试数据 (key: {self.data_key})")
            self._has_data = False
            return False

        logger.info(f"Redis 列表中共有 {list_length} 条测试数据")
        self._has_data = True
        return True

    def has_data(self) -> bool:
        return self._has_data

    def count(self) -> int:
        return self._count

    async def pop_one(self) -> Optional[DataRow]:
        """
        弹出一条数据（LPOP），弹出即从共享存储中删除

        Returns:
            数据行，队列为空时返回 None

        Raises:
            DataFeedError: Redis 不可达或数据格式错误
        """
        try:
            raw = await self._client.lpop(self.data_key)
        except RedisError as e:
            raise DataFeedError(f"从 Redis 弹出测试数据失败: {e}") from e

        if raw is None:
            logger.warning("Redis 列表中已没有更多测试数据")
            return None

        row = parse_row(raw)
        logger.debug(f"已弹出一条测试数据: {row.to_dict()}")
        return row

    async def close(self):
        try:
            await self._client.aclose()
            logger.info("Redis 连接已关闭")
        except RedisError as e:
            logger.error(f"关闭 Redis 连接出错: {e}")


class MemoryDataFeed:
    """进程内测试数据队列，用于直接读取本地 CSV 的场景"""

    def __init__(self, rows: Iterable[Mapping]):
        self._rows = deque(row if isinstance(row, DataRow) else DataRow(row) for row in rows)
        self._count = len(self._rows)

    async def load(self) -> bool:
        if not self._rows:
            logger.warning("本地测试数据为空")
            return False
        logger.info(f"本地共有 {len(self._rows)} 条测试数据")
        return True

    def has_data(self) -> bool:
        return self._count > 0

    def count(self) -> int:
        return self._count

    def remaining(self) -> int:
        return len(self._rows)

    async def pop_one(self) -> Optional[DataRow]:
        if not self._rows:
            logger.warning("本地测试数据已用完")
            return None
        return self._rows.popleft()

    async def close(self):
        self._rows.clear()


def create_data_feed(data_source: Optional[str], data_level: int = 999):
    """
    根据配置创建数据队列

    Args:
        data_source: redis:// 地址或本地 CSV 路径，None 表示不使用测试数据
        data_level: 读取本地 CSV 时的 level 过滤阈值

    Returns:
        数据队列实例或 None
    """
    if not data_source:
        return None
    if data_source.startswith(('redis://', 'rediss://', 'unix://')):
        return RedisDataFeed(redis_url=data_source)

    # 延迟导入，避免循环依赖
    from .load_test_loader import read_csv_rows
    rows: List[Dict[str, str]] = read_csv_rows(data_source, data_level)
    return MemoryDataFeed(rows)
