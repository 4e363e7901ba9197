#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
指标存储
把统计聚合器产生的数据点缓冲起来，周期性批量写入 InfluxDB
"""

import logging
from collections import deque
from typing import List

from influxdb_client import Point, WritePrecision
from influxdb_client.client.influxdb_client_async import InfluxDBClientAsync

from .load_test_errors import MetricsSinkError

logger = logging.getLogger("Load_Runner")

# 缓冲区上限，写入长期失败时丢弃最早的数据点
DEFAULT_MAX_BUFFER = 100000


class InfluxMetricsSink:
    """InfluxDB v2 指标存储，所有数据点都带 runner_id 标签"""

    def __init__(
        self,
        url: str,
        token: str,
        org: str,
        bucket: str,
        run_id: str,
        verify_ssl: bool = True,
        max_buffer: int = DEFAULT_MAX_BUFFER,
        client=None
    ):
        self.url = url
        self.org = org
        self.bucket = bucket
        self.run_id = run_id
        self._client = client or InfluxDBClientAsync(url=url, token=token, org=org, verify_ssl=verify_ssl)
        self._write_api = self._client.write_api()
        self._buffer = deque()
        self._max_buffer = max_buffer
        self._dropped = 0
        logger.info(f"InfluxDB: {url}，组织: {org}，存储桶: {bucket}")

    def write(self, record):
        """缓冲一个数据点，不做网络IO"""
        if len(self._buffer) >= self._max_buffer:
            self._buffer.popleft()
            self._dropped += 1
            if self._dropped % 1000 == 1:
                logger.warning(f"指标缓冲区已满，已丢弃 {self._dropped} 个数据点")
        self._buffer.append(self.to_point(record))

    def to_point(self, record) -> Point:
        point = (
            Point(record.measurement)
            .tag('runner_id', self.run_id)
            .tag('event_type', record.event_type)
            .time(record.timestamp, WritePrecision.NS)
        )
        for name, value in record.fields.items():
            point = point.field(name, value)
        return point

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def flush(self):
        """
        把缓冲区中的数据点批量写出

        Raises:
            MetricsSinkError: 写入失败，数据点放回缓冲区等待下次刷新
        """
        if not self._buffer:
            return

        batch: List[Point] = list(self._buffer)
        self._buffer.clear()
        try:
            await self._write_api.write(bucket=self.bucket, org=self.org, record=batch)
        except Exception as e:
            self._buffer.extendleft(reversed(batch))
            while len(self._buffer) > self._max_buffer:
                self._buffer.popleft()
                self._dropped += 1
            raise MetricsSinkError(f"写入 InfluxDB 失败 ({len(batch)} 个数据点): {e}") from e

        logger.debug(f"已写入 {len(batch)} 个数据点到 InfluxDB")

    async def close(self):
        try:
            await self.flush()
        except MetricsSinkError as e:
            logger.error(f"关闭前最后一次写入失败，丢弃 {self.pending} 个数据点: {e}")
            self._buffer.clear()
        finally:
            await self._client.close()
        logger.info("InfluxDB 连接已关闭")
