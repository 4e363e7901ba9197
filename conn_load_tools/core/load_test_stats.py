#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
统计聚合器
消费连接生命周期事件，维护滚动计数器，并向指标存储写入事件点和周期汇总点
"""

import asyncio
import logging
import statistics
from collections import deque
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .load_test_core import ConnectionEvent, EventType, TransportKind
from .load_test_errors import MetricsSinkError

logger = logging.getLogger("Load_Runner")

SUMMARY_EVENT = 'summary'


class RingBuffer:
    """定长环形缓冲区，超出容量时淘汰最早的样本"""

    def __init__(self, capacity: int = 1000):
        if capacity <= 0:
            raise ValueError("capacity 必须是正整数")
        self._items = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._items.maxlen

    def push(self, value: float):
        self._items.append(value)

    def mean(self) -> float:
        if not self._items:
            return 0.0
        return statistics.mean(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self._items)


class WebSocketCounters:
    """WebSocket 连接计数器"""

    measurement = 'websocket_connections'

    def __init__(self, window_size: int = 1000):
        self.attempted = 0
        self.errors = 0
        self.current_open = 0
        self.total_closed = 0
        self.latencies = RingBuffer(window_size)

    def record_open(self, latency_ms: float):
        self.current_open += 1
        self.latencies.push(latency_ms)

    def record_close(self) -> bool:
        """
        记录一次关闭

        Returns:
            False 表示 current_open 已经为 0，本次递减被截断
        """
        self.total_closed += 1
        if self.current_open <= 0:
            self.current_open = 0
            return False
        self.current_open -= 1
        return True

    @property
    def success_rate(self) -> float:
        if self.attempted == 0:
            return 0.0
        rate = (self.current_open + self.total_closed) / self.attempted * 100
        return min(max(rate, 0.0), 100.0)

    @property
    def average_latency(self) -> float:
        return self.latencies.mean()

    def to_fields(self) -> Dict:
        return {
            'total_attempted': self.attempted,
            'current_open': self.current_open,
            'total_closed': self.total_closed,
            'total_errors': self.errors,
            'average_connect_time': float(self.average_latency),
            'success_rate': float(self.success_rate),
        }


class HttpCounters:
    """HTTP 请求计数器"""

    measurement = 'http_connections'

    def __init__(self, window_size: int = 1000):
        self.attempted = 0
        self.errors = 0
        self.total_successful = 0
        self.total_completed = 0
        self.latencies = RingBuffer(window_size)

    def record_open(self, latency_ms: float):
        self.total_successful += 1
        self.latencies.push(latency_ms)

    def record_close(self) -> bool:
        self.total_completed += 1
        return True

    @property
    def success_rate(self) -> float:
        if self.attempted == 0:
            return 0.0
        rate = self.total_successful / self.attempted * 100
        return min(max(rate, 0.0), 100.0)

    @property
    def average_latency(self) -> float:
        return self.latencies.mean()

    def to_fields(self) -> Dict:
        return {
            'total_attempted': self.attempted,
            'total_successful': self.total_successful,
            'total_completed': self.total_completed,
            'total_errors': self.errors,
            'average_response_time': float(self.average_latency),
            'success_rate': float(self.success_rate),
        }


class MetricRecord:
    """写往指标存储的一个数据点"""

    __slots__ = ('measurement', 'event_type', 'fields', 'timestamp')

    def __init__(self, measurement: str, event_type: str, fields: Dict, timestamp: Optional[datetime] = None):
        self.measurement = measurement
        self.event_type = event_type
        self.fields = fields
        self.timestamp = timestamp or datetime.now(timezone.utc)

    def __repr__(self):
        return f"MetricRecord({self.measurement}, {self.event_type}, {self.fields})"


class StatsAggregator:
    """
    统计聚合器

    连接通过 publish() 把事件放入队列，后台任务逐个分发到
    attempted / opened / closed / errored。每个事件都会写一个事件点，
    汇总点由周期任务（默认5秒）统一写出并刷新存储。
    """

    def __init__(
        self,
        sink,
        run_id: str,
        primary_kind: TransportKind = TransportKind.WEBSOCKET,
        flush_interval: float = 5.0,
        window_size: int = 1000
    ):
        self._sink = sink
        self.run_id = run_id
        self.primary_kind = primary_kind
        self.flush_interval = flush_interval
        self.counters = {
            TransportKind.WEBSOCKET: WebSocketCounters(window_size),
            TransportKind.HTTP: HttpCounters(window_size),
        }
        self.last_updated: Optional[datetime] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._consumer_task: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._closed = False

    # ---------- 生命周期 ----------

    def start(self):
        """启动事件消费任务和周期刷新任务（需在事件循环中调用）"""
        if self._closed or self._consumer_task is not None:
            return
        self._consumer_task = asyncio.ensure_future(self._consume())
        self._flush_task = asyncio.ensure_future(self._flush_loop())
        logger.info(f"统计聚合器已启动，汇总间隔 {self.flush_interval}s")

    @property
    def is_closed(self) -> bool:
        return self._closed

    def publish(self, event: ConnectionEvent):
        """连接调用的入口，只入队不阻塞"""
        if self._closed:
            logger.debug(f"统计聚合器已关闭，丢弃事件: {event}")
            return
        self._queue.put_nowait(event)

    async def drain(self):
        """等待队列中已发布的事件全部处理完"""
        if self._consumer_task is None:
            self._process_pending()
            return
        await self._queue.join()

    async def close(self):
        """停止周期任务，处理剩余事件，最后刷新一次并释放存储"""
        if self._closed:
            return
        self._closed = True

        if self._flush_task is not None:
            self._flush_task.cancel()
            await asyncio.gather(self._flush_task, return_exceptions=True)
            self._flush_task = None

        if self._consumer_task is not None:
            self._consumer_task.cancel()
            await asyncio.gather(self._consumer_task, return_exceptions=True)
            self._consumer_task = None
        self._process_pending()

        await self.flush()

        try:
            await self._sink.close()
            logger.info("指标存储连接已关闭")
        except MetricsSinkError as e:
            logger.error(f"关闭指标存储出错: {e}")

    async def _consume(self):
        while True:
            event = await self._queue.get()
            try:
                self.handle_event(event)
            except Exception as e:
                logger.error(f"处理连接事件出错 {event}: {e}")
            finally:
                self._queue.task_done()

    def _process_pending(self):
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                self.handle_event(event)
            finally:
                self._queue.task_done()

    async def _flush_loop(self):
        while True:
            await asyncio.sleep(self.flush_interval)
            await self.flush()

    # ---------- 事件接口 ----------

    def handle_event(self, event: ConnectionEvent):
        """把一个连接事件分发到对应的计数方法"""
        if event.event_type is EventType.ATTEMPT:
            self.attempted(event.transport_kind)
        elif event.event_type is EventType.OPEN:
            self.opened(event.latency_ms or 0.0, event.transport_kind)
        elif event.event_type is EventType.CLOSE:
            self.closed(event.transport_kind, connection_id=event.connection_id)
        elif event.event_type is EventType.ERROR:
            self.errored(event.transport_kind)

    def attempted(self, kind: Optional[TransportKind] = None):
        counters = self._counters(kind)
        counters.attempted += 1
        self._write_event(counters, EventType.ATTEMPT.value, {'count': 1})

    def opened(self, latency_ms: float, kind: Optional[TransportKind] = None):
        counters = self._counters(kind)
        counters.record_open(latency_ms)
        self._write_event(counters, EventType.OPEN.value, {
            'count': 1,
            'connect_time_ms': int(round(latency_ms)),
        })

    def closed(self, kind: Optional[TransportKind] = None, connection_id: Optional[int] = None):
        counters = self._counters(kind)
        if not counters.record_close():
            # 关闭事件先于打开事件到达等乱序情况
            logger.warning(f"连接 {connection_id}: 当前打开数已为0，忽略本次递减")
        self._write_event(counters, EventType.CLOSE.value, {'count': 1})

    def errored(self, kind: Optional[TransportKind] = None):
        counters = self._counters(kind)
        counters.errors += 1
        self._write_event(counters, EventType.ERROR.value, {'count': 1})

    # ---------- 派生指标 ----------

    def success_rate(self, kind: Optional[TransportKind] = None) -> float:
        return self._counters(kind).success_rate

    def average_latency(self, kind: Optional[TransportKind] = None) -> float:
        return self._counters(kind).average_latency

    def snapshot(self, kind: Optional[TransportKind] = None) -> Dict:
        """当前计数器和派生指标的快照"""
        counters = self._counters(kind)
        stats = counters.to_fields()
        stats['last_updated'] = (self.last_updated or datetime.now(timezone.utc)).isoformat()
        return stats

    async def flush(self):
        """写出汇总点并刷新存储，失败只记录日志，留待下次重试"""
        for kind in self._summary_kinds():
            counters = self.counters[kind]
            self._sink.write(MetricRecord(counters.measurement, SUMMARY_EVENT, counters.to_fields()))

        try:
            await self._sink.flush()
            logger.debug(f"统计已写入指标存储: {self.snapshot()}")
        except MetricsSinkError as e:
            logger.error(f"写入指标存储失败，将在下次刷新时重试: {e}")

    # ---------- 内部方法 ----------

    def _counters(self, kind: Optional[TransportKind]):
        return self.counters[kind or self.primary_kind]

    def _summary_kinds(self) -> List[TransportKind]:
        kinds = [self.primary_kind]
        for kind, counters in self.counters.items():
            if kind is not self.primary_kind and counters.attempted > 0:
                kinds.append(kind)
        return kinds

    def _write_event(self, counters, event_type: str, fields: Dict):
        self.last_updated = datetime.now(timezone.utc)
        self._sink.write(MetricRecord(counters.measurement, event_type, fields, self.last_updated))
