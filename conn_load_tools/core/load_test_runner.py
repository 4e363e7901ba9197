#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
测试运行器
连接数规划、连接创建节奏控制、关闭流程，以及整个运行器的启动入口
"""

import asyncio
import logging
import math
import signal
from enum import Enum
from typing import Callable, Dict, List, Optional

import aiohttp

from .load_test_config import TlsConfig
from .load_test_core import BaseConnection, TransportKind, create_connection
from .load_test_errors import DataFeedError
from .load_test_feed import create_data_feed
from .load_test_reporter import generate_banner_text, generate_status_report, log_report
from .load_test_sink import InfluxMetricsSink
from .load_test_stats import StatsAggregator
from .load_test_template import TemplateResolver

logger = logging.getLogger("Load_Runner")

# 瞬时模式每创建这么多连接暂停一次
INSTANT_BATCH_SIZE = 100
INSTANT_BATCH_PAUSE = 0.1


class CreationMode(Enum):
    INSTANT = 'instant'
    PROGRESSIVE = 'progressive'


class PopulationPolicy:
    """本次运行的连接数量与创建节奏"""

    def __init__(self, mode: CreationMode, target_count: int, rate_per_second: int = 10):
        self.mode = mode
        self.target_count = target_count
        self.rate_per_second = rate_per_second

    @property
    def interval(self) -> float:
        """渐进模式两次创建之间的间隔（秒）"""
        return 1.0 / self.rate_per_second

    def __repr__(self):
        return (f"PopulationPolicy(mode={self.mode.value}, target_count={self.target_count}, "
                f"rate_per_second={self.rate_per_second})")


def compute_target_count(row_count: int, replica_count: int, static_count: int) -> int:
    """
    计算本副本需要的连接数

    有测试数据时按 ceil(数据行数 / 副本数) 计算，否则使用静态配置
    """
    if row_count > 0:
        return math.ceil(row_count / max(replica_count, 1))
    return static_count


class PopulationManager:
    """
    连接群管理器

    决定创建多少连接、什么时候创建，持有全部存活连接，并负责关闭流程。
    所有协作对象通过构造函数注入。
    """

    def __init__(
        self,
        url_template: str,
        stats: StatsAggregator,
        transport_kind: TransportKind = TransportKind.WEBSOCKET,
        data_feed=None,
        static_count: int = 100,
        replicas: int = 1,
        mode: CreationMode = CreationMode.INSTANT,
        rate_per_second: int = 10,
        retry_delay: float = 5.0,
        http_method: str = 'GET',
        tls: Optional[TlsConfig] = None,
        grace_period: float = 1.0,
        session: Optional[aiohttp.ClientSession] = None,
        connection_factory: Optional[Callable[..., BaseConnection]] = None,
        batch_pause: float = INSTANT_BATCH_PAUSE
    ):
        self.resolver = TemplateResolver(url_template)
        self.stats = stats
        self.transport_kind = transport_kind
        self.data_feed = data_feed
        self.static_count = static_count
        self.replicas = replicas
        self.mode = mode
        self.rate_per_second = rate_per_second
        self.retry_delay = retry_delay
        self.http_method = http_method
        self.tls = tls
        self.grace_period = grace_period
        self.batch_pause = batch_pause
        self.policy: Optional[PopulationPolicy] = None
        self._connection_factory = connection_factory or create_connection
        self._session = session
        self._owns_session = False
        self._connections: List[BaseConnection] = []
        self._has_data = False
        self._ticker_task: Optional[asyncio.Task] = None
        self._shutting_down = False
        self._shutdown_task: Optional[asyncio.Future] = None

    @property
    def connections(self) -> List[BaseConnection]:
        return list(self._connections)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    # ---------- 初始化 ----------

    async def resolve_policy(self) -> PopulationPolicy:
        """查询数据队列并确定本次运行的连接数量"""
        row_count = 0
        self._has_data = False

        if self.data_feed is not None:
            logger.info("尝试加载测试数据...")
            try:
                self._has_data = await self.data_feed.load()
                row_count = self.data_feed.count() if self._has_data else 0
            except DataFeedError as e:
                logger.error(f"读取测试数据失败，回退到静态连接数: {e}")
                self._has_data = False
                row_count = 0

        if self._has_data and row_count > 0:
            target = compute_target_count(row_count, self.replicas, self.static_count)
            logger.info(f"共 {row_count} 行测试数据，URL 将根据测试数据动态生成")
            logger.info(f"按 {row_count} 行 / {self.replicas} 个副本计算，本副本连接数: {target}")
        else:
            self._has_data = False
            target = self.static_count
            logger.warning(f"没有可用的测试数据，使用静态连接数: {target}")

        self.policy = PopulationPolicy(self.mode, target, self.rate_per_second)
        return self.policy

    async def initialize(self):
        """确定连接数并按模式创建连接，渐进模式会一直等到创建完成或开始关闭"""
        policy = await self.resolve_policy()

        if self.transport_kind is TransportKind.HTTP and self._session is None:
            limit = max(policy.target_count, 1) * 2
            connector = aiohttp.TCPConnector(limit=limit, limit_per_host=limit)
            self._session = aiohttp.ClientSession(connector=connector)
            self._owns_session = True

        logger.info(f"初始化连接管理器: {policy.target_count} 个连接 -> {self.resolver.template}")
        logger.info(f"创建模式: {policy.mode.value}，速率: {policy.rate_per_second} 个/秒")

        if policy.mode is CreationMode.INSTANT:
            await self._create_instant(policy)
        else:
            await self._create_progressive(policy)

    async def _create_instant(self, policy: PopulationPolicy):
        logger.info("一次性创建全部连接")

        for _ in range(policy.target_count):
            if self._shutting_down:
                break
            row = await self._next_row()
            if self._spawn(row) is None:
                break

            # 每创建一批暂停一下，避免瞬间建连风暴
            if len(self._connections) % INSTANT_BATCH_SIZE == 0:
                await asyncio.sleep(self.batch_pause)

        logger.info(f"已创建 {len(self._connections)} 个连接")

    async def _create_progressive(self, policy: PopulationPolicy):
        logger.info(f"以每秒 {policy.rate_per_second} 个的速率渐进创建连接")
        self._ticker_task = asyncio.ensure_future(self._progressive_ticker(policy))
        await asyncio.wait([self._ticker_task])
        self._ticker_task = None

    async def _progressive_ticker(self, policy: PopulationPolicy):
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + policy.interval

        while len(self._connections) < policy.target_count and not self._shutting_down:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
            if self._shutting_down:
                break

            row = await self._next_row()
            if self._spawn(row) is None:
                break
            next_tick += policy.interval

            created = len(self._connections)
            if created % 10 == 0:
                logger.info(f"已创建 {created}/{policy.target_count} 个连接")

        logger.info(f"渐进创建结束，共创建 {len(self._connections)} 个连接")

    async def _next_row(self):
        if not self._has_data:
            return None
        try:
            return await self.data_feed.pop_one()
        except DataFeedError as e:
            logger.warning(f"弹出测试数据失败，本连接不绑定数据: {e}")
            return None

    def _spawn(self, row) -> Optional[BaseConnection]:
        # 弹出数据期间可能已经开始关闭，此时不再创建连接
        if self._shutting_down:
            logger.debug("连接管理器正在关闭，放弃创建新连接")
            return None
        connection_id = len(self._connections) + 1
        target = self.resolver.resolve(row, connection_id)
        connection = self._connection_factory(
            self.transport_kind,
            connection_id,
            target,
            self.stats,
            retry_delay=self.retry_delay,
            row=row,
            tls=self.tls,
            session=self._session,
            method=self.http_method
        )
        self._connections.append(connection)
        connection.connect()
        return connection

    # ---------- 状态 ----------

    def connection_stats(self) -> Dict[str, int]:
        """连接总数（累计创建）与当前处于连接状态的数量"""
        active = sum(1 for conn in self._connections if conn.is_connected())
        return {
            'total': len(self._connections),
            'active': active,
        }

    # ---------- 关闭 ----------

    async def shutdown(self):
        """关闭全部连接并释放资源；重复或并发调用只会执行一次"""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._do_shutdown())
        await asyncio.shield(self._shutdown_task)

    async def _do_shutdown(self):
        self._shutting_down = True
        logger.info("正在关闭连接管理器")

        if self._ticker_task is not None:
            self._ticker_task.cancel()

        for connection in self._connections:
            connection.close()

        # 等待最后一批统计事件落地
        await asyncio.sleep(self.grace_period)

        await self.stats.close()

        if self.data_feed is not None:
            await self.data_feed.close()

        if self._owns_session and self._session is not None:
            await self._session.close()

        logger.info("连接管理器已关闭")


async def _status_loop(manager: PopulationManager, stats: StatsAggregator, config: Dict):
    while True:
        await asyncio.sleep(config['status_interval'])
        report = generate_status_report(
            config['runner_id'],
            config['test_mode'],
            manager.connection_stats(),
            stats.snapshot()
        )
        log_report(report)


async def run_load_runner(config: Dict, sink=None, stop_event: Optional[asyncio.Event] = None) -> Dict:
    """
    运行压测直到收到终止信号（或达到 duration）

    Args:
        config: 已验证的配置
        sink: 可选的指标存储（默认按配置创建 InfluxDB 存储）
        stop_event: 可选的外部停止事件

    Returns:
        结束时的统计快照
    """
    log_report(generate_banner_text(config))

    transport_kind = TransportKind(config['test_mode'])
    url_template = config['ws_url'] if transport_kind is TransportKind.WEBSOCKET else config['http_url']

    tls = TlsConfig(config['reject_unauthorized'])
    if not tls.reject_unauthorized:
        logger.warning("证书校验已关闭，这是不安全的，只应在测试环境中使用")

    if sink is None:
        sink = InfluxMetricsSink(
            url=config['influx_url'],
            token=config['influx_token'],
            org=config['influx_org'],
            bucket=config['influx_bucket'],
            run_id=config['runner_id'],
            verify_ssl=config['reject_unauthorized']
        )
    stats = StatsAggregator(
        sink,
        config['runner_id'],
        primary_kind=transport_kind,
        flush_interval=config['stats_flush_interval_ms'] / 1000
    )
    stats.start()

    try:
        data_feed = create_data_feed(config.get('data_source'), config.get('data_level', 999))
    except DataFeedError as e:
        logger.error(f"创建测试数据源失败，使用静态连接数: {e}")
        data_feed = None

    manager = PopulationManager(
        url_template,
        stats,
        transport_kind=transport_kind,
        data_feed=data_feed,
        static_count=config['num_connections'],
        replicas=config['replicas'],
        mode=CreationMode(config['connection_mode']),
        rate_per_second=config['connection_rate'],
        retry_delay=config['retry_delay_ms'] / 1000,
        http_method=config['http_method'],
        tls=tls,
        grace_period=config['shutdown_grace_ms'] / 1000
    )

    if stop_event is None:
        stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    registered = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig, stop_event)
            registered.append(sig)
        except (NotImplementedError, RuntimeError):
            # Windows 或非主线程不支持信号处理
            pass

    init_task = asyncio.ensure_future(manager.initialize())
    init_task.add_done_callback(_log_init_failure)
    status_task = asyncio.ensure_future(_status_loop(manager, stats, config))
    logger.info(f"{config['test_mode']} 压测运行器启动成功")

    try:
        if config.get('duration'):
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=config['duration'])
            except asyncio.TimeoutError:
                logger.info(f"已达到运行时长 {config['duration']} 秒")
        else:
            await stop_event.wait()
    finally:
        status_task.cancel()
        await manager.shutdown()
        if not init_task.done():
            init_task.cancel()
        await asyncio.gather(init_task, status_task, return_exceptions=True)
        for sig in registered:
            loop.remove_signal_handler(sig)

    result = dict(manager.connection_stats())
    result.update(stats.snapshot())
    return result


def _log_init_failure(task: asyncio.Future):
    """初始化一结束就检查结果，失败时立即记录，不等到停止信号"""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"创建连接过程中出错: {error}")


def _on_signal(sig: signal.Signals, stop_event: asyncio.Event):
    logger.info(f"收到信号 {sig.name}")
    stop_event.set()
