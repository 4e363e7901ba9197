#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
核心连接引擎
单个模拟客户端的状态机：建立连接、上报生命周期事件、失败后定时重连

状态流转：
    IDLE -> CONNECTING -> OPEN -> CLOSED
    CONNECTING / OPEN -> ERROR
    CLOSED / ERROR -> (重连延迟) -> CONNECTING
    任意状态 -> close() -> SHUT_DOWN
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Optional

import aiohttp
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosedError, WebSocketException
from websockets.protocol import State

from .load_test_errors import ConnectionAttemptError

logger = logging.getLogger("Load_Runner")

# HTTP 请求超时（秒）
HTTP_TIMEOUT = 30
# 只有这些方法会携带请求体
BODY_METHODS = ('POST', 'PUT', 'PATCH')
# WebSocket 握手超时（秒）
WS_OPEN_TIMEOUT = 30


class TransportKind(Enum):
    WEBSOCKET = 'websocket'
    HTTP = 'http'


class ConnectionState(Enum):
    IDLE = 'idle'
    CONNECTING = 'connecting'
    OPEN = 'open'
    CLOSED = 'closed'
    ERROR = 'error'
    SHUT_DOWN = 'shut_down'


class EventType(Enum):
    ATTEMPT = 'attempt'
    OPEN = 'open'
    CLOSE = 'close'
    ERROR = 'error'


class ConnectionEvent:
    """连接发布给统计聚合器的生命周期事件"""

    __slots__ = ('transport_kind', 'event_type', 'connection_id', 'latency_ms')

    def __init__(
        self,
        transport_kind: TransportKind,
        event_type: EventType,
        connection_id: int,
        latency_ms: Optional[float] = None
    ):
        self.transport_kind = transport_kind
        self.event_type = event_type
        self.connection_id = connection_id
        self.latency_ms = latency_ms

    def __repr__(self):
        return (f"ConnectionEvent({self.transport_kind.value}, {self.event_type.value}, "
                f"id={self.connection_id}, latency_ms={self.latency_ms})")


class BaseConnection:
    """
    模拟连接基类

    负责状态、重连定时器和事件发布，具体的传输由子类实现 _run_attempt()
    """

    transport_kind: TransportKind = None

    def __init__(
        self,
        connection_id: int,
        target: str,
        stats,
        retry_delay: float = 5.0,
        row=None,
        tls=None
    ):
        self.id = connection_id
        self.resolved_target = target
        self.row = row
        self.retry_delay = retry_delay
        self.state = ConnectionState.IDLE
        self.attempt_started_at: Optional[float] = None
        self.closing_intentionally = False
        self.last_outcome: Optional[EventType] = None
        self._stats = stats
        self._tls = tls
        self._retry_timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._close_recorded = False

    # ---------- 对外接口 ----------

    def connect(self):
        """发起一次连接尝试（非阻塞，在事件循环中调度）"""
        if self.closing_intentionally:
            logger.debug(f"连接 {self.id}: 已关闭，忽略连接请求")
            return
        if self._task is not None and not self._task.done():
            logger.debug(f"连接 {self.id}: 上一次尝试尚未结束，忽略连接请求")
            return

        self._set_state(ConnectionState.CONNECTING)
        self._close_recorded = False
        self.attempt_started_at = time.time()
        self._publish(EventType.ATTEMPT)
        logger.debug(f"连接 {self.id}: 尝试连接 {self.resolved_target}")

        self._task = asyncio.ensure_future(self._run_attempt())

    def close(self):
        """主动关闭：取消重连定时器并强制终止传输，可重复调用"""
        if self.closing_intentionally:
            return
        self.closing_intentionally = True
        self._cancel_retry()
        self._terminate()
        self.state = ConnectionState.SHUT_DOWN

    def is_connected(self) -> bool:
        raise NotImplementedError

    @property
    def retry_pending(self) -> bool:
        return self._retry_timer is not None

    # ---------- 子类实现 ----------

    async def _run_attempt(self):
        raise NotImplementedError

    def _terminate(self):
        pass

    # ---------- 生命周期处理 ----------

    def _handle_open(self):
        latency_ms = (time.time() - self.attempt_started_at) * 1000
        self._set_state(ConnectionState.OPEN)
        self.last_outcome = EventType.OPEN
        self._publish(EventType.OPEN, latency_ms)
        return latency_ms

    def _handle_failure(self, error: Exception):
        self._set_state(ConnectionState.ERROR)
        self.last_outcome = EventType.ERROR
        logger.error(f"连接 {self.id}: 错误: {error}")
        self._publish(EventType.ERROR)

    def _record_close(self):
        """每个周期只记录一次关闭事件"""
        if self._close_recorded:
            logger.debug(f"连接 {self.id}: 忽略重复的关闭事件")
            return
        self._close_recorded = True
        if self.state is not ConnectionState.ERROR:
            self._set_state(ConnectionState.CLOSED)
        self._publish(EventType.CLOSE)

    def _schedule_retry(self):
        """安排一次重连；新的定时器会替换尚未触发的旧定时器"""
        if self.closing_intentionally:
            return
        self._cancel_retry()
        logger.debug(f"连接 {self.id}: {self.retry_delay * 1000:.0f}ms 后重连")
        loop = asyncio.get_running_loop()
        self._retry_timer = loop.call_later(self.retry_delay, self._retry)

    def _retry(self):
        self._retry_timer = None
        if self.closing_intentionally:
            return
        logger.info(f"连接 {self.id}: 尝试重连")
        self.connect()

    def _cancel_retry(self):
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _set_state(self, state: ConnectionState):
        # SHUT_DOWN 之后只允许记录事件，不再改变状态
        if self.state is ConnectionState.SHUT_DOWN:
            return
        self.state = state

    def _publish(self, event_type: EventType, latency_ms: Optional[float] = None):
        self._stats.publish(ConnectionEvent(self.transport_kind, event_type, self.id, latency_ms))

    def __repr__(self):
        return f"{type(self).__name__}(id={self.id}, state={self.state.value}, target={self.resolved_target!r})"


class WebSocketConnection(BaseConnection):
    """WebSocket 长连接，连接断开后按固定延迟重连"""

    transport_kind = TransportKind.WEBSOCKET

    def __init__(self, connection_id: int, target: str, stats, retry_delay: float = 5.0,
                 row=None, tls=None, open_timeout: float = WS_OPEN_TIMEOUT):
        super().__init__(connection_id, target, stats, retry_delay, row, tls)
        self.open_timeout = open_timeout
        self._ws = None

    def is_connected(self) -> bool:
        return self._ws is not None and self._ws.protocol.state is State.OPEN

    async def _run_attempt(self):
        kwargs = {'open_timeout': self.open_timeout}
        ssl_context = self._tls.for_url(self.resolved_target) if self._tls is not None else None
        if ssl_context is not None:
            kwargs['ssl'] = ssl_context

        try:
            ws = await ws_connect(self.resolved_target, **kwargs)
        except asyncio.TimeoutError:
            self._handle_failure(ConnectionAttemptError(f"握手超时 (>{self.open_timeout}s)"))
            self._schedule_retry()
            return
        except (WebSocketException, OSError) as e:
            self._handle_failure(ConnectionAttemptError(f"连接失败: {e}"))
            self._schedule_retry()
            return
        except Exception as e:
            self._handle_failure(ConnectionAttemptError(f"未知错误: {e}"))
            self._schedule_retry()
            return

        if self.closing_intentionally:
            # 握手完成前已被关闭
            ws.transport.abort()
            return

        self._ws = ws
        latency_ms = self._handle_open()
        logger.info(f"连接 {self.id}: 已连接，耗时 {latency_ms:.0f}ms")

        try:
            async for message in ws:
                logger.debug(f"连接 {self.id}: 收到消息: {message!r}")
        except ConnectionClosedError as e:
            if not self.closing_intentionally:
                self._handle_failure(ConnectionAttemptError(f"连接异常断开: {e}"))
        except Exception as e:
            if not self.closing_intentionally:
                self._handle_failure(ConnectionAttemptError(f"未知错误: {e}"))
            ws.transport.abort()
        finally:
            self._ws = None

        logger.info(f"连接 {self.id}: 已关闭，关闭码 {ws.protocol.close_code}，原因: {ws.protocol.close_reason or '无'}")
        self._record_close()
        self._schedule_retry()

    def _terminate(self):
        if self._ws is not None:
            # 直接中断底层传输，不等待关闭握手
            self._ws.transport.abort()
        elif self._task is not None and not self._task.done():
            self._task.cancel()


class HttpConnection(BaseConnection):
    """
    HTTP 连接

    一次请求/响应即一个连接周期：200-399 视为成功（open），否则视为失败（error）；
    无论成功失败，周期结束时都记录且只记录一次 close。只有失败才会重连。
    """

    transport_kind = TransportKind.HTTP

    def __init__(self, connection_id: int, target: str, stats, session: aiohttp.ClientSession,
                 method: str = 'GET', retry_delay: float = 5.0, row=None, tls=None,
                 timeout: float = HTTP_TIMEOUT):
        super().__init__(connection_id, target, stats, retry_delay, row, tls)
        self.method = method.upper()
        self.timeout = timeout
        self.last_status: Optional[int] = None
        self._session = session

    def is_connected(self) -> bool:
        return self.last_status is not None and 200 <= self.last_status < 300

    async def _run_attempt(self):
        kwargs = {'timeout': aiohttp.ClientTimeout(total=self.timeout)}
        if self.method in BODY_METHODS and self.row is not None:
            kwargs['json'] = self.row.to_dict()
        ssl_context = self._tls.for_url(self.resolved_target) if self._tls is not None else None
        if ssl_context is not None:
            kwargs['ssl'] = ssl_context

        succeeded = False
        status = None
        try:
            async with self._session.request(self.method, self.resolved_target, **kwargs) as response:
                status = response.status
                await response.read()

            if 200 <= status < 400:
                succeeded = True
                latency_ms = self._handle_open()
                logger.info(f"连接 {self.id}: {self.method} 请求完成，状态码 {status}，耗时 {latency_ms:.0f}ms")
            else:
                self._handle_failure(ConnectionAttemptError(f"状态码: {status}", status=status))

        except asyncio.TimeoutError:
            self._handle_failure(ConnectionAttemptError(f"请求超时 (>{self.timeout}s)"))

        except aiohttp.ClientError as e:
            self._handle_failure(ConnectionAttemptError(f"客户端错误: {e}"))

        except Exception as e:
            self._handle_failure(ConnectionAttemptError(f"未知错误: {e}"))

        finally:
            self.last_status = status
            self._record_close()

        if self.closing_intentionally:
            logger.debug(f"连接 {self.id}: 已标记关闭，请求结束后不再重连")
        elif succeeded:
            logger.debug(f"连接 {self.id}: 请求成功，无需重连")
        else:
            logger.info(f"连接 {self.id}: 请求失败，安排重连")
            self._schedule_retry()

    def _terminate(self):
        # 进行中的 HTTP 请求无法中断，只阻止后续重连
        logger.debug(f"连接 {self.id}: 已标记关闭")


def create_connection(
    transport_kind: TransportKind,
    connection_id: int,
    target: str,
    stats,
    retry_delay: float = 5.0,
    row=None,
    tls=None,
    session: Optional[aiohttp.ClientSession] = None,
    method: str = 'GET'
) -> BaseConnection:
    """按传输类型创建连接，PopulationManager 的默认连接工厂"""
    if transport_kind is TransportKind.HTTP:
        if session is None:
            raise ValueError("HTTP 连接需要共享的 aiohttp.ClientSession")
        return HttpConnection(connection_id, target, stats, session, method=method,
                              retry_delay=retry_delay, row=row, tls=tls)
    return WebSocketConnection(connection_id, target, stats, retry_delay=retry_delay, row=row, tls=tls)
