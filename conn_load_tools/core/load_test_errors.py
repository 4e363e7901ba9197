#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
异常定义模块
压测运行器中所有可识别的错误类型
"""


class LoadTestError(Exception):
    """压测运行器异常基类"""


class ConfigurationError(LoadTestError, ValueError):
    """
    配置缺失或非法

    启动阶段抛出，属于致命错误，进程直接退出
    """


class ConnectionAttemptError(LoadTestError):
    """
    单次连接尝试失败（传输层错误、超时、非成功状态码）

    只影响当前连接，会被计入错误数并触发重连
    """

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status


class DataFeedError(LoadTestError):
    """
    数据队列不可用或数据行格式错误

    计算连接数时遇到该错误会回退到静态连接数
    """


class MetricsSinkError(LoadTestError):
    """
    指标写入或刷新失败

    记录日志后在下一次周期刷新时重试，不会阻塞连接流量
    """
