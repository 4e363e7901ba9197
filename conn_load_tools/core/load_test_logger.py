#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
日志配置模块
所有模块共用同一个命名 logger，这里只负责挂载控制台输出
"""

import logging
from typing import Union

LOGGER_NAME = "Load_Runner"

DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 配置中的日志级别 -> logging 常量
LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}


def get_level(level: Union[str, int]) -> int:
    """把 'debug' / 'info' / 'warn' / 'error' 转换为 logging 级别"""
    if isinstance(level, int):
        return level
    return LOG_LEVELS.get(str(level).lower(), logging.INFO)


def setup_logging(level: Union[str, int] = 'info', runner_id: str = '-') -> logging.Logger:
    """
    初始化控制台日志

    重复调用会替换之前挂载的 handler，不会重复输出

    Args:
        level: 日志级别
        runner_id: 运行器标识，写入每一行日志

    Returns:
        配置好的 logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        f"%(asctime)s [%(levelname)s] [{runner_id}]: %(message)s",
        DEFAULT_DATE_FORMAT
    ))
    logger.addHandler(handler)
    logger.setLevel(get_level(level))
    logger.propagate = False

    logger.info(f"日志初始化完成，级别: {level}")
    logger.info(f"Runner ID: {runner_id}")
    return logger
