#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
连接压测工具
维持大量独立的模拟 WebSocket / HTTP 客户端连接，并把统计写入 InfluxDB
"""

__version__ = "0.1.0"
