#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
URL模板解析
把 @{name} 形式的变量替换为数据行中的值
"""

import logging
import re
from typing import List, Mapping, Optional

logger = logging.getLogger("Load_Runner")

VARIABLE_PATTERN = re.compile(r'@\{([^}]+)\}')


class TemplateResolver:
    """URL模板解析器，解析失败不会抛异常，未解析的变量原样保留"""

    def __init__(self, template: str):
        self.template = template
        self.variables = find_variables(template)

    def resolve(self, row: Optional[Mapping[str, str]] = None, connection_id: Optional[int] = None) -> str:
        """
        用数据行替换模板中的变量

        Args:
            row: 数据行，None 表示没有可用数据
            connection_id: 连接编号，仅用于日志

        Returns:
            替换后的URL
        """
        label = f"连接 {connection_id}" if connection_id is not None else "模板解析"

        if not self.variables:
            return self.template

        if row is None:
            logger.debug(f"{label}: 没有可用的测试数据，使用原始URL")
            logger.warning(f"{label}: 以下变量未被替换: {', '.join(self.variables)}")
            return self.template

        missing: List[str] = []

        def replace(match):
            name = match.group(1)
            if name in row and row[name] is not None:
                return str(row[name])
            if name not in missing:
                missing.append(name)
            return match.group(0)

        url = VARIABLE_PATTERN.sub(replace, self.template)

        if missing:
            logger.warning(f"{label}: 测试数据中找不到变量 {', '.join('@{' + m + '}' for m in missing)}")
        logger.debug(f"{label}: URL解析结果 {url}")
        return url


def find_variables(template: str) -> List[str]:
    """按出现顺序返回模板中的变量名（去重）"""
    names = []
    for name in VARIABLE_PATTERN.findall(template):
        if name not in names:
            names.append(name)
    return names


def resolve_url(template: str, row: Optional[Mapping[str, str]] = None) -> str:
    """一次性解析，等价于 TemplateResolver(template).resolve(row)"""
    return TemplateResolver(template).resolve(row)
