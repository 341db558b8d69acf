#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
缓存目录清单 - 展开配置中已知的第三方缓存位置，作为扫描根路径
"""

import glob
import os
from typing import Dict, List, Optional

from loguru import logger
from pydantic import BaseModel

from safeclean.config.manager import ConfigManager
from safeclean.core.guard import PathGuard

GROUPS = ("developer", "ai_agent", "browser", "application")


class CacheLocation(BaseModel):
    """展开后实际存在的缓存目录"""
    name: str
    group: str
    path: str
    size: int = 0


def expand_pattern(pattern: str) -> List[str]:
    """展开 ~、环境变量和通配符，只返回存在的目录"""
    expanded = os.path.expandvars(os.path.expanduser(pattern))
    if glob.has_magic(expanded):
        candidates = sorted(glob.glob(expanded))
    else:
        candidates = [expanded]
    return [os.path.normpath(p) for p in candidates if os.path.isdir(p)]


def directory_size(path: str) -> int:
    total = 0
    for root, _dirs, files in os.walk(path, onerror=lambda e: logger.debug(f"无法访问目录 {e.filename}")):
        for name in files:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except OSError:
                continue
    return total


class CacheCatalog:
    """已知缓存位置清单"""

    def __init__(self, config_manager=None, guard: Optional[PathGuard] = None,
                 locations: Optional[List[Dict]] = None):
        """初始化缓存清单

        Args:
            config_manager: 配置管理器实例，如果为None则创建新实例
            guard: 路径保护器，受保护的位置会被忽略
            locations: 覆盖 catalog.locations 的位置列表
        """
        self.config = config_manager or ConfigManager()
        self.guard = guard or PathGuard(config_manager=self.config)
        if locations is None:
            locations = self.config.get('catalog.locations', []) or []
        self.locations = [loc for loc in locations if isinstance(loc, dict) and loc.get('paths')]

    def groups(self) -> List[str]:
        return sorted({loc.get('group', 'application') for loc in self.locations})

    def find(self, group: Optional[str] = None, measure: bool = False) -> List[CacheLocation]:
        """展开清单中的位置

        Args:
            group: 只返回指定分组，None 返回全部
            measure: 是否计算目录大小，计算时跳过空目录

        Returns:
            存在于本机的缓存位置
        """
        found = []
        seen = set()
        for loc in self.locations:
            loc_group = loc.get('group', 'application')
            if group is not None and loc_group != group:
                continue
            for pattern in loc['paths']:
                for path in expand_pattern(pattern):
                    if path in seen:
                        continue
                    if self.guard.is_protected(path):
                        logger.debug(f"缓存位置受保护，跳过: {path}")
                        continue
                    seen.add(path)
                    size = directory_size(path) if measure else 0
                    if measure and size == 0:
                        continue
                    found.append(CacheLocation(name=loc.get('name', path), group=loc_group, path=path, size=size))

        logger.info(f"缓存清单展开完成: {len(found)} 个位置")
        return found

    def roots(self, group: Optional[str] = None) -> List[str]:
        """返回可以直接交给 Scanner.scan 的根路径"""
        return [loc.path for loc in self.find(group)]
