#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
校验和工具 - 分块计算文件的SHA256哈希值
"""

import hashlib
import threading
from typing import Optional

DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1MB


class ChecksumCancelled(Exception):
    """计算哈希时收到取消信号"""


class AnyEvent:
    """多个取消信号的组合，任一被设置即视为取消；None 会被忽略"""

    def __init__(self, *events):
        self._events = [e for e in events if e is not None]

    def is_set(self) -> bool:
        return any(e.is_set() for e in self._events)


def sha256_file(path, chunk_size: int = DEFAULT_CHUNK_SIZE,
                stop_event: Optional[threading.Event] = None) -> str:
    """计算文件的SHA256哈希值

    按块读取，内存占用与块大小成正比；每读一块检查一次取消信号。

    Args:
        path: 文件路径
        chunk_size: 读取块大小
        stop_event: 取消信号

    Returns:
        十六进制摘要

    Raises:
        OSError: 文件无法读取
        ChecksumCancelled: 计算过程中被取消
    """
    sha256 = hashlib.sha256()
    with open(path, 'rb') as f:
        while True:
            if stop_event is not None and stop_event.is_set():
                raise ChecksumCancelled(str(path))
            data = f.read(chunk_size)
            if not data:
                break
            sha256.update(data)
    return sha256.hexdigest()
