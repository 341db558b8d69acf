#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
错误类型 - 扫描、清理与还原过程中的错误分类

这些异常既可以被抛出，也会作为逐条错误累积在结果对象中返回。
"""

import errno
from collections import OrderedDict
from typing import Dict, Iterable, Optional


class SafeCleanError(Exception):
    """所有错误的基类"""

    kind = "unknown"
    description = "未知错误"

    def __init__(self, message: str = "", path: Optional[str] = None):
        self.path = path
        self.message = message
        super().__init__(message or self._default_message())

    def _default_message(self) -> str:
        if self.path:
            return f"{self.description}: {self.path}"
        return self.description

    def summary(self) -> str:
        """面向用户的可读描述"""
        return str(self)

    def __eq__(self, other):
        return (
            type(self) is type(other)
            and self.path == other.path
            and self.message == other.message
        )

    def __hash__(self):
        return hash((type(self).__name__, self.path, self.message))

    def __repr__(self):
        if self.path:
            return f"{type(self).__name__}(path={self.path!r})"
        return f"{type(self).__name__}({self.message!r})"


# ---------------------------------------------------------------- 扫描错误

class ScanError(SafeCleanError):
    """扫描错误"""


class ScanPermissionDenied(ScanError):
    kind = "permission_denied"
    description = "没有权限访问"

    def __init__(self, path: str):
        super().__init__(path=path)


class ScanPathNotFound(ScanError):
    kind = "path_not_found"
    description = "路径不存在"

    def __init__(self, path: str):
        super().__init__(path=path)


class ScanCancelled(ScanError):
    """扫描被取消；partial_result 保存取消前已收集的结果"""
    kind = "cancelled"
    description = "扫描已取消"

    def __init__(self, partial_result=None):
        self.partial_result = partial_result
        super().__init__()


class DuplicateSearchCancelled(ScanError):
    """重复文件检测被取消；partial_groups 是取消前已确认的重复组"""
    kind = "duplicate_search_cancelled"
    description = "重复文件检测已取消"

    def __init__(self, partial_groups=None):
        self.partial_groups = list(partial_groups or [])
        super().__init__()


class ScanUnknownError(ScanError):
    kind = "unknown"
    description = "扫描时发生未知错误"

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, path=path)


# ---------------------------------------------------------------- 清理错误

class CleanupError(SafeCleanError):
    """清理错误"""


class FileProtected(CleanupError):
    kind = "file_protected"
    description = "文件受保护，已跳过"

    def __init__(self, path: str):
        super().__init__(path=path)


class FileInUse(CleanupError):
    kind = "file_in_use"
    description = "文件正在使用，已跳过"

    def __init__(self, path: str):
        super().__init__(path=path)


class CleanupPermissionDenied(CleanupError):
    kind = "permission_denied"
    description = "没有权限删除"

    def __init__(self, path: str):
        super().__init__(path=path)


class CleanupFileNotFound(CleanupError):
    kind = "file_not_found"
    description = "文件不存在"

    def __init__(self, path: str):
        super().__init__(path=path)


class CleanupCancelled(CleanupError):
    kind = "cancelled"
    description = "清理已取消，已删除的文件已回滚"

    def __init__(self):
        super().__init__()


class BackupFailed(CleanupError):
    kind = "backup_failed"
    description = "备份失败，未删除任何文件"

    def __init__(self, message: str):
        super().__init__(message)

    def summary(self) -> str:
        return f"{self.description}: {self.message}"


class CleanupUnknownError(CleanupError):
    kind = "unknown"
    description = "清理时发生未知错误"

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, path=path)


class DuplicatePreservationError(CleanupError):
    """保留映射会导致某个重复组被整组删除"""
    kind = "duplicate_preservation"
    description = "重复文件组必须至少保留一个文件"

    def __init__(self, group_hash: str):
        self.group_hash = group_hash
        super().__init__(f"{self.description}: {group_hash}")


class InvalidStateTransition(CleanupError):
    kind = "invalid_state"
    description = "非法的清理状态转换"

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"{self.description}: {current} -> {target}")


# ---------------------------------------------------------------- 还原错误

class RestoreError(SafeCleanError):
    """还原错误"""


class BackupNotFound(RestoreError):
    kind = "backup_not_found"
    description = "备份不存在"

    def __init__(self, path: Optional[str] = None):
        super().__init__(path=path)


class BackupCorrupted(RestoreError):
    kind = "backup_corrupted"
    description = "备份已损坏或校验失败"

    def __init__(self, path: Optional[str] = None, message: str = ""):
        super().__init__(message, path=path)


class DestinationNotWritable(RestoreError):
    kind = "destination_not_writable"
    description = "还原目标不可写"

    def __init__(self, path: str):
        super().__init__(path=path)


class InsufficientSpace(RestoreError):
    kind = "insufficient_space"
    description = "磁盘空间不足"

    def __init__(self, required: int, available: int, path: Optional[str] = None):
        self.required = required
        self.available = available
        super().__init__(
            f"{self.description}: 需要 {required} 字节, 可用 {available} 字节",
            path=path,
        )


class RestoreUnknownError(RestoreError):
    kind = "unknown"
    description = "还原时发生未知错误"

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, path=path)


def cleanup_error_from_os_error(exc: OSError, path: str) -> CleanupError:
    """把删除时的 OSError 映射为清理错误"""
    if isinstance(exc, CleanupError):
        return exc
    if isinstance(exc, PermissionError) or getattr(exc, 'errno', None) in (errno.EACCES, errno.EPERM):
        return CleanupPermissionDenied(path)
    if isinstance(exc, FileNotFoundError) or getattr(exc, 'errno', None) == errno.ENOENT:
        return CleanupFileNotFound(path)
    return CleanupUnknownError(str(exc), path=path)


def summarize_errors(errors: Iterable[SafeCleanError]) -> Dict[str, str]:
    """按错误类型汇总，每种类型生成一行可读描述

    Returns:
        {错误类型: 描述}，按首次出现的顺序排列
    """
    grouped: "OrderedDict[str, list]" = OrderedDict()
    for error in errors:
        key = f"{_family(error)}.{error.kind}"
        grouped.setdefault(key, []).append(error)

    summary = OrderedDict()
    for key, items in grouped.items():
        first = items[0]
        line = first.summary() if len(items) == 1 else f"{first.description} ({len(items)} 项)，例如 {first.path or first.message}"
        summary[key] = line
    return summary


def _family(error: SafeCleanError) -> str:
    for family in (ScanError, CleanupError, RestoreError):
        if isinstance(error, family):
            return family.__name__
    return SafeCleanError.__name__
