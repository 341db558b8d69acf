#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
分类模块 - 为扫描到的文件打上清理类别并检测重复文件
"""

import os
import re
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set

from loguru import logger

from safeclean.config.manager import ConfigManager
from safeclean.core.checksum import AnyEvent, ChecksumCancelled, sha256_file
from safeclean.core.guard import PathGuard
from safeclean.data.errors import DuplicateSearchCancelled
from safeclean.data.models import (
    AnalysisResult, CategoryTag, DownloadsFileInfo, DownloadsFileType, DuplicateGroup,
    FileKind, FileRecord, LogFileInfo, ScanResult,
)

MIN_AGE_THRESHOLD_DAYS = 30
MAX_AGE_THRESHOLD_DAYS = 1095
OLD_DOWNLOAD_DAYS = 90
MB = 1024 * 1024

DOWNLOAD_TYPE_EXTENSIONS = (
    (DownloadsFileType.DOCUMENT, {
        'pdf', 'doc', 'docx', 'xls', 'xlsx', 'ppt', 'pptx', 'pages', 'numbers', 'key',
        'rtf', 'txt', 'csv', 'odt', 'ods', 'odp',
    }),
    (DownloadsFileType.IMAGE, {
        'jpg', 'jpeg', 'png', 'gif', 'bmp', 'tiff', 'tif', 'heic', 'heif', 'webp',
        'svg', 'ico', 'raw', 'cr2', 'nef', 'dng',
    }),
    (DownloadsFileType.ARCHIVE, {
        'zip', 'tar', 'gz', 'bz2', '7z', 'rar', 'xz', 'tgz', 'tbz2', 'iso', 'sit', 'sitx', 'zipx',
    }),
    (DownloadsFileType.INSTALLER, {'dmg', 'pkg', 'app', 'mpkg', 'exe', 'msi', 'deb', 'rpm', 'appimage'}),
)

Predicate = Callable[[FileRecord], bool]


def clamp_age_threshold(threshold_days: int) -> int:
    """把旧文件天数阈值限制在 [30, 1095]"""
    return max(MIN_AGE_THRESHOLD_DAYS, min(MAX_AGE_THRESHOLD_DAYS, int(threshold_days)))


def _lower_list(values: Optional[Iterable[str]]) -> List[str]:
    return [v.lower() for v in values or []]


class Classifier:
    """文件分类器，负责类别判断、重复检测和筛选排序"""

    def __init__(self, guard: Optional[PathGuard] = None, config_manager=None,
                 now: Optional[Callable[[], datetime]] = None):
        """初始化分类器

        Args:
            guard: 路径保护器，受保护文件不会被归为旧文件
            config_manager: 配置管理器实例，如果为None则创建新实例
            now: 返回当前时间的函数，便于测试
        """
        self.config = config_manager or ConfigManager()
        self.guard = guard or PathGuard(config_manager=self.config)
        self._now = now or datetime.now
        self._stop_event = threading.Event()

        self.large_file_size = int(float(self.config.get('classifier.large_file_mb', 100)) * MB)
        self.old_file_days = clamp_age_threshold(self.config.get('classifier.old_file_days', 365))
        self.duplicate_min_size = int(float(self.config.get('classifier.duplicate_min_size_mb', 1)) * MB)
        self.hash_chunk_size = int(self.config.get('classifier.hash_chunk_kb', 1024)) * 1024

        self.system_cache_roots = [
            os.path.normpath(os.path.expanduser(p)).lower()
            for p in self.config.get('classifier.system_cache_roots', []) or []
        ]
        self.cache_markers = _lower_list(self.config.get('classifier.cache_markers', ['/library/caches/', '/.cache/']))
        self.browser_cache_markers = _lower_list(self.config.get('classifier.browser_cache_markers', []))
        self.log_markers = _lower_list(self.config.get('classifier.log_markers', ['/logs/', '/log/']))
        self.log_extensions = _lower_list(self.config.get('classifier.log_extensions', ['.log']))
        self.temp_markers = _lower_list(self.config.get('classifier.temp_markers', ['/tmp/']))
        self.temp_extensions = _lower_list(self.config.get('classifier.temp_extensions', ['.tmp', '.temp']))
        self.download_markers = _lower_list(self.config.get('classifier.download_markers', ['/downloads/']))

    def cancel(self) -> None:
        """请求取消当前的重复检测，空闲时调用则作用于下一次检测"""
        self._stop_event.set()

    # ------------------------------------------------------------------ 分类

    def classify(self, record: FileRecord) -> Set[CategoryTag]:
        """判断文件属于哪些清理类别，各规则独立判断

        Args:
            record: 文件记录

        Returns:
            类别集合，可能为空
        """
        tags: Set[CategoryTag] = set()
        path_lower = record.path.lower()
        ext = os.path.splitext(path_lower)[1]

        cache_tag = self._cache_tag(path_lower)
        if cache_tag is not None:
            tags.add(cache_tag)

        if any(m in path_lower for m in self.log_markers) or ext in self.log_extensions:
            tags.add(CategoryTag.LOG)

        if any(m in path_lower for m in self.temp_markers) or ext in self.temp_extensions:
            tags.add(CategoryTag.TEMP)

        if any(m in path_lower for m in self.download_markers):
            tags.add(CategoryTag.DOWNLOADS)

        if record.size >= self.large_file_size:
            tags.add(CategoryTag.LARGE)

        if record.age_days(self._now()) >= self.old_file_days:
            is_bundle = record.kind == FileKind.APPLICATION or ext == '.app' or '.app/' in path_lower
            if not is_bundle and not self.guard.is_protected(record.path):
                tags.add(CategoryTag.OLD)

        return tags

    def _cache_tag(self, path_lower: str) -> Optional[CategoryTag]:
        for root in self.system_cache_roots:
            if path_lower == root or path_lower.startswith(root.rstrip('/') + '/'):
                return CategoryTag.SYSTEM_CACHE
        if not any(m in path_lower for m in self.cache_markers):
            return None
        if any(m in path_lower for m in self.browser_cache_markers):
            return CategoryTag.BROWSER_CACHE
        return CategoryTag.APP_CACHE

    def analyze(self, scan_result: ScanResult, find_duplicates: bool = True,
                stop_event: Optional[threading.Event] = None) -> AnalysisResult:
        """对扫描结果做完整分析：分类、总大小、重复文件

        Raises:
            DuplicateSearchCancelled: 重复检测被取消
        """
        categorized: Dict[CategoryTag, List[FileRecord]] = {tag: [] for tag in CategoryTag}
        for record in scan_result.files:
            for tag in self.classify(record):
                categorized[tag].append(record)

        groups = self.find_duplicates(scan_result.files, stop_event=stop_event) if find_duplicates else []
        for group in groups:
            categorized[CategoryTag.DUPLICATE].extend(group.files[1:])

        total = self.calculate_savings(scan_result.files)
        return AnalysisResult(
            categorized=categorized,
            total_size=total,
            potential_savings=total,
            duplicate_groups=groups,
        )

    # ------------------------------------------------------------------ 重复检测

    def find_duplicates(self, records: Iterable[FileRecord],
                        on_progress: Optional[Callable[[int, int], None]] = None,
                        stop_event: Optional[threading.Event] = None) -> List[DuplicateGroup]:
        """按内容哈希检测重复文件

        只处理不小于最小阈值的文件；先按大小分桶，只有大小相同的候选才计算哈希。

        Args:
            records: 文件记录
            on_progress: 回调 (已哈希数量, 候选总数)
            stop_event: 外部取消信号，与 cancel() 同时生效

        Returns:
            重复文件组列表（每组至少两个成员）

        Raises:
            DuplicateSearchCancelled: 检测被取消，异常携带已确认的重复组
        """
        stop = AnyEvent(self._stop_event, stop_event)
        try:
            return self._find_duplicates(records, on_progress, stop)
        finally:
            self._stop_event.clear()

    def _find_duplicates(self, records, on_progress, stop: AnyEvent) -> List[DuplicateGroup]:
        by_size: "OrderedDict[int, List[FileRecord]]" = OrderedDict()
        seen: Set[str] = set()
        for record in records:
            if record.size < self.duplicate_min_size or record.path in seen:
                continue
            seen.add(record.path)
            by_size.setdefault(record.size, []).append(record)

        candidates = [r for bucket in by_size.values() if len(bucket) > 1 for r in bucket]
        by_hash: "OrderedDict[str, List[FileRecord]]" = OrderedDict()
        for index, record in enumerate(candidates):
            try:
                if stop.is_set():
                    raise ChecksumCancelled(record.path)
                digest = sha256_file(record.path, self.hash_chunk_size, stop)
            except ChecksumCancelled:
                partial = _groups_from(by_hash)
                logger.info(f"重复文件检测已取消，已确认 {len(partial)} 组")
                raise DuplicateSearchCancelled(partial) from None
            except OSError as e:
                logger.debug(f"无法计算文件哈希值 {record.path}: {e}")
                continue
            # 大小与哈希共同作为分组键
            by_hash.setdefault(f"{record.size}:{digest}", []).append(record)
            if on_progress is not None:
                on_progress(index + 1, len(candidates))

        groups = _groups_from(by_hash)
        if groups:
            wasted = sum(g.wasted_space for g in groups)
            logger.info(f"发现 {len(groups)} 组重复文件，总可清理大小: {wasted / MB:.2f} MB")
        return groups

    # ------------------------------------------------------------------ 筛选排序

    def clamp_age_threshold(self, threshold_days: int) -> int:
        return clamp_age_threshold(threshold_days)

    def filter_by_age(self, records: Iterable[FileRecord], threshold_days: int) -> List[FileRecord]:
        """筛选访问时间早于阈值的文件，阈值先被限制在 [30, 1095]"""
        threshold = timedelta(days=clamp_age_threshold(threshold_days))
        now = self._now()
        return [r for r in records if now - r.accessed_time > threshold]

    def filter_by_size(self, records: Iterable[FileRecord], threshold_bytes: int) -> List[FileRecord]:
        return [r for r in records if r.size >= threshold_bytes]

    def filter_by_type(self, records: Iterable[FileRecord], kind: FileKind,
                       extension: Optional[str] = None) -> List[FileRecord]:
        """按文件类型筛选；other 类型需要同时匹配扩展名"""
        kind = FileKind(kind)
        result = []
        for r in records:
            if r.kind != kind:
                continue
            if kind == FileKind.OTHER and extension is not None and r.extension != extension.lower().lstrip('.'):
                continue
            result.append(r)
        return result

    def filter_by_name(self, records: Iterable[FileRecord], pattern: str,
                       case_sensitive: bool = False) -> List[FileRecord]:
        """按文件名筛选，支持 * 和 ? 通配符"""
        regex_pattern = re.escape(pattern).replace(r'\*', '.*').replace(r'\?', '.')
        flags = 0 if case_sensitive else re.IGNORECASE
        regex = re.compile(f"^{regex_pattern}$", flags)
        return [r for r in records if regex.match(r.name)]

    def filter_by_category(self, records: Iterable[FileRecord], tag: CategoryTag) -> List[FileRecord]:
        tag = CategoryTag(tag)
        return [r for r in records if tag in self.classify(r)]

    @staticmethod
    def apply_filters(records: Iterable[FileRecord], filters: Iterable[Predicate]) -> List[FileRecord]:
        filters = list(filters)
        return [r for r in records if all(f(r) for f in filters)]

    @staticmethod
    def sort_by_size(records: Iterable[FileRecord], descending: bool = True) -> List[FileRecord]:
        return sorted(records, key=lambda r: r.size, reverse=descending)

    @staticmethod
    def sort_by_name(records: Iterable[FileRecord]) -> List[FileRecord]:
        return sorted(records, key=lambda r: r.name.lower())

    @staticmethod
    def sort_by_age(records: Iterable[FileRecord], oldest_first: bool = True) -> List[FileRecord]:
        return sorted(records, key=lambda r: r.accessed_time, reverse=not oldest_first)

    @staticmethod
    def calculate_savings(records: Iterable[FileRecord]) -> int:
        return sum(r.size for r in records)

    # ------------------------------------------------------------------ 日志与下载

    def log_file_info(self, records: Iterable[FileRecord]) -> List[LogFileInfo]:
        now = self._now()
        return [
            LogFileInfo(
                record=r,
                application=log_application_name(r.path),
                age_days=int((now - r.modified_time).total_seconds() // 86400),
            )
            for r in records
        ]

    def categorize_logs_by_application(self, records: Iterable[FileRecord]) -> Dict[str, List[LogFileInfo]]:
        """按产生日志的应用分组"""
        grouped: Dict[str, List[LogFileInfo]] = {}
        for info in self.log_file_info(records):
            grouped.setdefault(info.application, []).append(info)
        return grouped

    def downloads_file_info(self, records: Iterable[FileRecord]) -> List[DownloadsFileInfo]:
        now = self._now()
        return [
            DownloadsFileInfo(
                record=r,
                downloads_type=downloads_type_for(r.path),
                is_old_download=now - r.accessed_time > timedelta(days=OLD_DOWNLOAD_DAYS),
            )
            for r in records
        ]

    def categorize_downloads_by_type(self, records: Iterable[FileRecord]) -> Dict[DownloadsFileType, List[DownloadsFileInfo]]:
        grouped: Dict[DownloadsFileType, List[DownloadsFileInfo]] = {}
        for info in self.downloads_file_info(records):
            grouped.setdefault(info.downloads_type, []).append(info)
        return grouped

    def filter_old_downloads(self, records: Iterable[FileRecord]) -> List[FileRecord]:
        """下载目录中超过90天未访问的文件"""
        return [info.record for info in self.downloads_file_info(records) if info.is_old_download]


def log_application_name(path: str) -> str:
    """从日志路径推断应用名称"""
    path_lower = path.lower()
    name = os.path.basename(path)

    if path_lower.startswith('/var/log/') or path_lower.startswith('/private/var/log/'):
        stem = name.split('.')[0]
        return f"System ({stem})" if stem else "System"

    for marker in ('/library/logs/', '/application support/', '/.local/state/'):
        index = path_lower.find(marker)
        if index >= 0:
            app = path[index + len(marker):].split('/')[0]
            if app and app != name:
                return app

    return "Unknown"


def downloads_type_for(path: str) -> DownloadsFileType:
    ext = os.path.splitext(path)[1].lower().lstrip('.')
    for downloads_type, extensions in DOWNLOAD_TYPE_EXTENSIONS:
        if ext in extensions:
            return downloads_type
    return DownloadsFileType.OTHER


def _groups_from(by_hash) -> List[DuplicateGroup]:
    return [
        DuplicateGroup(hash=key.split(':', 1)[1], files=files)
        for key, files in by_hash.items() if len(files) > 1
    ]
