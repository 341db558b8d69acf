#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
扫描模块 - 负责递归扫描目录并收集文件元数据
"""

import os
import stat
import threading
import time
from datetime import datetime
from typing import Callable, Generator, Iterable, List, Optional, Set, Tuple

from loguru import logger

from safeclean.config.manager import ConfigManager
from safeclean.core.checksum import AnyEvent
from safeclean.core.guard import PathGuard
from safeclean.data.errors import (
    ScanCancelled, ScanError, ScanPathNotFound, ScanPermissionDenied, ScanUnknownError,
)
from safeclean.data.models import (
    CategoryTag, FileKind, FilePermissions, FileRecord, ScanProgress, ScanResult, category_set,
)

DEFAULT_BATCH_SIZE = 1000

ARCHIVE_EXTENSIONS = {'zip', 'tar', 'gz', 'bz2', '7z', 'rar', 'dmg', 'pkg', 'xz', 'tgz', 'iso'}
MEDIA_EXTENSIONS = {
    'jpg', 'jpeg', 'png', 'gif', 'bmp', 'tiff', 'heic', 'webp',
    'mp4', 'mov', 'avi', 'mkv', 'mp3', 'm4a', 'wav', 'aac', 'flac',
}
DOCUMENT_EXTENSIONS = {
    'pdf', 'doc', 'docx', 'xls', 'xlsx', 'ppt', 'pptx', 'pages', 'numbers',
    'key', 'rtf', 'odt', 'ods', 'odp', 'md',
}

ProgressCallback = Callable[[ScanProgress], None]


def determine_file_kind(path: str) -> Tuple[FileKind, str]:
    """根据路径和扩展名判断文件类型

    Returns:
        (文件类型, 小写扩展名)
    """
    path_lower = path.lower()
    ext = os.path.splitext(path_lower)[1].lstrip('.')

    # 明确的扩展名优先于所在目录
    if ext in {'tmp', 'temp', 'swp', 'part', 'crdownload'}:
        return FileKind.TEMPORARY, ext
    if ext == 'cache':
        return FileKind.CACHE, ext
    if ext == 'log' or '.log.' in os.path.basename(path_lower):
        return FileKind.LOG, ext

    if '/caches/' in path_lower or '/cache/' in path_lower or '/.cache/' in path_lower:
        return FileKind.CACHE, ext
    if '/logs/' in path_lower or '/log/' in path_lower:
        return FileKind.LOG, ext
    if '/tmp/' in path_lower or '/temp/' in path_lower:
        return FileKind.TEMPORARY, ext

    if ext == 'app' or '.app/' in path_lower:
        return FileKind.APPLICATION, ext
    if ext in ARCHIVE_EXTENSIONS:
        return FileKind.ARCHIVE, ext
    if ext in MEDIA_EXTENSIONS:
        return FileKind.MEDIA, ext
    if ext in DOCUMENT_EXTENSIONS:
        return FileKind.DOCUMENT, ext

    return FileKind.OTHER, ext


def probe_in_use(path: str) -> bool:
    """尝试以读写方式打开文件，失败且文件仍存在时视为被占用"""
    if os.path.isdir(path):
        return not os.access(path, os.W_OK)
    try:
        with open(path, 'r+b'):
            pass
        return False
    except OSError:
        return os.path.exists(path)


class Scanner:
    """文件扫描器类，负责扫描目录树"""

    def __init__(self, guard: Optional[PathGuard] = None, config_manager=None,
                 classifier=None, batch_size: Optional[int] = None,
                 probe_in_use: Optional[bool] = None):
        """初始化扫描器

        Args:
            guard: 路径保护器，受保护的子树不会被遍历
            config_manager: 配置管理器实例，如果为None则创建新实例
            classifier: 分类器，指定类别过滤时用于筛选文件
            batch_size: 批大小，达到后刷新结果并回调进度
            probe_in_use: 是否在扫描时探测文件占用
        """
        self.config = config_manager or ConfigManager()
        self.guard = guard or PathGuard(config_manager=self.config)
        self.classifier = classifier
        self.batch_size = max(1, int(batch_size or self.config.get('scanner.batch_size', DEFAULT_BATCH_SIZE)))
        self.follow_links = bool(self.config.get('scanner.follow_links', False))
        if probe_in_use is None:
            probe_in_use = bool(self.config.get('scanner.probe_in_use', False))
        self.probe_in_use = probe_in_use
        self._stop_event = threading.Event()

    def cancel(self) -> None:
        """请求取消当前扫描，空闲时调用则作用于下一次扫描"""
        logger.info("正在停止扫描任务...")
        self._stop_event.set()

    def is_cancelled(self) -> bool:
        return self._stop_event.is_set()

    def scan(self, roots: Iterable, categories: Optional[Iterable] = None,
             on_progress: Optional[ProgressCallback] = None,
             stop_event: Optional[threading.Event] = None) -> ScanResult:
        """扫描给定根路径

        Args:
            roots: 根路径列表
            categories: 类别过滤，为空时保留所有文件
            on_progress: 进度回调，每刷新一批调用一次
            stop_event: 外部取消信号，与 cancel() 同时生效

        Returns:
            扫描结果（文件列表、错误列表、耗时）

        Raises:
            ScanCancelled: 扫描被取消，异常携带已收集的部分结果
        """
        try:
            return self._scan(roots, categories, on_progress, AnyEvent(self._stop_event, stop_event))
        finally:
            self._stop_event.clear()

    def _scan(self, roots: Iterable, categories: Optional[Iterable],
              on_progress: Optional[ProgressCallback], stop: AnyEvent) -> ScanResult:
        roots = [os.path.abspath(os.path.expanduser(os.fspath(r))) for r in roots]
        wanted = category_set(categories)
        if wanted and self.classifier is None:
            from safeclean.core.classifier import Classifier
            self.classifier = Classifier(guard=self.guard, config_manager=self.config)

        start = time.monotonic()
        result = ScanResult(roots=roots)
        scanned = 0

        logger.info(f"开始扫描 {len(roots)} 个根路径")
        for index, root in enumerate(roots):
            if stop.is_set():
                break

            if self.guard.is_protected(root):
                logger.info(f"根路径受保护，跳过: {root}")
                continue

            if not os.path.lexists(root):
                logger.warning(f"路径不存在，跳过: {root}")
                result.errors.append(ScanPathNotFound(root))
                continue

            logger.info(f"开始扫描路径: {root}")
            batch: List[FileRecord] = []
            for entry_path, st, error in self._walk(root, stop):
                if error is not None:
                    result.errors.append(error)
                    continue

                record = self._make_record(entry_path, st)
                if record is None:
                    continue
                if wanted and not self._matches(record, wanted):
                    continue

                batch.append(record)
                scanned += 1
                if len(batch) >= self.batch_size:
                    result.files.extend(batch)
                    batch = []
                    self._report(on_progress, entry_path, scanned, index / len(roots))

            # 刷新剩余批次
            if batch:
                result.files.extend(batch)

            if stop.is_set():
                break
            self._report(on_progress, root, scanned, (index + 1) / len(roots))

        result.duration_seconds = time.monotonic() - start
        if stop.is_set():
            logger.info(f"扫描已取消，已收集 {len(result.files)} 个文件")
            raise ScanCancelled(partial_result=result)

        result.is_complete = True
        logger.info(
            f"扫描完成: {len(result.files)} 个文件, {len(result.errors)} 个错误, "
            f"耗时 {result.duration_seconds:.2f}s"
        )
        return result

    def _walk(self, root: str, stop) -> Generator[Tuple[str, Optional[os.stat_result], Optional[ScanError]], None, None]:
        """深度优先遍历，跳过受保护的子树

        Yields:
            (路径, 状态, 错误) 元组；出错时状态为None
        """
        try:
            root_st = os.stat(root, follow_symlinks=self.follow_links)
        except PermissionError:
            yield root, None, ScanPermissionDenied(root)
            return
        except OSError as e:
            yield root, None, ScanUnknownError(str(e), path=root)
            return

        if not stat.S_ISDIR(root_st.st_mode):
            yield root, root_st, None
            return

        stack = [root]
        while stack:
            if stop.is_set():
                return
            current = stack.pop()
            try:
                with os.scandir(current) as it:
                    entries = sorted(it, key=lambda e: e.name)
            except PermissionError:
                logger.debug(f"无法访问目录 {current}")
                yield current, None, ScanPermissionDenied(current)
                continue
            except FileNotFoundError:
                # 遍历期间被删除
                continue
            except OSError as e:
                yield current, None, ScanUnknownError(str(e), path=current)
                continue

            subdirs = []
            for entry in entries:
                if stop.is_set():
                    return
                if self.guard.is_protected(entry.path):
                    logger.debug(f"受保护路径，跳过: {entry.path}")
                    continue
                try:
                    if entry.is_dir(follow_symlinks=self.follow_links):
                        subdirs.append(entry.path)
                        continue
                    st = entry.stat(follow_symlinks=self.follow_links)
                except PermissionError:
                    yield entry.path, None, ScanPermissionDenied(entry.path)
                    continue
                except FileNotFoundError:
                    continue
                except OSError as e:
                    yield entry.path, None, ScanUnknownError(str(e), path=entry.path)
                    continue
                yield entry.path, st, None

            # 逆序压栈，保持按名称的稳定遍历顺序
            stack.extend(reversed(subdirs))

    def _make_record(self, path: str, st: os.stat_result) -> Optional[FileRecord]:
        """根据文件状态创建 FileRecord"""
        if stat.S_ISDIR(st.st_mode):
            return None
        kind, ext = determine_file_kind(path)
        created = getattr(st, 'st_birthtime', None) or st.st_ctime
        parent = os.path.dirname(path)
        permissions = FilePermissions(
            readable=os.access(path, os.R_OK),
            writable=os.access(path, os.W_OK),
            deletable=os.access(parent, os.W_OK | os.X_OK),
        )
        try:
            return FileRecord(
                path=path,
                size=max(0, st.st_size),
                created_time=datetime.fromtimestamp(created),
                modified_time=datetime.fromtimestamp(st.st_mtime),
                accessed_time=datetime.fromtimestamp(st.st_atime),
                kind=kind,
                extension=ext,
                permissions=permissions,
                in_use=probe_in_use(path) if self.probe_in_use else False,
            )
        except (ValueError, OverflowError, OSError) as e:
            logger.debug(f"处理文件失败 {path}: {e}")
            return None

    def _matches(self, record: FileRecord, wanted: Set[CategoryTag]) -> bool:
        tags = self.classifier.classify(record)
        if tags & wanted:
            return True
        # 重复文件需要哈希比较，这里只按大小预筛
        return CategoryTag.DUPLICATE in wanted and record.size >= self.classifier.duplicate_min_size

    @staticmethod
    def _report(on_progress: Optional[ProgressCallback], path: str, scanned: int, fraction: float) -> None:
        if on_progress is None:
            return
        on_progress(ScanProgress(current_path=path, files_scanned=scanned,
                                 fraction_complete=min(1.0, max(0.0, fraction))))

