#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
任务管理器 - 在后台线程中运行扫描、清理和还原任务
"""

import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

from loguru import logger
from pydantic import BaseModel, ConfigDict

from safeclean.config.manager import ConfigManager
from safeclean.core.archive import ArchiveStore
from safeclean.core.classifier import Classifier
from safeclean.core.executor import CleanupExecutor
from safeclean.core.guard import PathGuard
from safeclean.core.scanner import Scanner
from safeclean.data.errors import DuplicateSearchCancelled, SafeCleanError, ScanCancelled
from safeclean.data.models import (
    CleanupOptions, CleanupOutcome, CleanupProgress, CleanupSelection, CleanupState,
    DuplicateGroup, FileRecord, ScanProgress,
)


class TaskInfo(BaseModel):
    """后台任务的状态快照"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    task_id: str
    kind: str                                     # scan / cleanup / duplicate_cleanup / log_cleanup / restore
    status: str = "pending"                       # pending / running / completed / cancelled / failed
    progress: float = 0.0
    message: str = ""
    created_time: datetime
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    result: Any = None
    analysis: Any = None
    error: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.status in ("completed", "cancelled", "failed")


class _Task:
    def __init__(self, info: TaskInfo, cancellables: Sequence[Any], paths: Set[str]):
        self.info = info
        self.cancellables = list(cancellables)
        self.paths = paths
        self.done = threading.Event()
        self.cancel_event = threading.Event()
        self.thread: Optional[threading.Thread] = None


class TaskManager:
    """任务管理器类，统一管理扫描和清理任务"""

    def __init__(self, config_manager: Optional[ConfigManager] = None, guard: Optional[PathGuard] = None,
                 archive_store: Optional[ArchiveStore] = None,
                 trash: Optional[Callable[[str], None]] = None,
                 remover: Optional[Callable[[str], None]] = None):
        """初始化任务管理器

        Args:
            config_manager: 配置管理器实例，如果为None则创建新实例
            guard: 所有任务共享的路径保护器
            archive_store: 所有任务共享的归档存储
            trash: 传给清理执行器的废纸篓函数
            remover: 传给清理执行器的永久删除函数
        """
        if isinstance(config_manager, str):
            config_manager = ConfigManager(config_manager)
        self.config = config_manager or ConfigManager()
        self.guard = guard or PathGuard(config_manager=self.config)
        self.archive_store = archive_store or ArchiveStore(config_manager=self.config)
        self._trash = trash
        self._remover = remover

        self._lock = threading.Lock()
        self._tasks: Dict[str, _Task] = {}

    # ------------------------------------------------------------------ 启动

    def start_scan(self, roots: Iterable, categories: Optional[Iterable] = None,
                   analyze: bool = False) -> str:
        """启动新的扫描任务

        Args:
            roots: 要扫描的根路径
            categories: 类别过滤
            analyze: 扫描完成后是否继续分类并检测重复文件

        Returns:
            扫描任务ID
        """
        roots = list(roots)
        classifier = Classifier(guard=self.guard, config_manager=self.config)
        scanner = Scanner(guard=self.guard, config_manager=self.config, classifier=classifier)
        task = self._create("scan", [scanner, classifier])

        def on_progress(progress: ScanProgress):
            self._update(task, progress.fraction_complete * (0.5 if analyze else 1.0),
                         f"已扫描 {progress.files_scanned} 个文件")

        def work():
            try:
                result = scanner.scan(roots, categories=categories, on_progress=on_progress,
                                      stop_event=task.cancel_event)
            except ScanCancelled as e:
                task.info.result = e.partial_result
                return "cancelled"
            task.info.result = result
            if analyze:
                try:
                    task.info.analysis = classifier.analyze(result, stop_event=task.cancel_event)
                except DuplicateSearchCancelled:
                    return "cancelled"
            return "completed"

        return self._launch(task, work)

    def start_cleanup(self, selection, options: Optional[CleanupOptions] = None) -> str:
        """启动清理任务

        Args:
            selection: CleanupSelection 或文件记录列表
            options: 清理选项

        Returns:
            清理任务ID；与进行中的清理文件有重叠时返回空字符串
        """
        files = selection.files if isinstance(selection, CleanupSelection) else list(selection)
        executor = self._executor()

        def work(task):
            outcome = executor.cleanup(selection, options, on_progress=self._cleanup_progress(task),
                                       stop_event=task.cancel_event)
            return self._finish_cleanup(task, outcome)

        return self._start_cleanup_kind("cleanup", executor, {f.path for f in files}, work)

    def start_duplicate_cleanup(self, groups: Sequence[DuplicateGroup],
                                keep_map: Optional[Dict[str, str]] = None,
                                options: Optional[CleanupOptions] = None) -> str:
        """启动重复文件清理任务，每组至少保留一个"""
        executor = self._executor()
        paths = {f.path for g in groups for f in g.files}

        def work(task):
            outcome = executor.cleanup_duplicates(groups, keep_map, options,
                                                  on_progress=self._cleanup_progress(task),
                                                  stop_event=task.cancel_event)
            return self._finish_cleanup(task, outcome)

        return self._start_cleanup_kind("duplicate_cleanup", executor, paths, work)

    def start_log_cleanup(self, files: Sequence[FileRecord],
                          options: Optional[CleanupOptions] = None) -> str:
        """启动日志清理任务"""
        files = list(files)
        executor = self._executor()

        def work(task):
            outcome = executor.cleanup_logs(files, options, on_progress=self._cleanup_progress(task),
                                            stop_event=task.cancel_event)
            return self._finish_cleanup(task, outcome)

        return self._start_cleanup_kind("log_cleanup", executor, {f.path for f in files}, work)

    def start_restore(self, ref, destination_dir=None, only_paths: Optional[Iterable[str]] = None) -> str:
        """启动还原任务"""
        only_paths = list(only_paths) if only_paths is not None else None
        task = self._create("restore", [])

        def work():
            task.info.result = self.archive_store.restore(
                ref, destination_dir=destination_dir, only_paths=only_paths,
                stop_event=task.cancel_event,
            )
            return "cancelled" if task.cancel_event.is_set() else "completed"

        return self._launch(task, work)

    # ------------------------------------------------------------------ 控制与查询

    def cancel(self, task_id: str) -> bool:
        """请求取消任务

        Returns:
            任务存在且尚未结束时返回 True
        """
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None or task.info.is_finished:
            return False
        logger.info(f"正在取消任务 {task_id}")
        task.cancel_event.set()
        for component in task.cancellables:
            component.cancel()
        return True

    def wait(self, task_id: str, timeout: Optional[float] = None) -> Optional[TaskInfo]:
        """等待任务结束

        Returns:
            任务信息；任务不存在时返回 None
        """
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            return None
        task.done.wait(timeout)
        return task.info

    def get_task(self, task_id: str) -> Optional[TaskInfo]:
        with self._lock:
            task = self._tasks.get(task_id)
        return task.info if task else None

    def list_tasks(self) -> List[TaskInfo]:
        with self._lock:
            return [t.info for t in self._tasks.values()]

    def is_active(self, task_id: str) -> bool:
        info = self.get_task(task_id)
        return info is not None and not info.is_finished

    # ------------------------------------------------------------------ 内部

    def _executor(self) -> CleanupExecutor:
        return CleanupExecutor(guard=self.guard, archive_store=self.archive_store,
                               config_manager=self.config, trash=self._trash, remover=self._remover)

    def _start_cleanup_kind(self, kind: str, executor: CleanupExecutor, paths: Set[str], work) -> str:
        with self._lock:
            for other in self._tasks.values():
                if other.paths and not other.info.is_finished and other.paths & paths:
                    logger.warning(f"已有清理任务 {other.info.task_id} 正在处理相同的文件，拒绝启动")
                    return ""
            task = self._create_locked(kind, [executor], paths)
        return self._launch(task, lambda: work(task))

    def _create(self, kind: str, cancellables: Sequence[Any], paths: Optional[Set[str]] = None) -> _Task:
        with self._lock:
            return self._create_locked(kind, cancellables, paths or set())

    def _create_locked(self, kind: str, cancellables: Sequence[Any], paths: Set[str]) -> _Task:
        info = TaskInfo(task_id=str(uuid.uuid4()), kind=kind, created_time=datetime.now())
        task = _Task(info, cancellables, paths)
        self._tasks[info.task_id] = task
        return task

    def _launch(self, task: _Task, work: Callable[[], str]) -> str:
        def runner():
            task.info.status = "running"
            task.info.start_time = datetime.now()
            try:
                # 启动前已被取消
                status = "cancelled" if task.cancel_event.is_set() else work()
            except SafeCleanError as e:
                logger.error(f"任务 {task.info.task_id} 失败: {e.summary()}")
                task.info.error = e.summary()
                status = "failed"
            except Exception as e:
                logger.exception(f"任务 {task.info.task_id} 出错: {e}")
                task.info.error = str(e)
                status = "failed"
            task.info.status = status
            if status == "completed":
                task.info.progress = 1.0
            task.info.end_time = datetime.now()
            logger.info(f"任务 {task.info.task_id} ({task.info.kind}) 结束: {status}")
            task.done.set()

        task.thread = threading.Thread(target=runner, name=f"safeclean-{task.info.kind}")
        task.thread.daemon = True
        task.thread.start()
        logger.info(f"{task.info.kind} 任务已启动: {task.info.task_id}")
        return task.info.task_id

    def _cleanup_progress(self, task: _Task):
        def on_progress(progress: CleanupProgress):
            fraction = progress.files_processed / progress.total_files if progress.total_files else 1.0
            self._update(task, fraction, f"已处理 {progress.files_processed}/{progress.total_files} 个文件")
        return on_progress

    @staticmethod
    def _finish_cleanup(task: _Task, outcome: CleanupOutcome) -> str:
        task.info.result = outcome
        if outcome.state == CleanupState.COMPLETED:
            return "completed"
        if outcome.state == CleanupState.CANCELLED:
            return "cancelled"
        task.info.error = "; ".join(e.summary() for e in outcome.errors[-3:])
        return "failed"

    @staticmethod
    def _update(task: _Task, fraction: float, message: str) -> None:
        task.info.progress = min(1.0, max(0.0, fraction))
        task.info.message = message
