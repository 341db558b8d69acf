#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
清理执行模块 - 校验、备份、删除，失败或取消时回滚
"""

import os
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from loguru import logger
from send2trash import send2trash

from safeclean.config.manager import ConfigManager
from safeclean.core.archive import ArchiveStore
from safeclean.core.checksum import AnyEvent
from safeclean.core.guard import PathGuard
from safeclean.core.scanner import probe_in_use
from safeclean.data.errors import (
    BackupFailed, CleanupCancelled, CleanupError, CleanupFileNotFound, CleanupUnknownError,
    DuplicatePreservationError, FileInUse, FileProtected, InvalidStateTransition, RestoreError,
    cleanup_error_from_os_error,
)
from safeclean.data.models import (
    ArchiveRef, CleanupOptions, CleanupOutcome, CleanupProgress, CleanupSelection, CleanupState,
    DuplicateGroup, FileRecord, ValidationOutcome,
)

ProgressCallback = Callable[[CleanupProgress], None]

_TRANSITIONS = {
    CleanupState.NOT_STARTED: {CleanupState.IN_PROGRESS, CleanupState.FAILED},
    CleanupState.IN_PROGRESS: {CleanupState.COMPLETED, CleanupState.CANCELLED, CleanupState.FAILED},
}


class _Session:
    """一次清理运行的状态与删除台账，只属于发起它的调用"""

    def __init__(self):
        self.state = CleanupState.NOT_STARTED
        self.ledger: List[FileRecord] = []
        self.space_freed = 0
        self.archive: Optional[ArchiveRef] = None

    def transition(self, target: CleanupState) -> None:
        if target not in _TRANSITIONS.get(self.state, set()):
            raise InvalidStateTransition(self.state.value, target.value)
        logger.debug(f"清理状态: {self.state.value} -> {target.value}")
        self.state = target


class CleanupExecutor:
    """清理执行器"""

    def __init__(self, guard: Optional[PathGuard] = None, archive_store: Optional[ArchiveStore] = None,
                 config_manager=None, trash: Optional[Callable[[str], None]] = None,
                 remover: Optional[Callable[[str], None]] = None,
                 in_use_probe: Optional[Callable[[str], bool]] = None):
        """初始化清理执行器

        Args:
            guard: 路径保护器
            archive_store: 归档存储，用于备份与回滚
            config_manager: 配置管理器实例，如果为None则创建新实例
            trash: 移动到废纸篓的函数，默认 send2trash
            remover: 永久删除函数，默认 os.remove
            in_use_probe: 占用检测函数
        """
        self.config = config_manager or ConfigManager()
        self.guard = guard or PathGuard(config_manager=self.config)
        self.archive_store = archive_store or ArchiveStore(config_manager=self.config)
        self._trash = trash or send2trash
        self._remover = remover or os.remove
        self._probe = in_use_probe or probe_in_use
        self._stop_event = threading.Event()
        self._state = CleanupState.NOT_STARTED

    @property
    def state(self) -> CleanupState:
        """最近一次清理的状态"""
        return self._state

    def cancel(self) -> None:
        """请求取消当前清理，已删除的文件会从备份回滚

        取消信号保留到本次清理结束；空闲时调用则作用于下一次清理。
        """
        logger.info("正在停止清理任务...")
        self._stop_event.set()

    def is_cancelled(self) -> bool:
        return self._stop_event.is_set()

    def validate(self, files: Iterable[FileRecord]) -> ValidationOutcome:
        """按保护规则拆分文件集合

        Returns:
            允许与被阻止的文件，以及占用、不可删除等提示
        """
        outcome = ValidationOutcome()
        for record in files:
            if self.guard.is_protected(record.path):
                outcome.blocked.append(record)
                continue
            outcome.allowed.append(record)
            if record.in_use:
                outcome.warnings.append(f"文件正在使用: {record.path}")
            if not record.permissions.deletable:
                outcome.warnings.append(f"文件可能无法删除: {record.path}")
        return outcome

    def cleanup(self, selection: Union[CleanupSelection, Sequence[FileRecord]],
                options: Optional[CleanupOptions] = None,
                on_progress: Optional[ProgressCallback] = None,
                stop_event: Optional[threading.Event] = None) -> CleanupOutcome:
        """清理一组文件

        按调用方给定的顺序处理。启用备份时先创建归档，归档失败则不删除任何文件；
        删除出错或被取消时，从归档还原本次已删除的文件。

        Args:
            selection: CleanupSelection 或文件记录列表
            options: 清理选项，None 时使用 selection 自带的选项
            on_progress: 进度回调，每处理一个文件调用一次
            stop_event: 外部取消信号，与 cancel() 同时生效

        Returns:
            清理结果
        """
        if isinstance(selection, CleanupSelection):
            files = list(selection.files)
            options = options or selection.options
        else:
            files = list(selection)
        options = options or CleanupOptions()

        try:
            return self._run(files, options, on_progress, AnyEvent(self._stop_event, stop_event))
        finally:
            self._stop_event.clear()

    def _run(self, files: List[FileRecord], options: CleanupOptions,
             on_progress: Optional[ProgressCallback], stop: AnyEvent) -> CleanupOutcome:
        session = _Session()
        self._state = session.state
        errors: List[CleanupError] = []

        validation = self.validate(files)
        for record in validation.blocked:
            logger.warning(f"受保护文件，已跳过: {record.path}")
            errors.append(FileProtected(record.path))

        if validation.fully_blocked:
            session.transition(CleanupState.FAILED)
            self._state = session.state
            logger.error("所有待清理文件均受保护，拒绝执行")
            return CleanupOutcome(errors=errors, state=session.state)

        session.transition(CleanupState.IN_PROGRESS)
        self._state = session.state
        working = validation.allowed
        total_size = sum(r.size for r in working)
        logger.info(
            f"开始清理 {len(working)} 个文件, 总大小: {total_size / (1024*1024):.2f} MB"
            f"{' (模拟)' if options.dry_run else ''}"
        )

        if options.create_backup and working and not options.dry_run:
            try:
                session.archive = self.archive_store.archive(working, stop_event=stop)
            except BackupFailed as e:
                if stop.is_set():
                    return self._finish(session, CleanupState.CANCELLED, errors + [CleanupCancelled()])
                logger.error(f"备份失败，未删除任何文件: {e.message}")
                return self._finish(session, CleanupState.FAILED, errors + [e])

        for index, record in enumerate(working):
            if stop.is_set():
                logger.info(f"清理已取消，已删除 {len(session.ledger)} 个文件，开始回滚")
                errors.extend(self._rollback(session))
                errors.append(CleanupCancelled())
                return self._finish(session, CleanupState.CANCELLED, errors, rolled_back=True)

            path = record.path
            if options.skip_in_use_files and (record.in_use or self._probe(path)):
                logger.warning(f"文件正在使用，已跳过: {path}")
                errors.append(FileInUse(path))
                self._report(on_progress, path, index + 1, len(working), session.space_freed)
                continue

            if options.dry_run:
                logger.debug(f"模拟删除: {path}")
            else:
                if not os.path.lexists(path):
                    logger.debug(f"文件已不存在: {path}")
                    errors.append(CleanupFileNotFound(path))
                    self._report(on_progress, path, index + 1, len(working), session.space_freed)
                    continue
                try:
                    self._delete(path, options)
                except Exception as e:
                    error = cleanup_error_from_os_error(e, path) if isinstance(e, OSError) \
                        else CleanupUnknownError(str(e), path=path)
                    logger.error(f"删除文件失败 {path}: {e}，开始回滚")
                    errors.append(error)
                    errors.extend(self._rollback(session))
                    return self._finish(session, CleanupState.FAILED, errors, rolled_back=True)

            session.ledger.append(record)
            session.space_freed += record.size
            self._report(on_progress, path, index + 1, len(working), session.space_freed)

        logger.info(
            f"清理完成: 成功删除 {len(session.ledger)} 个文件, "
            f"总大小: {session.space_freed / (1024*1024):.2f} MB, 错误: {len(errors)} 个"
        )
        return self._finish(session, CleanupState.COMPLETED, errors)

    def _delete(self, path: str, options: CleanupOptions) -> None:
        if options.move_to_trash:
            self._trash(path)
            logger.debug(f"已移动到废纸篓: {path}")
        else:
            self._remover(path)
            logger.debug(f"已永久删除: {path}")

    def _rollback(self, session: _Session) -> List:
        """从本次归档还原台账中的文件，返回还原错误"""
        if not session.ledger:
            return []
        if session.archive is None:
            logger.warning(f"没有备份，无法回滚已删除的 {len(session.ledger)} 个文件")
            return []

        paths = [r.path for r in session.ledger]
        try:
            # 只按清单中的原始路径还原
            restored = self.archive_store.restore(session.archive, only_paths=paths)
        except RestoreError as e:
            logger.error(f"回滚失败: {e}")
            return [e]

        logger.info(f"回滚完成: 还原 {restored.restored} 个文件, 失败 {restored.failed} 个")
        if restored.failed == 0:
            session.ledger = []
            session.space_freed = 0
        else:
            restored_set = set(restored.restored_paths)
            session.ledger = [r for r in session.ledger if r.path not in restored_set]
            session.space_freed = sum(r.size for r in session.ledger)
        return list(restored.errors)

    def _finish(self, session: _Session, state: CleanupState, errors: List,
                rolled_back: bool = False) -> CleanupOutcome:
        session.transition(state)
        self._state = session.state
        if rolled_back and session.ledger:
            logger.warning(f"有 {len(session.ledger)} 个已删除文件未能还原")
        return CleanupOutcome(
            files_removed=len(session.ledger),
            space_freed=session.space_freed,
            errors=errors,
            archive=session.archive,
            state=state,
            removed_paths=[r.path for r in session.ledger],
        )

    @staticmethod
    def _report(on_progress: Optional[ProgressCallback], path: str, processed: int,
                total: int, space_freed: int) -> None:
        if on_progress is None:
            return
        on_progress(CleanupProgress(current_file=path, files_processed=processed,
                                    total_files=total, space_freed=space_freed))

    # ------------------------------------------------------------------ 专用入口

    def cleanup_logs(self, files: Sequence[FileRecord], options: Optional[CleanupOptions] = None,
                     on_progress: Optional[ProgressCallback] = None,
                     now: Optional[datetime] = None,
                     stop_event: Optional[threading.Event] = None) -> CleanupOutcome:
        """清理日志文件

        最近的日志不动；中等年龄的直接删除；更旧的日志只在启用备份时删除。
        """
        options = options or CleanupOptions()
        now = now or datetime.now()
        preserve = timedelta(days=self.config.get('cleanup.log_preserve_days', 7))
        archive_after = timedelta(days=self.config.get('cleanup.log_archive_days', 30))

        recent, deletable, old = [], [], []
        for record in files:
            age = now - record.modified_time
            if age < preserve:
                recent.append(record)
            elif age <= archive_after:
                deletable.append(record)
            else:
                old.append(record)

        selected = list(deletable)
        if options.create_backup:
            selected.extend(old)
        elif old:
            logger.info(f"未启用备份，跳过 {len(old)} 个超过 {archive_after.days} 天的日志")

        logger.info(
            f"日志清理: 保留 {len(recent)} 个近期日志, 待删除 {len(selected)} 个"
        )
        # 按原顺序处理
        order = {id(r): i for i, r in enumerate(files)}
        selected.sort(key=lambda r: order[id(r)])
        return self.cleanup(selected, options, on_progress, stop_event)

    def cleanup_duplicates(self, groups: Sequence[DuplicateGroup],
                           keep_map: Optional[Dict[str, str]] = None,
                           options: Optional[CleanupOptions] = None,
                           on_progress: Optional[ProgressCallback] = None,
                           stop_event: Optional[threading.Event] = None) -> CleanupOutcome:
        """清理重复文件，每组至少保留一个

        Args:
            groups: 重复文件组
            keep_map: {组哈希: 要保留的路径}，未指定的组保留第一个成员
            options: 清理选项
            on_progress: 进度回调
            stop_event: 外部取消信号

        Raises:
            DuplicatePreservationError: 保留映射会导致某组被整组删除
        """
        keep_map = keep_map or {}
        to_delete: List[FileRecord] = []
        seen = set()
        for group in groups:
            keep = keep_map.get(group.hash, group.files[0].path)
            if keep not in {f.path for f in group.files}:
                raise DuplicatePreservationError(group.hash)
            for record in group.files:
                if record.path != keep and record.path not in seen:
                    seen.add(record.path)
                    to_delete.append(record)

        # 执行前确认每组都有保留文件
        for group in groups:
            if all(f.path in seen for f in group.files):
                raise DuplicatePreservationError(group.hash)

        logger.info(f"重复文件清理: {len(groups)} 组, 待删除 {len(to_delete)} 个文件")
        return self.cleanup(to_delete, options, on_progress, stop_event)
