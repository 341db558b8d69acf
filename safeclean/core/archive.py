#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
归档模块 - 负责创建压缩备份以及从备份还原文件

每个归档是一个 tar.gz 文件，内含 manifest.json 和每个源文件的扁平化副本。
"""

import hashlib
import os
import shutil
import tarfile
import tempfile
import threading
import time
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional, Union

import psutil
from loguru import logger
from pydantic import ValidationError

from safeclean.config.manager import ConfigManager
from safeclean.core.checksum import AnyEvent, ChecksumCancelled, sha256_file
from safeclean.data.errors import (
    BackupCorrupted, BackupFailed, BackupNotFound, DestinationNotWritable,
    InsufficientSpace, RestoreUnknownError,
)
from safeclean.data.models import (
    ArchiveManifest, ArchiveRef, FileKind, FileRecord, ManifestEntry, RestoreOutcome,
)
from safeclean.core.scanner import determine_file_kind

MANIFEST_NAME = "manifest.json"
ARCHIVE_PREFIX = "backup_"
ARCHIVE_SUFFIX = ".tar.gz"
TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S"
COPY_CHUNK_SIZE = 1024 * 1024
MAX_MEMBER_NAME = 240

ArchiveLike = Union[ArchiveRef, str, os.PathLike]


def flatten_name(original_path: str) -> str:
    """把绝对路径转换为单层文件名

    先转义 % 再转义路径分隔符，不同路径得到的名字一定不同。
    过长的名字改用路径哈希加文件名尾部。
    """
    flat = original_path.replace('%', '%25').replace('/', '%2F').replace('\\', '%5C')
    if len(flat.encode('utf-8')) <= MAX_MEMBER_NAME:
        return flat
    digest = hashlib.sha256(original_path.encode('utf-8')).hexdigest()
    tail = os.path.basename(original_path)[-64:]
    return f"%H{digest}_{tail}"


class _StopAwareReader:
    """读取时检查取消信号的文件包装"""

    def __init__(self, fileobj, stop_event: Optional[threading.Event]):
        self._fileobj = fileobj
        self._stop_event = stop_event

    def read(self, size=-1):
        if self._stop_event is not None and self._stop_event.is_set():
            raise ChecksumCancelled("archive")
        return self._fileobj.read(size)


class ArchiveStore:
    """归档存储，管理备份目录中的所有归档"""

    def __init__(self, config_manager=None, backup_dir=None, scratch_dir=None):
        """初始化归档存储

        Args:
            config_manager: 配置管理器实例，如果为None则创建新实例
            backup_dir: 归档目录，None 时使用 safety.backup.path
            scratch_dir: 暂存目录，None 时使用 safety.scratch_path 或系统临时目录
        """
        self.config = config_manager or ConfigManager()

        if backup_dir is None:
            backup_dir = self.config.get_path('safety.backup.path', None)
        if not backup_dir:
            backup_dir = Path.home() / ".safeclean" / "backups"
        self.backup_dir = Path(backup_dir)

        if scratch_dir is None:
            scratch_dir = self.config.get_path('safety.scratch_path', None)
        self.scratch_dir = Path(scratch_dir or tempfile.gettempdir())

        self._stop_event = threading.Event()

    def cancel(self) -> None:
        """请求取消当前的归档操作，空闲时调用则作用于下一次归档"""
        self._stop_event.set()

    # ------------------------------------------------------------------ 创建

    def archive(self, files: Iterable[Union[FileRecord, str]], destination_dir=None,
                stop_event: Optional[threading.Event] = None) -> ArchiveRef:
        """为一组文件创建归档

        Args:
            files: 文件记录或路径
            destination_dir: 归档存放目录，None 使用备份目录
            stop_event: 外部取消信号，与自身的取消信号同时生效

        Returns:
            归档引用

        Raises:
            BackupFailed: 任何文件无法读取、复制或校验，或操作被取消
        """
        stop = AnyEvent(self._stop_event, stop_event)

        paths = []
        for item in files:
            path = item.path if isinstance(item, FileRecord) else os.path.abspath(os.fspath(item))
            if path not in paths:
                paths.append(path)

        dest_dir = Path(destination_dir) if destination_dir is not None else self.backup_dir
        archive_id = str(uuid.uuid4())
        created_at = datetime.now()
        staging = self.scratch_dir / f"safeclean_stage_{archive_id}"
        location = dest_dir / f"{ARCHIVE_PREFIX}{created_at.strftime(TIMESTAMP_FORMAT)}_{archive_id}{ARCHIVE_SUFFIX}"
        partial = location.with_name(location.name + ".partial")

        logger.info(f"开始创建归档 {archive_id}, 共 {len(paths)} 个文件")
        try:
            dest_dir.mkdir(exist_ok=True, parents=True)
            staging.mkdir(parents=True)

            entries = []
            for path in paths:
                if stop.is_set():
                    raise ChecksumCancelled(path)
                entries.append(self._stage_file(path, staging, stop))

            manifest = ArchiveManifest(archive_id=archive_id, created_at=created_at, entries=entries)
            (staging / MANIFEST_NAME).write_text(manifest.to_json(), encoding="utf-8")

            with tarfile.open(partial, "w:gz") as tar:
                tar.add(staging / MANIFEST_NAME, arcname=MANIFEST_NAME)
                for entry in entries:
                    member = staging / flatten_name(entry.original_path)
                    info = tar.gettarinfo(str(member), arcname=member.name)
                    with open(member, 'rb') as f:
                        tar.addfile(info, _StopAwareReader(f, stop))
            os.replace(partial, location)

        except ChecksumCancelled:
            logger.info(f"归档 {archive_id} 已取消")
            _remove_quietly(partial)
            raise BackupFailed("归档已取消")
        except (OSError, tarfile.TarError) as e:
            logger.error(f"创建归档失败: {e}")
            _remove_quietly(partial)
            raise BackupFailed(str(e)) from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)
            self._stop_event.clear()

        ref = ArchiveRef(
            archive_id=archive_id,
            created_at=created_at,
            location=str(location),
            file_count=len(entries),
            original_size=manifest.original_size,
            compressed_size=location.stat().st_size,
        )
        logger.info(
            f"归档创建完成: {location}, 原始大小 {ref.original_size / (1024*1024):.2f} MB, "
            f"压缩后 {ref.compressed_size / (1024*1024):.2f} MB"
        )
        return ref

    def _stage_file(self, path: str, staging: Path, stop) -> ManifestEntry:
        """计算校验和并把文件复制到暂存目录，复制后再校验一次"""
        st = os.stat(path)
        digest = sha256_file(path, stop_event=stop)
        staged = staging / flatten_name(path)
        shutil.copy2(path, staged)
        if sha256_file(staged, stop_event=stop) != digest:
            raise OSError(f"文件在备份过程中被修改: {path}")
        kind, ext = determine_file_kind(path)
        return ManifestEntry(
            original_path=path,
            size=st.st_size,
            modified_at=datetime.fromtimestamp(st.st_mtime),
            kind=ext if kind == FileKind.OTHER else kind.value,
            sha256=digest,
        )

    # ------------------------------------------------------------------ 还原

    def restore(self, ref: ArchiveLike, destination_dir=None,
                only_paths: Optional[Iterable[str]] = None,
                stop_event: Optional[threading.Event] = None) -> RestoreOutcome:
        """从归档还原文件

        Args:
            ref: 归档引用、归档文件路径或归档ID
            destination_dir: 目标目录，None 时还原到原始路径
            only_paths: 只还原这些原始路径，None 还原全部
            stop_event: 取消信号，每个文件检查一次

        Returns:
            还原结果，逐条记录失败项

        Raises:
            BackupNotFound: 归档不存在
            BackupCorrupted: 归档或清单无法读取
            InsufficientSpace: 目标磁盘空间不足
        """
        start = time.monotonic()
        location = self._locate(ref)
        outcome = RestoreOutcome()
        scratch = self.scratch_dir / f"safeclean_restore_{uuid.uuid4()}"

        try:
            tar = tarfile.open(location, "r:gz")
        except (OSError, tarfile.TarError) as e:
            raise BackupCorrupted(str(location), str(e)) from e

        with tar:
            manifest = self._manifest_from_tar(tar, location)
            entries = manifest.entries
            if only_paths is not None:
                wanted = set(only_paths)
                entries = [e for e in entries if e.original_path in wanted]

            targets = [(entry, self._target_path(entry.original_path, destination_dir)) for entry in entries]
            self._check_space(targets)

            logger.info(f"开始从归档 {manifest.archive_id} 还原 {len(targets)} 个文件")
            scratch.mkdir(parents=True)
            try:
                for entry, target in targets:
                    if stop_event is not None and stop_event.is_set():
                        logger.info("还原已取消")
                        break
                    error = self._restore_entry(tar, entry, target, scratch)
                    if error is None:
                        outcome.restored += 1
                        outcome.total_size += entry.size
                        outcome.restored_paths.append(target)
                        logger.debug(f"还原文件成功: {target}")
                    else:
                        outcome.failed += 1
                        outcome.errors.append(error)
                        logger.warning(f"还原文件失败 {target}: {error}")
            finally:
                shutil.rmtree(scratch, ignore_errors=True)

        outcome.duration_seconds = time.monotonic() - start
        logger.info(f"还原完成: 成功还原 {outcome.restored} 个文件, 失败 {outcome.failed} 个文件")
        return outcome

    def _restore_entry(self, tar: tarfile.TarFile, entry: ManifestEntry, target: str, scratch: Path):
        """还原单个条目，成功返回 None，失败返回错误"""
        member_name = flatten_name(entry.original_path)
        staged = scratch / member_name
        try:
            source = tar.extractfile(member_name)
        except KeyError:
            return BackupCorrupted(entry.original_path, "归档中缺少该文件")
        except tarfile.TarError as e:
            return BackupCorrupted(entry.original_path, str(e))
        if source is None:
            return BackupCorrupted(entry.original_path, "归档成员不是普通文件")

        try:
            with source, open(staged, 'wb') as out:
                shutil.copyfileobj(source, out, COPY_CHUNK_SIZE)
        except (OSError, tarfile.TarError, EOFError) as e:
            return BackupCorrupted(entry.original_path, str(e))

        if sha256_file(staged) != entry.sha256:
            return BackupCorrupted(entry.original_path, "解压后的校验和不匹配")

        parent = os.path.dirname(target)
        try:
            os.makedirs(parent, exist_ok=True)
        except OSError:
            return DestinationNotWritable(parent)
        if not os.access(parent, os.W_OK | os.X_OK):
            return DestinationNotWritable(parent)

        try:
            # 先移除旧文件，避免部分覆盖
            if os.path.lexists(target):
                if os.path.isdir(target) and not os.path.islink(target):
                    shutil.rmtree(target)
                else:
                    os.remove(target)
            shutil.copyfile(staged, target)
            mtime = entry.modified_at.timestamp()
            os.utime(target, (mtime, mtime))
        except PermissionError:
            return DestinationNotWritable(target)
        except OSError as e:
            return RestoreUnknownError(str(e), path=target)

        if sha256_file(target) != entry.sha256:
            _remove_quietly(target)
            return BackupCorrupted(entry.original_path, "还原后的校验和不匹配")
        return None

    @staticmethod
    def _target_path(original_path: str, destination_dir) -> str:
        if destination_dir is None:
            return original_path
        rest = os.path.splitdrive(original_path)[1]
        return os.path.join(os.fspath(destination_dir), rest.lstrip('/\\'))

    @staticmethod
    def _check_space(targets) -> None:
        required = sum(entry.size for entry, _ in targets)
        if not targets or required == 0:
            return
        existing = os.path.dirname(targets[0][1])
        while existing and not os.path.exists(existing):
            parent = os.path.dirname(existing)
            if parent == existing:
                break
            existing = parent
        try:
            available = psutil.disk_usage(existing).free
        except OSError as e:
            logger.debug(f"无法获取磁盘空间 {existing}: {e}")
            return
        if available < required:
            raise InsufficientSpace(required, available, path=existing)

    # ------------------------------------------------------------------ 管理

    def read_manifest(self, ref: ArchiveLike) -> ArchiveManifest:
        """读取归档清单

        Raises:
            BackupNotFound: 归档不存在
            BackupCorrupted: 清单缺失或格式错误
        """
        location = self._locate(ref)
        try:
            with tarfile.open(location, "r:gz") as tar:
                return self._manifest_from_tar(tar, location)
        except (OSError, tarfile.TarError) as e:
            raise BackupCorrupted(str(location), str(e)) from e

    @staticmethod
    def _manifest_from_tar(tar: tarfile.TarFile, location) -> ArchiveManifest:
        try:
            member = tar.extractfile(MANIFEST_NAME)
            if member is None:
                raise BackupCorrupted(str(location), "清单不是普通文件")
            with member:
                data = member.read()
            return ArchiveManifest.model_validate_json(data)
        except KeyError:
            raise BackupCorrupted(str(location), "归档中没有清单")
        except (ValidationError, ValueError, tarfile.TarError, EOFError) as e:
            raise BackupCorrupted(str(location), f"清单无法解析: {e}")

    def list(self) -> List[ArchiveRef]:
        """列出备份目录中的所有归档

        Returns:
            归档引用列表，按创建时间降序排序
        """
        refs = []
        if not self.backup_dir.exists():
            return refs

        for location in self.backup_dir.glob(f"{ARCHIVE_PREFIX}*{ARCHIVE_SUFFIX}"):
            try:
                manifest = self.read_manifest(location)
            except (BackupCorrupted, BackupNotFound) as e:
                logger.warning(f"加载归档信息失败 {location}: {e}")
                continue
            refs.append(ArchiveRef(
                archive_id=manifest.archive_id,
                created_at=manifest.created_at,
                location=str(location),
                file_count=len(manifest.entries),
                original_size=manifest.original_size,
                compressed_size=location.stat().st_size,
            ))

        refs.sort(key=lambda r: r.created_at, reverse=True)
        return refs

    def find(self, archive_id: str) -> Optional[ArchiveRef]:
        """按归档ID查找"""
        for ref in self.list():
            if ref.archive_id == archive_id:
                return ref
        return None

    def delete(self, ref: ArchiveLike) -> bool:
        """删除归档，清单随之失效

        Returns:
            是否成功删除
        """
        try:
            location = self._locate(ref)
        except BackupNotFound:
            logger.warning(f"归档不存在: {ref}")
            return False
        try:
            os.remove(location)
        except OSError as e:
            logger.error(f"删除归档失败: {e}")
            return False
        logger.info(f"归档已删除: {location}")
        return True

    def old_archives(self, days: int) -> List[ArchiveRef]:
        """创建时间早于指定天数的归档"""
        cutoff = datetime.now() - timedelta(days=days)
        return [ref for ref in self.list() if ref.created_at < cutoff]

    def prune(self, days: Optional[int] = None) -> int:
        """清理旧归档

        Args:
            days: 保留天数，如果为None则使用配置值

        Returns:
            删除的归档数量
        """
        if days is None:
            days = self.config.get('safety.backup.retention_days', 30)
        if days <= 0:
            return 0

        removed = sum(1 for ref in self.old_archives(days) if self.delete(ref))
        logger.info(f"清理旧归档完成，共删除了 {removed} 个归档")
        return removed

    def _locate(self, ref: ArchiveLike) -> Path:
        """把归档引用、路径或ID解析为存在的归档文件路径"""
        if isinstance(ref, ArchiveRef):
            location = Path(ref.location)
        else:
            text = os.fspath(ref)
            location = Path(text)
            if not location.name.endswith(ARCHIVE_SUFFIX):
                matches = sorted(self.backup_dir.glob(f"{ARCHIVE_PREFIX}*_{text}{ARCHIVE_SUFFIX}"))
                location = matches[0] if matches else self.backup_dir / f"{text}{ARCHIVE_SUFFIX}"
        if not location.is_file():
            raise BackupNotFound(str(location))
        return location


def _remove_quietly(path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.debug(f"删除临时文件失败 {path}: {e}")
