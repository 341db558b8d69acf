#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
数据模型 - 定义清理引擎使用的数据实体
"""

import os
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FileKind(str, Enum):
    """文件类型枚举"""
    CACHE = "cache"              # 缓存文件
    LOG = "log"                  # 日志文件
    TEMPORARY = "temporary"      # 临时文件
    DOCUMENT = "document"        # 文档文件
    APPLICATION = "application"  # 应用程序
    ARCHIVE = "archive"          # 压缩包/安装镜像
    MEDIA = "media"              # 媒体文件
    OTHER = "other"              # 其他（附带扩展名）


class CategoryTag(str, Enum):
    """清理类别枚举，一个文件可以同时属于多个类别"""
    SYSTEM_CACHE = "system-cache"
    APP_CACHE = "app-cache"
    BROWSER_CACHE = "browser-cache"
    TEMP = "temp"
    LARGE = "large"
    OLD = "old"
    LOG = "log"
    DOWNLOADS = "downloads"
    DUPLICATE = "duplicate"


class CleanupState(str, Enum):
    """清理任务状态"""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CleanupState.COMPLETED, CleanupState.CANCELLED, CleanupState.FAILED)


class DownloadsFileType(str, Enum):
    """下载目录中的文件类型"""
    DOCUMENT = "document"
    IMAGE = "image"
    ARCHIVE = "archive"
    INSTALLER = "installer"
    OTHER = "other"


class FilePermissions(BaseModel):
    """文件权限"""
    model_config = ConfigDict(frozen=True)

    readable: bool = True
    writable: bool = True
    deletable: bool = True


class FileRecord(BaseModel):
    """单个文件在一次扫描中的不可变快照"""
    model_config = ConfigDict(frozen=True)

    path: str                                     # 绝对路径
    size: int = Field(ge=0)                       # 文件大小(字节)
    created_time: datetime                        # 创建时间
    modified_time: datetime                       # 修改时间
    accessed_time: datetime                       # 访问时间
    kind: FileKind = FileKind.OTHER               # 文件类型
    extension: str = ""                           # 小写扩展名，不含点
    permissions: FilePermissions = FilePermissions()
    in_use: bool = False                          # 是否被占用

    @field_validator('path')
    @classmethod
    def _absolute_path(cls, value: str) -> str:
        if not os.path.isabs(value):
            raise ValueError(f"FileRecord 需要绝对路径: {value}")
        return value

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @property
    def kind_string(self) -> str:
        """清单中记录的类型字符串，other 类型返回扩展名"""
        if self.kind == FileKind.OTHER:
            return self.extension
        return self.kind.value

    def age_days(self, now: Optional[datetime] = None) -> float:
        """距最后访问时间的天数"""
        now = now or datetime.now()
        return (now - self.accessed_time).total_seconds() / 86400


class DuplicateGroup(BaseModel):
    """内容完全相同的一组文件（至少两个）"""
    hash: str                                     # SHA-256 十六进制摘要
    files: List[FileRecord]

    @field_validator('files')
    @classmethod
    def _at_least_two(cls, value: List[FileRecord]) -> List[FileRecord]:
        if len(value) < 2:
            raise ValueError("重复文件组至少需要两个成员")
        return value

    @property
    def size(self) -> int:
        return self.files[0].size

    @property
    def total_size(self) -> int:
        return self.size * len(self.files)

    @property
    def wasted_space(self) -> int:
        return self.size * (len(self.files) - 1)


class CleanupOptions(BaseModel):
    """清理选项"""
    model_config = ConfigDict(frozen=True)

    create_backup: bool = False
    move_to_trash: bool = True                    # False 表示永久删除
    skip_in_use_files: bool = True
    dry_run: bool = False                         # 只模拟，不删除


class CleanupSelection(BaseModel):
    """调用方准备清理的文件集合"""
    files: List[FileRecord] = Field(default_factory=list)
    options: CleanupOptions = CleanupOptions()


class ValidationOutcome(BaseModel):
    """清理前校验结果"""
    allowed: List[FileRecord] = Field(default_factory=list)
    blocked: List[FileRecord] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.blocked

    @property
    def fully_blocked(self) -> bool:
        return bool(self.blocked) and not self.allowed


class ScanProgress(BaseModel):
    """扫描进度"""
    current_path: str
    files_scanned: int
    fraction_complete: float


class CleanupProgress(BaseModel):
    """清理进度"""
    current_file: str
    files_processed: int
    total_files: int
    space_freed: int


class ScanResult(BaseModel):
    """扫描结果模型"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    files: List[FileRecord] = Field(default_factory=list)
    errors: List[Any] = Field(default_factory=list)     # ScanError 实例
    duration_seconds: float = 0.0
    roots: List[str] = Field(default_factory=list)
    is_complete: bool = False

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)


class AnalysisResult(BaseModel):
    """分类分析结果"""
    categorized: Dict[CategoryTag, List[FileRecord]] = Field(default_factory=dict)
    total_size: int = 0
    potential_savings: int = 0
    duplicate_groups: List[DuplicateGroup] = Field(default_factory=list)


class ManifestEntry(BaseModel):
    """归档清单中的单个条目"""
    original_path: str = Field(alias="originalPath")
    size: int
    modified_at: datetime = Field(alias="modifiedAt")
    kind: str
    sha256: str

    model_config = ConfigDict(populate_by_name=True)


class ArchiveManifest(BaseModel):
    """归档清单，与归档文件同生命周期"""
    archive_id: str = Field(alias="archiveId")
    created_at: datetime = Field(alias="createdAt")
    entries: List[ManifestEntry] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @property
    def original_size(self) -> int:
        return sum(e.size for e in self.entries)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class ArchiveRef(BaseModel):
    """归档引用"""
    archive_id: str
    created_at: datetime
    location: str                                 # 归档文件绝对路径
    file_count: int = 0
    original_size: int = 0
    compressed_size: int = 0


class RestoreOutcome(BaseModel):
    """还原结果，允许部分成功"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    restored: int = 0
    failed: int = 0
    errors: List[Any] = Field(default_factory=list)     # RestoreError 实例
    restored_paths: List[str] = Field(default_factory=list)
    total_size: int = 0
    duration_seconds: float = 0.0


class CleanupOutcome(BaseModel):
    """清理结果"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    files_removed: int = 0
    space_freed: int = 0
    errors: List[Any] = Field(default_factory=list)     # CleanupError 实例
    archive: Optional[ArchiveRef] = None
    state: CleanupState = CleanupState.COMPLETED
    removed_paths: List[str] = Field(default_factory=list)


class LogFileInfo(BaseModel):
    """日志文件的应用归属与年龄"""
    record: FileRecord
    application: str
    age_days: int


class DownloadsFileInfo(BaseModel):
    """下载目录文件信息"""
    record: FileRecord
    downloads_type: DownloadsFileType
    is_old_download: bool = False


def category_set(tags) -> Set[CategoryTag]:
    """把字符串或枚举集合统一成 CategoryTag 集合"""
    return {CategoryTag(t) for t in tags or ()}
