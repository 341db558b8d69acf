#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
路径保护 - 判断路径是否属于禁止清理的系统或用户数据目录
"""

import os
import platform
import threading
from typing import Iterable, Optional, Tuple, Union

from loguru import logger


# 系统关键目录
DEFAULT_PROTECTED_PATHS = (
    "/System",
    "/Library/Apple",
    "/usr/bin",
    "/usr/sbin",
    "/usr/lib",
    "/usr/libexec",
    "/private/var/db",
    "/private/var/root",
    "/private/etc",
    "/private/var/vm",
    "/bin",
    "/sbin",
    "/boot",
    "/dev",
    "/etc",
    "/proc",
    "/sys",
    "/lib",
    "/lib64",
    "/var/lib/dpkg",
    "/var/lib/rpm",
)

# 用户数据目录（钥匙串、邮件、信息、照片、通讯录、日历、浏览器配置）
DEFAULT_PROTECTED_USER_PATHS = (
    "~/Library/Keychains",
    "~/Library/Mail",
    "~/Library/Messages",
    "~/Library/Photos",
    "~/Library/Safari",
    "~/Library/Calendars",
    "~/Library/Contacts",
    "~/Library/Application Support/Google/Chrome",
    "~/Library/Application Support/Firefox/Profiles",
    "~/.ssh",
    "~/.gnupg",
    "~/.local/share/keyrings",
    "~/.thunderbird",
    "~/.mozilla/firefox",
    "~/.config/google-chrome",
    "~/.config/chromium",
)

# 系统自带应用
DEFAULT_SYSTEM_APPLICATIONS = (
    "Safari.app", "Mail.app", "Messages.app", "Photos.app", "Calendar.app",
    "Contacts.app", "FaceTime.app", "Music.app", "TV.app", "Podcasts.app",
    "Books.app", "App Store.app", "System Preferences.app", "System Settings.app",
    "Finder.app", "TextEdit.app", "Preview.app", "QuickTime Player.app",
    "Notes.app", "Reminders.app", "Maps.app", "News.app", "Stocks.app",
    "Home.app", "Voice Memos.app", "Calculator.app", "Dictionary.app",
    "Font Book.app", "Time Machine.app",
)

APPLICATION_DIRS = ("/Applications/", "/System/Applications/")

# 按系统主版本追加的保护目录
VERSION_GATED_PATHS = (
    (11, ("/System/Volumes/Data", "/System/Volumes/Preboot")),
    (12, ("/System/Library/CoreServices",)),
    (13, ("/Library/Apple/System",)),
)


def _expand(path: str) -> str:
    return os.path.normpath(os.path.expanduser(path))


def _parse_version(os_version: Union[str, int, Tuple[int, ...], None]) -> Optional[int]:
    if os_version is None or os_version == "":
        return None
    if isinstance(os_version, int):
        return os_version
    if isinstance(os_version, tuple):
        return int(os_version[0]) if os_version else None
    try:
        return int(str(os_version).split('.')[0])
    except ValueError:
        return None


class PathGuard:
    """保护路径匹配器

    纯字符串前缀匹配，不做任何 I/O。规则只增不减，
    更新时整体替换不可变元组，读取无需加锁。
    """

    def __init__(self, protected_paths: Optional[Iterable[str]] = None,
                 protected_user_paths: Optional[Iterable[str]] = None,
                 system_applications: Optional[Iterable[str]] = None,
                 os_version=None, config_manager=None):
        """初始化路径保护器

        Args:
            protected_paths: 系统保护前缀，None 使用默认列表
            protected_user_paths: 用户数据保护前缀（可含 ~），None 使用默认列表
            system_applications: 受保护的系统应用包名
            os_version: 系统版本（如 "13.4"），None 时自动检测 macOS 版本
            config_manager: 配置管理器，用于读取额外的保护路径
        """
        system = list(DEFAULT_PROTECTED_PATHS if protected_paths is None else protected_paths)
        user = list(DEFAULT_PROTECTED_USER_PATHS if protected_user_paths is None else protected_user_paths)
        apps = list(DEFAULT_SYSTEM_APPLICATIONS if system_applications is None else system_applications)

        if config_manager is not None:
            system.extend(config_manager.get('guard.extra_protected_paths', []) or [])
            user.extend(config_manager.get('guard.extra_protected_user_paths', []) or [])
            apps.extend(config_manager.get('guard.extra_system_applications', []) or [])

        self._update_lock = threading.Lock()
        self._protected_paths: Tuple[str, ...] = tuple(_expand(p) for p in system)
        self._protected_user_paths: Tuple[str, ...] = tuple(_expand(p) for p in user)
        self._system_applications = frozenset(apps)
        self._applied_version: Optional[int] = None

        if os_version is None and platform.system() == "Darwin":
            os_version = platform.mac_ver()[0]
        if os_version is not None:
            self.update_for_version(os_version)

    @property
    def protected_paths(self) -> Tuple[str, ...]:
        return self._protected_paths

    @property
    def protected_user_paths(self) -> Tuple[str, ...]:
        return self._protected_user_paths

    def is_protected(self, path) -> bool:
        """判断路径是否受保护

        依次检查系统目录、用户数据目录和系统自带应用。
        """
        expanded = _expand(os.fspath(path))

        for prefix in self._protected_paths:
            if self._under(expanded, prefix):
                return True

        for prefix in self._protected_user_paths:
            if self._under(expanded, prefix):
                return True

        for app_dir in APPLICATION_DIRS:
            if expanded.startswith(app_dir):
                bundle = next(
                    (part for part in expanded[len(app_dir):].split('/') if part.endswith('.app')),
                    None,
                )
                if bundle in self._system_applications:
                    return True

        return False

    def update_for_version(self, os_version) -> None:
        """按系统版本追加保护目录（只增不减）

        Args:
            os_version: 版本号字符串、主版本整数或版本元组
        """
        major = _parse_version(os_version)
        if major is None:
            logger.debug(f"无法解析系统版本，跳过保护规则更新: {os_version!r}")
            return

        with self._update_lock:
            additions = [
                _expand(p)
                for min_major, paths in VERSION_GATED_PATHS if major >= min_major
                for p in paths
            ]
            new_paths = tuple(p for p in additions if p not in self._protected_paths)
            if new_paths:
                self._protected_paths = self._protected_paths + new_paths
                logger.debug(f"系统版本 {major} 新增保护目录: {list(new_paths)}")
            self._applied_version = max(major, self._applied_version or 0)

    def add_protected_path(self, path: str) -> None:
        """运行期追加一条保护前缀"""
        expanded = _expand(path)
        with self._update_lock:
            if expanded not in self._protected_paths:
                self._protected_paths = self._protected_paths + (expanded,)

    @staticmethod
    def _under(path: str, prefix: str) -> bool:
        if prefix == os.sep:
            return True
        return path == prefix or path.startswith(prefix.rstrip(os.sep) + os.sep)
