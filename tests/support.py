#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
测试辅助函数 - 在临时目录中构造文件和配置
"""

import hashlib
import os
import time
from datetime import datetime

from safeclean.config.manager import ConfigManager
from safeclean.core.scanner import determine_file_kind
from safeclean.data.models import FilePermissions, FileRecord

DAY = 24 * 60 * 60
MB = 1024 * 1024


def make_config(root, overrides=None):
    """基于默认配置的测试配置，备份与暂存目录都放在 root 下

    测试文件位于系统临时目录中，因此关闭按路径判断的临时文件规则。
    """
    values = {
        'classifier.temp_markers': [],
        'classifier.system_cache_roots': [],
        'safety.backup.path': os.path.join(root, 'backups'),
        'safety.scratch_path': os.path.join(root, 'scratch'),
        'scanner.probe_in_use': False,
    }
    values.update(overrides or {})
    return ConfigManager.from_dict(values)


def write_file(path, size=0, content=None, age_days=None):
    """写入文件，可选地把访问和修改时间设为若干天前"""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    if content is None:
        content = os.urandom(size) if size else b""
    with open(path, 'wb') as f:
        f.write(content)
    if age_days is not None:
        stamp = time.time() - age_days * DAY
        os.utime(path, (stamp, stamp))
    return path


def record_for(path):
    st = os.stat(path)
    kind, ext = determine_file_kind(path)
    return FileRecord(
        path=os.path.abspath(path),
        size=st.st_size,
        created_time=datetime.fromtimestamp(st.st_ctime),
        modified_time=datetime.fromtimestamp(st.st_mtime),
        accessed_time=datetime.fromtimestamp(st.st_atime),
        kind=kind,
        extension=ext,
        permissions=FilePermissions(),
    )


def sha256_of(path):
    with open(path, 'rb') as f:
        return hashlib.sha256(f.read()).hexdigest()
