#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
data模块初始化文件
"""
from safeclean.data.models import (
    ArchiveManifest, ArchiveRef, CategoryTag, CleanupOptions, CleanupOutcome,
    CleanupSelection, CleanupState, DuplicateGroup, FileKind, FilePermissions,
    FileRecord, ManifestEntry, RestoreOutcome, ScanResult, ValidationOutcome,
)

__all__ = [
    'ArchiveManifest', 'ArchiveRef', 'CategoryTag', 'CleanupOptions', 'CleanupOutcome',
    'CleanupSelection', 'CleanupState', 'DuplicateGroup', 'FileKind', 'FilePermissions',
    'FileRecord', 'ManifestEntry', 'RestoreOutcome', 'ScanResult', 'ValidationOutcome',
]
