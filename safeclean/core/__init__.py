#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
core模块初始化文件
"""
from safeclean.core.guard import PathGuard
from safeclean.core.scanner import Scanner
from safeclean.core.classifier import Classifier
from safeclean.core.archive import ArchiveStore
from safeclean.core.executor import CleanupExecutor

__all__ = ['PathGuard', 'Scanner', 'Classifier', 'ArchiveStore', 'CleanupExecutor']
