#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
Services module initialization
"""

from .task_manager import TaskManager, TaskInfo
from .logger import LoggerService
from .catalog import CacheCatalog

__all__ = ['TaskManager', 'TaskInfo', 'LoggerService', 'CacheCatalog']
